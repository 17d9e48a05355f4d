"""Host and process resource sampling (stdlib only).

Learn: CPU percent is derived from process CPU time deltas between two
samples: (user+system seconds spent) / (wall seconds elapsed * cores).
The first sample has no baseline and reports 0.
"""

import os
import resource
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

_MB = 1024 * 1024


@dataclass
class ResourceUsage:
    cpu_percent: float = 0.0
    cores: int = 1
    load_average: tuple[float, float, float] = (0.0, 0.0, 0.0)
    memory_total_mb: int = 0
    memory_used_mb: int = 0
    memory_percent: float = 0.0
    process_rss_mb: float = 0.0
    uptime_seconds: int = 0
    pid: int = field(default_factory=os.getpid)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["load_average"] = [round(v, 2) for v in self.load_average]
        return data


def _process_rss_bytes() -> int:
    """Current resident set size. Falls back to peak RSS off Linux."""
    try:
        with open("/proc/self/statm") as f:
            pages = int(f.read().split()[1])
        return pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # ru_maxrss is bytes on macOS, kilobytes on Linux
        return peak if sys.platform == "darwin" else peak * 1024


def _system_memory() -> tuple[int, int]:
    """(total, available) in bytes. (0, 0) when unknown."""
    try:
        info = {}
        with open("/proc/meminfo") as f:
            for line in f:
                key, _, rest = line.partition(":")
                info[key] = int(rest.split()[0]) * 1024
        return info["MemTotal"], info.get("MemAvailable", info.get("MemFree", 0))
    except (OSError, ValueError, KeyError, IndexError):
        pass
    try:
        page = os.sysconf("SC_PAGE_SIZE")
        return os.sysconf("SC_PHYS_PAGES") * page, os.sysconf("SC_AVPHYS_PAGES") * page
    except (OSError, ValueError):
        return 0, 0


class ResourceSampler:
    """Stateful sampler: keeps the previous CPU reading for deltas."""

    def __init__(self):
        self.started_at = time.monotonic()
        self._last_cpu: Optional[float] = None
        self._last_wall: Optional[float] = None
        self.cores = os.cpu_count() or 1

    def _cpu_percent(self) -> float:
        times = os.times()
        cpu = times.user + times.system
        wall = time.monotonic()
        percent = 0.0
        if self._last_cpu is not None and wall > self._last_wall:
            percent = (cpu - self._last_cpu) / ((wall - self._last_wall) * self.cores) * 100
        self._last_cpu, self._last_wall = cpu, wall
        return round(min(max(percent, 0.0), 100.0), 1)

    def sample(self) -> ResourceUsage:
        total, available = _system_memory()
        used = total - available
        try:
            load = os.getloadavg()
        except OSError:
            load = (0.0, 0.0, 0.0)

        return ResourceUsage(
            cpu_percent=self._cpu_percent(),
            cores=self.cores,
            load_average=tuple(load),
            memory_total_mb=round(total / _MB),
            memory_used_mb=round(used / _MB),
            memory_percent=round(used / total * 100, 1) if total else 0.0,
            process_rss_mb=round(_process_rss_bytes() / _MB, 1),
            uptime_seconds=int(time.monotonic() - self.started_at),
        )
