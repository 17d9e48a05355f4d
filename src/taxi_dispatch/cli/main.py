"""Taxi CLI — operate the dispatch API from a terminal.

Usage:
    taxi drivers                                   # Active drivers
    taxi drivers --all                             # Every driver
    taxi register-driver 3001234567 "Ana" ABC123   # Register a driver
    taxi activate 3001234567                       # Driver receives rides again
    taxi deactivate 3001234567                     # Driver stops receiving rides
    taxi requests --status PENDING                 # Ride requests
    taxi cancel <request-id>                       # Cancel a pending request
    taxi stats                                     # Requests, drivers, delivery stats
    taxi health                                    # API + dependency health
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("TAXI_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the dispatch API."""
    headers = {}
    api_key = os.environ.get("TAXI_API_KEY")
    if api_key:
        headers["x-api-key"] = api_key
    return httpx.AsyncClient(base_url=_api_url(), headers=headers, timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. Click's CliRunner inside an async
    test) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table. columns: (header, dict_key, width)."""
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k) if row.get(k) is not None else "—")[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


def _status_color(status: str) -> str:
    colors = {
        "PENDING": "yellow",
        "ASSIGNED": "cyan",
        "COMPLETED": "green",
        "CANCELLED": "red",
    }
    return colors.get(status, "white")


def _fail(r: httpx.Response):
    """Print the API error detail and exit non-zero."""
    try:
        detail = r.json().get("detail", r.text)
    except ValueError:
        detail = r.text
    click.secho(f"Error ({r.status_code}): {detail}", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="taxi")
def main():
    """Taxi dispatch — manage drivers and ride requests."""


# ---------------------------------------------------------------------------
# Drivers
# ---------------------------------------------------------------------------


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include inactive drivers")
@click.option("--location", "-l", help="Filter by location substring")
def drivers(show_all: bool, location: Optional[str]):
    """List drivers."""
    _run(_drivers_impl(show_all, location))


async def _drivers_impl(show_all: bool, location: Optional[str]):
    async with _client() as c:
        params: dict = {"include_inactive": show_all}
        if location:
            params["location"] = location
        r = await c.get("/api/v1/drivers", params=params)
        if r.is_error:
            _fail(r)
        rows = r.json()

        if not rows:
            click.echo("No drivers found.")
            return

        for row in rows:
            row["state"] = "active" if row["is_active"] else "inactive"
        click.secho(f"Drivers ({len(rows)}):", bold=True)
        click.echo()
        _print_table(rows, [
            ("Phone", "phone", 12),
            ("Name", "name", 24),
            ("Plate", "plate", 8),
            ("State", "state", 9),
            ("Location", "location", 30),
        ])


@main.command("register-driver")
@click.argument("phone")
@click.argument("name")
@click.argument("plate")
@click.option("--location", "-l", help="Usual operating area")
def register_driver(phone: str, name: str, plate: str, location: Optional[str]):
    """Register a new driver."""
    _run(_register_impl(phone, name, plate, location))


async def _register_impl(phone: str, name: str, plate: str, location: Optional[str]):
    async with _client() as c:
        r = await c.post(
            "/api/v1/drivers",
            json={"phone": phone, "name": name, "plate": plate, "location": location},
        )
        if r.is_error:
            _fail(r)
        driver = r.json()
        click.secho(f"✓ Registered {driver['name']} ({driver['plate']})", fg="green")


@main.command()
@click.argument("phone")
def activate(phone: str):
    """Make a driver available for rides."""
    _run(_set_status_impl(phone, True))


@main.command()
@click.argument("phone")
def deactivate(phone: str):
    """Stop sending rides to a driver."""
    _run(_set_status_impl(phone, False))


async def _set_status_impl(phone: str, is_active: bool):
    async with _client() as c:
        r = await c.post(f"/api/v1/drivers/{phone}/status", json={"is_active": is_active})
        if r.is_error:
            _fail(r)
        state = "active" if is_active else "inactive"
        click.secho(f"✓ {r.json()['name']} is now {state}", fg="green" if is_active else "yellow")


# ---------------------------------------------------------------------------
# Ride requests
# ---------------------------------------------------------------------------


@main.command()
@click.option("--status", "-s", "status_filter", help="PENDING, ASSIGNED, COMPLETED, CANCELLED")
@click.option("--phone", "-p", help="Filter by client phone")
@click.option("--limit", "-l", default=50, help="Max results")
def requests(status_filter: Optional[str], phone: Optional[str], limit: int):
    """List ride requests, newest first."""
    _run(_requests_impl(status_filter, phone, limit))


async def _requests_impl(status_filter: Optional[str], phone: Optional[str], limit: int):
    async with _client() as c:
        params: dict = {"limit": limit}
        if status_filter:
            params["status"] = status_filter
        if phone:
            params["client_phone"] = phone
        r = await c.get("/api/v1/requests", params=params)
        if r.is_error:
            _fail(r)
        reqs = r.json()

        if not reqs:
            click.echo("No requests found.")
            return

        click.secho(f"Ride requests ({len(reqs)}):", bold=True)
        click.echo()
        for req in reqs:
            status_str = click.style(req["status"], fg=_status_color(req["status"]))
            click.echo(f"  {req['id']}  {status_str}  {req['created_at']}")
            click.echo(f"    {req['client_name']} ({req['client_phone']}) — {req['sector'] or req['location']}")
            if req.get("cancel_reason"):
                click.echo(f"    Cancelled: {req['cancel_reason']}")
            click.echo()


@main.command()
@click.argument("request_id")
@click.option("--reason", "-r", default="operator", help="Cancellation reason")
def cancel(request_id: str, reason: str):
    """Cancel a pending ride request."""
    _run(_cancel_impl(request_id, reason))


async def _cancel_impl(request_id: str, reason: str):
    async with _client() as c:
        r = await c.post(f"/api/v1/requests/{request_id}/cancel", json={"reason": reason})
        if r.is_error:
            _fail(r)
        req = r.json()
        click.secho(f"✓ Request {req['id']} is {req['status']}", fg=_status_color(req["status"]))


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Raw JSON output")
def stats(as_json: bool):
    """Requests per status, drivers, and delivery statistics."""
    _run(_stats_impl(as_json))


async def _stats_impl(as_json: bool):
    async with _client() as c:
        r = await c.get("/api/v1/dispatch/stats")
        if r.is_error:
            _fail(r)
        data = r.json()

    if as_json:
        click.echo(_pretty_json(data))
        return

    click.secho("Requests", bold=True)
    for status, count in data["requests"].items():
        click.echo(f"  {click.style(status.ljust(10), fg=_status_color(status))} {count}")
    click.echo()
    d = data["drivers"]
    click.secho("Drivers", bold=True)
    click.echo(f"  active {d['active_drivers']} / total {d['total_drivers']}")
    click.echo()
    delivery = data["delivery"]
    click.secho("Delivery", bold=True)
    click.echo(
        f"  sent {delivery['sent']}  failed {delivery['failed']}  "
        f"retries {delivery['retries']}  error rate {delivery['error_rate']}%"
    )
    click.echo(f"  batch size {data.get('batch_size_hint')}  timers {data['active_request_timers']}")


@main.command()
def health():
    """Check API and dependency health."""
    _run(_health_impl())


async def _health_impl():
    async with _client() as c:
        try:
            r = await c.get("/api/v1/health")
        except httpx.HTTPError as e:
            click.secho(f"API unreachable at {_api_url()}: {e}", fg="red", err=True)
            sys.exit(1)
        data = r.json()

    color = "green" if data.get("status") == "healthy" else "yellow"
    click.secho(f"Status: {data.get('status')} (v{data.get('version')})", fg=color, bold=True)
    for key in ("database", "transport", "redis"):
        value = data.get(key)
        click.echo(f"  {key.ljust(10)} {click.style(str(value), fg='green' if value == 'ok' else 'red')}")


if __name__ == "__main__":
    main()
