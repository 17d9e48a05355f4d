"""Session timeout supervisor — per-requester request and idle timers.

Learn: Two independent timeout classes:

1. Request timer (short, default 20s) bound to ONE pending request.
   On expiry: if the request is still PENDING, cancel it ("timeout")
   and tell the requester. The cancel is a compare-and-swap, so a
   racing explicit cancel or a driver accept simply wins and we do
   nothing, and the requester is notified at most once.

2. Idle timer (long, default 5 min) bound to the conversation. On expiry
   we only FLAG the identity as expired, and only when it has a
   conversation or a PENDING request to reset. The next inbound
   message calls `reconcile()`, which cancels any lingering PENDING
   request, clears the conversation and un-flags. Lazy reconciliation
   never interrupts a conversation mid-step.

Timers are asyncio tasks kept in dicts on the instance (no module
globals), so tests and the app can each own a supervisor.
"""

import asyncio
import uuid
from typing import Awaitable, Callable, Optional

import structlog

from taxi_dispatch.conversation.fsm import ConversationStore
from taxi_dispatch.services.lifecycle import RequestLifecycle
from taxi_dispatch.services.request_store import RequestStore

logger = structlog.get_logger()

OnExpire = Callable[[], Awaitable[None]]


class SessionTimeoutSupervisor:
    """Owns every requester timer of one process."""

    def __init__(
        self,
        lifecycle: RequestLifecycle,
        store: RequestStore,
        *,
        notify_timeout: Optional[Callable[[str], Awaitable]] = None,
        conversations: Optional[ConversationStore] = None,
        request_timeout: float = 20.0,
        idle_timeout: float = 300.0,
    ):
        self.lifecycle = lifecycle
        self.store = store
        self.notify_timeout = notify_timeout
        self.conversations = conversations
        self.request_timeout = request_timeout
        self.idle_timeout = idle_timeout
        self._request_timers: dict[str, asyncio.Task] = {}
        self._armed_for: dict[str, uuid.UUID] = {}
        self._idle_timers: dict[str, asyncio.Task] = {}
        self._expired: set[str] = set()

    # ─── Request timers ───────────────────────────────────

    def start_timer(self, phone: str, duration: float, on_expire: OnExpire) -> None:
        """Arm the request timer for `phone`, replacing any running one."""
        self.cancel_timer(phone)
        task = asyncio.create_task(
            self._run(self._request_timers, phone, duration, on_expire),
            name=f"request-timer:{phone}",
        )
        self._request_timers[phone] = task

    def cancel_timer(self, phone: str, request_id: Optional[uuid.UUID] = None) -> bool:
        """Cancel the request timer. Safe to repeat and after it fired.

        With `request_id`, only a timer armed for that request is cancelled,
        so resolving an old request never disarms the requester's newer one.
        """
        if request_id is not None and self._armed_for.get(phone) != request_id:
            return False
        self._armed_for.pop(phone, None)
        task = self._request_timers.pop(phone, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("timeout.request_timer_cancelled", phone=phone)
        return True

    def has_timer(self, phone: str) -> bool:
        task = self._request_timers.get(phone)
        return task is not None and not task.done()

    def start_request_timer(
        self, phone: str, request_id: uuid.UUID, duration: Optional[float] = None
    ) -> None:
        duration = self.request_timeout if duration is None else duration

        async def expire() -> None:
            cancelled = await self.lifecycle.cancel_if_pending(request_id, "timeout")
            if not cancelled:
                logger.debug(
                    "timeout.request_already_resolved",
                    phone=phone,
                    request_id=str(request_id),
                )
                return
            logger.info(
                "timeout.request_expired", phone=phone, request_id=str(request_id)
            )
            if self.conversations is not None:
                self.conversations.clear(phone)
            if self.notify_timeout is not None:
                await self.notify_timeout(phone)

        self.start_timer(phone, duration, expire)
        self._armed_for[phone] = request_id

    def armed_request(self, phone: str) -> Optional[uuid.UUID]:
        """The request the phone's running request timer belongs to."""
        return self._armed_for.get(phone) if self.has_timer(phone) else None

    # ─── Idle timers ──────────────────────────────────────

    def start_idle_timer(self, phone: str, duration: Optional[float] = None) -> None:
        """(Re)arm the inactivity timer. Expiry only flags the identity."""
        duration = self.idle_timeout if duration is None else duration
        old = self._idle_timers.pop(phone, None)
        if old is not None and not old.done():
            old.cancel()

        async def flag() -> None:
            in_conversation = self.conversations is not None and phone in self.conversations
            if not in_conversation and await self.store.get_client_pending(phone) is None:
                # nothing to reset
                logger.debug("timeout.idle_expired_nothing_to_reset", phone=phone)
                return
            self._expired.add(phone)
            logger.info("timeout.idle_expired", phone=phone)

        self._idle_timers[phone] = asyncio.create_task(
            self._run(self._idle_timers, phone, duration, flag),
            name=f"idle-timer:{phone}",
        )

    def is_expired(self, phone: str) -> bool:
        return phone in self._expired

    async def reconcile(self, phone: str) -> bool:
        """Clean up after an expired idle window. True if anything was reset."""
        if phone not in self._expired:
            return False

        pending = await self.store.get_client_pending(phone)
        if pending is not None:
            await self.lifecycle.cancel_if_pending(pending.id, "inactivity")
        if self.conversations is not None:
            self.conversations.clear(phone)
        self._expired.discard(phone)
        logger.info(
            "timeout.reconciled",
            phone=phone,
            cancelled_request=str(pending.id) if pending else None,
        )
        return True

    # ─── Teardown ─────────────────────────────────────────

    def cancel_all(self, phone: str) -> None:
        self.cancel_timer(phone)
        task = self._idle_timers.pop(phone, None)
        if task is not None and not task.done():
            task.cancel()
        self._expired.discard(phone)

    async def shutdown(self) -> None:
        tasks = [
            t for t in (*self._request_timers.values(), *self._idle_timers.values())
            if not t.done()
        ]
        for task in tasks:
            task.cancel()
        self._request_timers.clear()
        self._armed_for.clear()
        self._idle_timers.clear()
        self._expired.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("timeout.supervisor_stopped", cancelled=len(tasks))

    @property
    def active_timers(self) -> int:
        return sum(1 for t in self._request_timers.values() if not t.done())

    async def _run(
        self,
        registry: dict[str, asyncio.Task],
        phone: str,
        duration: float,
        on_expire: OnExpire,
    ) -> None:
        try:
            await asyncio.sleep(duration)
        except asyncio.CancelledError:
            return
        # Deregister before firing so the callback can re-arm or cancel safely.
        if registry.get(phone) is asyncio.current_task():
            del registry[phone]
            if registry is self._request_timers:
                self._armed_for.pop(phone, None)
        try:
            await on_expire()
        except Exception:
            logger.exception("timeout.callback_failed", phone=phone)
