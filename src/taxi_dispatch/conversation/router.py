"""Inbound router — turns one chat message into dispatch actions.

Learn: The messaging gateway posts every inbound message here. Order:

1. Reconcile an expired idle window (cancel stale request, reset chat)
   and re-arm the idle timer.
2. Registered drivers: accept keywords → try_accept, "complete" →
   finish their ride, "active"/"inactive" → availability, "ubicacion"
   → new location (inline or on the next message), "perfil" → profile.
3. Everyone else (and driver messages that matched nothing) drives the
   requester conversation FSM, whose effects we execute here. A status
   query answers without touching the conversation, and cancelling a
   pending ride asks for confirmation first.

The conversation state is updated BEFORE effects run: a dispatch may
be answered by a driver while the broadcast is still fanning out, and
that assignment advances the same conversation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from taxi_dispatch import messages
from taxi_dispatch.config import Settings
from taxi_dispatch.conversation.fsm import (
    CancelPending,
    CancelRequested,
    Conversation,
    ConversationState,
    ConversationStore,
    Dispatch,
    LocationShared,
    RememberName,
    Reply,
    TextReceived,
    advance,
)
from taxi_dispatch.db.models import utcnow
from taxi_dispatch.errors import ValidationError
from taxi_dispatch.notifications.dispatcher import NotificationDispatcher
from taxi_dispatch.services.dispatch import DispatchService
from taxi_dispatch.services.driver_service import DriverService
from taxi_dispatch.validation import clean_phone, is_accept_command, is_cancel_command

logger = structlog.get_logger()

COMPLETE_COMMANDS = ("completar", "terminar", "finalizar", "complete", "done", "finish")
ACTIVATE_COMMANDS = ("activo", "disponible", "conectar", "active", "available")
DEACTIVATE_COMMANDS = ("inactivo", "ocupado", "desconectar", "inactive", "busy")
LOCATION_COMMANDS = ("ubicacion", "ubicación", "location")
PROFILE_COMMANDS = ("perfil", "mi info", "mis datos", "mi informacion", "mi información")
STATUS_COMMANDS = ("estado", "status", "mi solicitud", "mi taxi")
CONFIRM_YES, CONFIRM_NO = "1", "2"

# conversation.data key set while a cancel waits for confirmation
CONFIRMING_CANCEL = "confirming_cancel"


@dataclass
class RouteResult:
    role: str  # "driver" | "client"
    action: str
    state: Optional[ConversationState] = None
    outcome: Any = None
    replies: list[str] = field(default_factory=list)


class InboundRouter:
    def __init__(
        self,
        dispatch: DispatchService,
        drivers: DriverService,
        conversations: ConversationStore,
        notifier: NotificationDispatcher,
        settings: Settings,
    ):
        self.dispatch = dispatch
        self.drivers = drivers
        self.conversations = conversations
        self.notifier = notifier
        self.settings = settings
        self._awaiting_location: set[str] = set()

    async def handle(
        self, phone: str, text: str = "", coordinates: Any = None
    ) -> RouteResult:
        # gateways may forward the full JID ("573001234567@s.whatsapp.net")
        phone = clean_phone(phone.split("@")[0], self.settings.country_code)
        text = (text or "").strip()
        log = logger.bind(phone=phone)

        if await self.dispatch.reconcile_idle(phone):
            log.info("inbound.idle_reconciled")
        self.dispatch.start_idle_timer(phone)

        if text and await self.drivers.is_registered(phone):
            result = await self._handle_driver(phone, text)
            if result is not None:
                log.info("inbound.driver_command", action=result.action)
                return result

        return await self._handle_client(phone, text, coordinates)

    # ─── Drivers ──────────────────────────────────────────

    async def _handle_driver(self, phone: str, text: str) -> Optional[RouteResult]:
        command = text.lower()

        if is_accept_command(text):
            self._awaiting_location.discard(phone)
            outcome = await self.dispatch.try_accept(phone)
            return RouteResult(role="driver", action="accept", outcome=outcome)

        if phone in self._awaiting_location:
            self._awaiting_location.discard(phone)
            return await self._update_location(phone, text)

        if command in COMPLETE_COMMANDS:
            ride = await self.dispatch.complete_for_driver(phone)
            reply = (
                messages.driver_ride_completed(ride.client_name)
                if ride
                else messages.NO_ACTIVE_RIDES
            )
            await self.notifier.send_to(phone, reply)
            return RouteResult(role="driver", action="complete", outcome=ride, replies=[reply])

        if command in ACTIVATE_COMMANDS or command in DEACTIVATE_COMMANDS:
            active = command in ACTIVATE_COMMANDS
            await self.drivers.set_active(phone, active)
            reply = messages.DRIVER_NOW_ACTIVE if active else messages.DRIVER_NOW_INACTIVE
            await self.notifier.send_to(phone, reply)
            return RouteResult(role="driver", action="status", outcome=active, replies=[reply])

        keyword, _, rest = text.partition(" ")
        if keyword.lower() in LOCATION_COMMANDS:
            if rest.strip():
                return await self._update_location(phone, rest)
            # the next message from this driver is the new location
            self._awaiting_location.add(phone)
            reply = messages.DRIVER_ASK_LOCATION
            await self.notifier.send_to(phone, reply)
            return RouteResult(role="driver", action="location", replies=[reply])

        if command in PROFILE_COMMANDS:
            driver = await self.drivers.get(phone)
            reply = messages.driver_profile(
                driver.name,
                driver.phone,
                driver.plate,
                driver.location,
                driver.is_active,
                driver.created_at,
            )
            await self.notifier.send_to(phone, reply)
            return RouteResult(role="driver", action="profile", outcome=driver, replies=[reply])

        return None

    async def _update_location(self, phone: str, location: str) -> RouteResult:
        try:
            driver = await self.drivers.update_location(phone, location)
        except ValidationError as e:
            self._awaiting_location.add(phone)
            reply = f"❌ {e.message}"
            driver = None
        else:
            reply = messages.driver_location_updated(driver.location)
        await self.notifier.send_to(phone, reply)
        return RouteResult(role="driver", action="location", outcome=driver, replies=[reply])

    # ─── Requesters ───────────────────────────────────────

    async def _handle_client(self, phone: str, text: str, coordinates: Any) -> RouteResult:
        conversation = self.conversations.get(phone)
        waiting = conversation.state == ConversationState.AWAITING_DISPATCH

        if conversation.data.pop(CONFIRMING_CANCEL, False) and waiting and coordinates is None:
            answered = await self._answer_cancel_confirmation(phone, conversation, text)
            if answered is not None:
                return answered
            event = CancelRequested()
        elif text.lower() in STATUS_COMMANDS:
            return await self._report_status(phone, conversation.state)
        elif coordinates is not None:
            event = LocationShared(coordinates=coordinates, text=text)
        elif waiting and is_cancel_command(text):
            conversation.data[CONFIRMING_CANCEL] = True
            self.conversations.set(phone, conversation)
            await self.notifier.send_to(phone, messages.CONFIRM_CANCEL, composing=True)
            return RouteResult(
                role="client",
                action="CancelRequested",
                state=conversation.state,
                replies=[messages.CONFIRM_CANCEL],
            )
        elif is_cancel_command(text, include_digit=conversation.state != ConversationState.DONE):
            event = CancelRequested()
        else:
            event = TextReceived(text)

        transition = advance(conversation.state, event)
        for effect in transition.effects:
            if isinstance(effect, RememberName):
                conversation.client_name = effect.name
        client_name = conversation.client_name

        conversation.state = transition.next
        if transition.next == ConversationState.DONE:
            self.conversations.clear(phone)
        else:
            self.conversations.set(phone, conversation)

        result = RouteResult(role="client", action=type(event).__name__, state=transition.next)
        for effect in transition.effects:
            if isinstance(effect, Reply):
                await self.notifier.send_to(phone, effect.text, composing=True)
                result.replies.append(effect.text)
            elif isinstance(effect, CancelPending):
                result.outcome = await self.dispatch.cancel_client_pending(phone, effect.reason)
            elif isinstance(effect, Dispatch):
                result.outcome = await self._dispatch(phone, client_name, effect, result)

        logger.debug(
            "inbound.client_step",
            phone=phone,
            step=result.action,
            state=transition.next.value,
        )
        return result

    async def _dispatch(
        self, phone: str, client_name: Optional[str], effect: Dispatch, result: RouteResult
    ):
        try:
            return await self.dispatch.create_request(
                phone,
                client_name or "",
                location_text=effect.location,
                coordinates=effect.coordinates,
            )
        except ValidationError as e:
            self.conversations.clear(phone)
            reply = f"❌ {e.message}"
        except Exception:
            logger.exception("inbound.dispatch_failed", phone=phone)
            self.conversations.clear(phone)
            reply = messages.SYSTEM_ERROR
        await self.notifier.send_to(phone, reply)
        result.replies.append(reply)
        result.state = ConversationState.DONE
        return None

    async def _answer_cancel_confirmation(
        self, phone: str, conversation: Conversation, text: str
    ) -> Optional[RouteResult]:
        """None means confirmed: the caller goes on to cancel."""
        answer = text.strip().lower()
        if answer == CONFIRM_YES:
            return None
        if answer == CONFIRM_NO:
            reply = messages.CANCEL_KEPT
        else:
            conversation.data[CONFIRMING_CANCEL] = True
            reply = messages.CONFIRM_CANCEL_INVALID
        self.conversations.set(phone, conversation)
        await self.notifier.send_to(phone, reply, composing=True)
        return RouteResult(
            role="client", action="CancelConfirmation", state=conversation.state, replies=[reply]
        )

    async def _report_status(self, phone: str, state: ConversationState) -> RouteResult:
        ride, driver = await self.dispatch.client_status(phone)
        if ride is None:
            reply = messages.NO_ACTIVE_REQUEST
        elif driver is not None:
            reply = messages.status_assigned(driver.name, driver.plate, driver.phone)
        else:
            reply = messages.status_pending(_minutes_since(ride.created_at))
        await self.notifier.send_to(phone, reply, composing=True)
        return RouteResult(role="client", action="status", state=state, outcome=ride, replies=[reply])


def _minutes_since(moment: datetime) -> int:
    if moment.tzinfo is None:  # SQLite returns naive UTC
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0, int((utcnow() - moment).total_seconds() // 60))
