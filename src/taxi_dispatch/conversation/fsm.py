"""Requester conversation — an explicit finite-state machine.

Learn: The chat dialogue that collects a name and a pickup location is
modelled as data, not as callbacks buried in a chat framework:

    DONE ──start──▶ AWAITING_NAME ──name──▶ AWAITING_LOCATION
                                               │ text / GPS pin
                                               ▼
    DONE ◀──no drivers / timeout / cancel── AWAITING_DISPATCH
                                               │ driver assigned
                                               ▼
    DONE ◀────────ride completed────────── ASSIGNED

`advance(state, event)` is pure: it returns the next state plus a list
of effects (reply with text, remember the name, dispatch, cancel). The
InboundRouter performs the effects. Nothing here knows about the
database or the messaging transport, so every path is unit-testable.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from taxi_dispatch import messages
from taxi_dispatch.errors import ValidationError
from taxi_dispatch.validation import validate_location, validate_name

START_KEYWORDS = (
    "hola", "hi", "hello", "menu", "inicio", "start", "buenas", "taxi",
    "quiero taxi", "necesito taxi", "pido taxi", "solicitar taxi",
)
MENU_TAXI_OPTION = "1"


class ConversationState(str, enum.Enum):
    AWAITING_NAME = "AWAITING_NAME"
    AWAITING_LOCATION = "AWAITING_LOCATION"
    AWAITING_DISPATCH = "AWAITING_DISPATCH"
    ASSIGNED = "ASSIGNED"
    DONE = "DONE"


# ─── Events ───────────────────────────────────────────────


@dataclass(frozen=True)
class TextReceived:
    text: str


@dataclass(frozen=True)
class LocationShared:
    coordinates: Any  # notifications.dispatcher.Coordinates
    text: str = ""


@dataclass(frozen=True)
class CancelRequested:
    pass


@dataclass(frozen=True)
class DriverAssigned:
    pass


@dataclass(frozen=True)
class DispatchEnded:
    """The request ended without a driver (nobody reached, timeout)."""
    reason: str


@dataclass(frozen=True)
class RideCompleted:
    pass


Event = Union[
    TextReceived, LocationShared, CancelRequested, DriverAssigned, DispatchEnded, RideCompleted
]


# ─── Effects ──────────────────────────────────────────────


@dataclass(frozen=True)
class Reply:
    text: str


@dataclass(frozen=True)
class RememberName:
    name: str


@dataclass(frozen=True)
class Dispatch:
    location: Optional[str] = None
    coordinates: Any = None


@dataclass(frozen=True)
class CancelPending:
    reason: str


Effect = Union[Reply, RememberName, Dispatch, CancelPending]


@dataclass(frozen=True)
class Transition:
    next: ConversationState
    effects: tuple = ()


def is_start_command(text: str) -> bool:
    lowered = (text or "").strip().lower()
    return lowered in START_KEYWORDS or lowered == MENU_TAXI_OPTION


def _menu() -> Reply:
    return Reply(f"{messages.GREETING}\n\n{messages.MENU}")


def advance(state: ConversationState, event: Event) -> Transition:
    """Compute the next state and the effects of `event` in `state`."""
    S = ConversationState

    if isinstance(event, CancelRequested):
        if state == S.AWAITING_DISPATCH:
            return Transition(S.DONE, (CancelPending("client"),))
        if state in (S.AWAITING_NAME, S.AWAITING_LOCATION):
            return Transition(S.DONE, (Reply(messages.REQUEST_CANCELLED),))
        # a request created elsewhere (API) may still be pending
        return Transition(state, (CancelPending("client"),))

    if isinstance(event, DriverAssigned):
        if state == S.AWAITING_DISPATCH:
            return Transition(S.ASSIGNED)
        return Transition(state)

    if isinstance(event, DispatchEnded):
        if state == S.AWAITING_DISPATCH:
            return Transition(S.DONE)
        return Transition(state)

    if isinstance(event, RideCompleted):
        if state == S.ASSIGNED:
            return Transition(S.DONE)
        return Transition(state)

    if isinstance(event, LocationShared):
        if state == S.AWAITING_LOCATION:
            return Transition(
                S.AWAITING_DISPATCH,
                (Reply(messages.SEARCHING), Dispatch(coordinates=event.coordinates)),
            )
        return _on_text(state, event.text)

    if isinstance(event, TextReceived):
        return _on_text(state, event.text)

    raise TypeError(f"Unknown conversation event: {event!r}")


def _on_text(state: ConversationState, text: str) -> Transition:
    S = ConversationState
    text = (text or "").strip()

    if state == S.AWAITING_NAME:
        try:
            name = validate_name(text)
        except ValidationError as e:
            return Transition(state, (Reply(f"❌ {e.message}"),))
        return Transition(
            S.AWAITING_LOCATION, (RememberName(name), Reply(messages.ASK_LOCATION))
        )

    if state == S.AWAITING_LOCATION:
        try:
            location = validate_location(text)
        except ValidationError as e:
            return Transition(state, (Reply(f"❌ {e.message}"),))
        return Transition(
            S.AWAITING_DISPATCH,
            (Reply(messages.SEARCHING), Dispatch(location=location)),
        )

    if state == S.AWAITING_DISPATCH:
        return Transition(state, (Reply(messages.WAITING_FOR_DRIVER),))

    # ASSIGNED or DONE: a new ride starts from the menu
    if is_start_command(text):
        if text.lower() == MENU_TAXI_OPTION or "taxi" in text.lower():
            return Transition(S.AWAITING_NAME, (Reply(messages.ASK_NAME),))
        return Transition(S.DONE, (_menu(),))
    if state == S.ASSIGNED:
        return Transition(state)
    return Transition(S.DONE, (_menu(),))


# ═══════════════════════════════════════════════════════════
# Per-identity storage
# ═══════════════════════════════════════════════════════════


@dataclass
class Conversation:
    state: ConversationState = ConversationState.DONE
    client_name: Optional[str] = None
    data: dict = field(default_factory=dict)


class ConversationStore:
    """In-memory conversation state, keyed by requester identity."""

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}

    def get(self, phone: str) -> Conversation:
        return self._conversations.get(phone) or Conversation()

    def set(self, phone: str, conversation: Conversation) -> None:
        self._conversations[phone] = conversation

    def clear(self, phone: str) -> None:
        self._conversations.pop(phone, None)

    def __contains__(self, phone: str) -> bool:
        return phone in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)
