"""Requester conversation tests.

1. The pure FSM: advance(state, event) → next state + effects
2. The InboundRouter driving it end to end against the service graph,
   including driver chat commands (accept, complete, availability,
   location, profile), status queries and cancel confirmation
"""

import asyncio

import pytest

from taxi_dispatch import messages
from taxi_dispatch.conversation.fsm import (
    CancelPending,
    CancelRequested,
    ConversationState,
    ConversationStore,
    Dispatch,
    DispatchEnded,
    DriverAssigned,
    LocationShared,
    RememberName,
    Reply,
    RideCompleted,
    TextReceived,
    advance,
)
from taxi_dispatch.db.models import RequestStatus
from taxi_dispatch.notifications.dispatcher import Coordinates
from taxi_dispatch.services.assignment import Assigned

S = ConversationState
CLIENT = "3009990000"


# ═══════════════════════════════════════════════════════════
# Pure state machine
# ═══════════════════════════════════════════════════════════


def test_greeting_shows_menu():
    t = advance(S.DONE, TextReceived("hola"))
    assert t.next == S.DONE
    assert t.effects == (Reply(f"{messages.GREETING}\n\n{messages.MENU}"),)


def test_unknown_text_shows_menu():
    t = advance(S.DONE, TextReceived("??"))
    assert t.next == S.DONE
    assert isinstance(t.effects[0], Reply)


@pytest.mark.parametrize("text", ["1", "taxi", "Quiero taxi"])
def test_taxi_option_asks_for_name(text):
    t = advance(S.DONE, TextReceived(text))
    assert t.next == S.AWAITING_NAME
    assert t.effects == (Reply(messages.ASK_NAME),)


def test_invalid_name_stays_put():
    t = advance(S.AWAITING_NAME, TextReceived("A"))
    assert t.next == S.AWAITING_NAME
    assert t.effects[0].text.startswith("❌")


def test_valid_name_asks_for_location():
    t = advance(S.AWAITING_NAME, TextReceived("  Maria "))
    assert t.next == S.AWAITING_LOCATION
    assert t.effects == (RememberName("Maria"), Reply(messages.ASK_LOCATION))


def test_typed_location_dispatches():
    t = advance(S.AWAITING_LOCATION, TextReceived("Calle 10 # 5-20"))
    assert t.next == S.AWAITING_DISPATCH
    assert t.effects == (Reply(messages.SEARCHING), Dispatch(location="Calle 10 # 5-20"))


def test_short_location_is_rejected():
    t = advance(S.AWAITING_LOCATION, TextReceived("aqui"))
    assert t.next == S.AWAITING_LOCATION
    assert not any(isinstance(e, Dispatch) for e in t.effects)


def test_shared_pin_dispatches_with_coordinates():
    pin = Coordinates(latitude=-0.18, longitude=-78.47)
    t = advance(S.AWAITING_LOCATION, LocationShared(coordinates=pin))
    assert t.next == S.AWAITING_DISPATCH
    assert t.effects[1] == Dispatch(coordinates=pin)


def test_waiting_requester_is_reminded():
    t = advance(S.AWAITING_DISPATCH, TextReceived("hola?"))
    assert t.next == S.AWAITING_DISPATCH
    assert isinstance(t.effects[0], Reply)


def test_cancel_while_waiting_cancels_pending():
    t = advance(S.AWAITING_DISPATCH, CancelRequested())
    assert t.next == S.DONE
    assert t.effects == (CancelPending("client"),)


def test_cancel_mid_dialogue_just_resets():
    for state in (S.AWAITING_NAME, S.AWAITING_LOCATION):
        t = advance(state, CancelRequested())
        assert t.next == S.DONE
        assert t.effects == (Reply(messages.REQUEST_CANCELLED),)


def test_dispatch_outcomes():
    assert advance(S.AWAITING_DISPATCH, DriverAssigned()).next == S.ASSIGNED
    assert advance(S.AWAITING_DISPATCH, DispatchEnded("no drivers")).next == S.DONE
    assert advance(S.ASSIGNED, RideCompleted()).next == S.DONE
    # late signals do not resurrect a finished conversation
    assert advance(S.DONE, DriverAssigned()).next == S.DONE
    assert advance(S.DONE, RideCompleted()).next == S.DONE


def test_assigned_requester_can_start_over():
    assert advance(S.ASSIGNED, TextReceived("gracias")).effects == ()
    assert advance(S.ASSIGNED, TextReceived("1")).next == S.AWAITING_NAME


def test_conversation_store():
    store = ConversationStore()
    assert store.get(CLIENT).state == S.DONE
    assert CLIENT not in store

    conversation = store.get(CLIENT)
    conversation.state = S.AWAITING_NAME
    store.set(CLIENT, conversation)
    assert CLIENT in store
    assert len(store) == 1

    store.clear(CLIENT)
    store.clear(CLIENT)
    assert len(store) == 0


# ═══════════════════════════════════════════════════════════
# Router: requester flow
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_full_chat_flow(services, transport, register_driver):
    driver = await register_driver(name="Carlos")
    router = services.router

    r = await router.handle(f"57{CLIENT}@s.whatsapp.net", "hola")
    assert r.role == "client"
    assert r.state == S.DONE

    r = await router.handle(CLIENT, "1")
    assert r.state == S.AWAITING_NAME
    r = await router.handle(CLIENT, "Maria")
    assert r.state == S.AWAITING_LOCATION
    r = await router.handle(CLIENT, "Calle 10 # 5-20")
    assert r.state == S.AWAITING_DISPATCH
    assert r.outcome.request.status == RequestStatus.PENDING.value
    assert r.outcome.request.client_name == "Maria"
    assert transport.texts_to(driver.phone)

    r = await router.handle(driver.phone, "1")
    assert r.role == "driver"
    assert isinstance(r.outcome, Assigned)
    assert services.conversations.get(CLIENT).state == S.ASSIGNED

    r = await router.handle(driver.phone, "completar")
    assert r.action == "complete"
    assert r.outcome.status == RequestStatus.COMPLETED.value
    assert CLIENT not in services.conversations
    assert transport.texts_to(CLIENT)[-1] == messages.RIDE_COMPLETED


@pytest.mark.asyncio
async def test_shared_location_creates_request(services, register_driver):
    await register_driver()
    router = services.router
    await router.handle(CLIENT, "taxi")
    await router.handle(CLIENT, "Maria")

    pin = Coordinates(latitude=-0.18, longitude=-78.47)
    r = await router.handle(CLIENT, "", coordinates=pin)
    assert r.state == S.AWAITING_DISPATCH
    # no geocoder configured: the sector falls back to a generic label
    assert r.outcome.request.location == "GPS location"


@pytest.mark.asyncio
async def test_no_drivers_resets_conversation(services, transport):
    router = services.router
    await router.handle(CLIENT, "1")
    await router.handle(CLIENT, "Maria")
    r = await router.handle(CLIENT, "Calle 10 # 5-20")

    assert r.outcome.auto_cancelled
    assert CLIENT not in services.conversations
    assert transport.texts_to(CLIENT).count(messages.NO_DRIVERS_AVAILABLE) == 1


@pytest.mark.asyncio
async def test_requester_cancels_while_waiting(services, transport, register_driver):
    await register_driver()
    router = services.router
    await router.handle(CLIENT, "1")
    await router.handle(CLIENT, "Maria")
    r = await router.handle(CLIENT, "Calle 10 # 5-20")
    request_id = r.outcome.request.id

    r = await router.handle(CLIENT, "2")
    assert r.state == S.AWAITING_DISPATCH
    assert r.replies == [messages.CONFIRM_CANCEL]
    request = await services.dispatch.lifecycle.get(request_id)
    assert request.status == RequestStatus.PENDING.value

    r = await router.handle(CLIENT, "1")
    assert r.state == S.DONE
    assert r.outcome is True
    request = await services.dispatch.lifecycle.get(request_id)
    assert request.status == RequestStatus.CANCELLED.value
    assert messages.REQUEST_CANCELLED in transport.texts_to(CLIENT)


@pytest.mark.asyncio
async def test_requester_keeps_request_after_second_thoughts(services, transport, register_driver):
    await register_driver()
    router = services.router
    await router.handle(CLIENT, "1")
    await router.handle(CLIENT, "Maria")
    r = await router.handle(CLIENT, "Calle 10 # 5-20")
    request_id = r.outcome.request.id

    await router.handle(CLIENT, "cancelar")
    r = await router.handle(CLIENT, "tal vez")
    assert r.replies == [messages.CONFIRM_CANCEL_INVALID]

    r = await router.handle(CLIENT, "2")
    assert r.replies == [messages.CANCEL_KEPT]
    assert r.state == S.AWAITING_DISPATCH
    request = await services.dispatch.lifecycle.get(request_id)
    assert request.status == RequestStatus.PENDING.value

    # the confirmation is spent: the next "2" asks again
    r = await router.handle(CLIENT, "2")
    assert r.replies == [messages.CONFIRM_CANCEL]


@pytest.mark.asyncio
async def test_status_without_request(services, transport):
    r = await services.router.handle(CLIENT, "estado")
    assert r.action == "status"
    assert r.outcome is None
    assert transport.texts_to(CLIENT) == [messages.NO_ACTIVE_REQUEST]
    assert CLIENT not in services.conversations


@pytest.mark.asyncio
async def test_status_of_pending_and_assigned_ride(services, transport, register_driver):
    driver = await register_driver(name="Carlos", plate="XYZ987")
    router = services.router
    await router.handle(CLIENT, "1")
    await router.handle(CLIENT, "Maria")
    await router.handle(CLIENT, "Calle 10 # 5-20")

    r = await router.handle(CLIENT, "estado")
    assert r.replies == [messages.status_pending(0)]
    assert r.state == S.AWAITING_DISPATCH
    assert services.conversations.get(CLIENT).state == S.AWAITING_DISPATCH

    await router.handle(driver.phone, "1")
    r = await router.handle(CLIENT, "mi taxi")
    assert r.replies == [messages.status_assigned("Carlos", "XYZ987", driver.phone)]
    assert r.outcome.status == RequestStatus.ASSIGNED.value
    assert services.conversations.get(CLIENT).state == S.ASSIGNED


@pytest.mark.asyncio
async def test_idle_requester_is_reset_on_next_message(services, register_driver):
    await register_driver()
    router = services.router
    await router.handle(CLIENT, "1")
    await router.handle(CLIENT, "Maria")
    r = await router.handle(CLIENT, "Calle 10 # 5-20")
    request_id = r.outcome.request.id

    services.supervisor.start_idle_timer(CLIENT, 0.01)
    await asyncio.sleep(0.05)
    r = await router.handle(CLIENT, "hola")
    assert r.state == S.DONE
    request = await services.dispatch.lifecycle.get(request_id)
    assert request.cancel_reason == "inactivity"


# ═══════════════════════════════════════════════════════════
# Router: driver commands
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_driver_toggles_availability(services, transport, register_driver):
    driver = await register_driver()
    router = services.router

    r = await router.handle(driver.phone, "ocupado")
    assert r.action == "status"
    assert (await services.drivers.get(driver.phone)).is_active is False
    assert transport.texts_to(driver.phone)[-1] == messages.DRIVER_NOW_INACTIVE

    await router.handle(driver.phone, "disponible")
    assert (await services.drivers.get(driver.phone)).is_active is True


@pytest.mark.asyncio
async def test_driver_complete_without_ride(services, transport, register_driver):
    driver = await register_driver()
    r = await services.router.handle(driver.phone, "terminar")
    assert r.outcome is None
    assert transport.texts_to(driver.phone)[-1] == messages.NO_ACTIVE_RIDES


@pytest.mark.asyncio
async def test_driver_accept_with_nothing_pending(services, transport, register_driver):
    driver = await register_driver()
    await services.router.handle(driver.phone, "1")
    assert transport.texts_to(driver.phone)[-1] == messages.DRIVER_TOO_LATE


@pytest.mark.asyncio
async def test_driver_small_talk_falls_through_to_menu(services, register_driver):
    driver = await register_driver()
    r = await services.router.handle(driver.phone, "buenas")
    assert r.role == "client"
    assert r.state == S.DONE


@pytest.mark.asyncio
async def test_driver_updates_location_inline(services, transport, register_driver):
    driver = await register_driver()
    r = await services.router.handle(driver.phone, "ubicacion Centro Norte")
    assert r.action == "location"
    assert r.outcome.location == "Centro Norte"
    assert transport.texts_to(driver.phone)[-1] == messages.driver_location_updated("Centro Norte")


@pytest.mark.asyncio
async def test_driver_location_prompt_takes_next_message(services, transport, register_driver):
    driver = await register_driver()
    router = services.router

    r = await router.handle(driver.phone, "ubicación")
    assert r.replies == [messages.DRIVER_ASK_LOCATION]

    # too short: the driver is asked again
    r = await router.handle(driver.phone, "N")
    assert r.outcome is None
    assert r.replies[0].startswith("❌")

    r = await router.handle(driver.phone, "Sector La Carolina")
    assert r.outcome.location == "Sector La Carolina"
    assert (await services.drivers.get(driver.phone)).location == "Sector La Carolina"

    # the prompt is spent
    r = await router.handle(driver.phone, "buenas")
    assert r.role == "client"


@pytest.mark.asyncio
async def test_driver_accept_wins_over_location_prompt(services, register_driver):
    driver = await register_driver()
    router = services.router
    await router.handle(driver.phone, "ubicacion")

    r = await router.handle(driver.phone, "1")
    assert r.action == "accept"
    r = await router.handle(driver.phone, "Sector La Carolina")
    assert r.role == "client"


@pytest.mark.asyncio
async def test_driver_profile(services, transport, register_driver):
    driver = await register_driver(name="Carlos", plate="XYZ987", location="Centro")
    r = await services.router.handle(driver.phone, "perfil")
    assert r.action == "profile"
    text = transport.texts_to(driver.phone)[-1]
    assert "Carlos" in text
    assert "XYZ987" in text
    assert "Centro" in text
    assert text == r.replies[0]
