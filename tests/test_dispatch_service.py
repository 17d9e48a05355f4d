"""DispatchService end-to-end tests (no HTTP).

Tests the full use cases: create → broadcast → accept → complete, the
zero-driver auto-cancel, the request timer and its race with accepts,
and the stale-request sweeper.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from taxi_dispatch import messages
from taxi_dispatch.db.models import RequestStatus, RideRequest, utcnow
from taxi_dispatch.errors import (
    DriverNotFoundError,
    InvalidTransition,
    TransientSendFailure,
)
from taxi_dispatch.events.store import EventStore, ride_stream
from taxi_dispatch.services.assignment import AlreadyTaken, Assigned, NotEligible

CLIENT = "3009990000"


# ═══════════════════════════════════════════════════════════
# Creation and broadcast
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_broadcasts_and_arms_timer(services, transport, register_driver):
    drivers = [await register_driver() for _ in range(3)]

    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")
    assert not ticket.auto_cancelled
    assert ticket.request.status == RequestStatus.PENDING.value
    assert ticket.broadcast.sent == 3
    assert services.supervisor.has_timer(CLIENT)

    summary = transport.texts_to(CLIENT)
    assert len(summary) == 1
    assert "3 drivers were notified" in summary[0]
    for driver in drivers:
        assert len(transport.texts_to(driver.phone)) == 1


@pytest.mark.asyncio
async def test_zero_drivers_cancels_and_notifies_once(services, transport):
    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")

    assert ticket.auto_cancelled
    assert ticket.request.status == RequestStatus.CANCELLED.value
    assert ticket.request.cancel_reason == "no drivers"
    assert transport.texts_to(CLIENT) == [messages.NO_DRIVERS_AVAILABLE]
    assert not services.supervisor.has_timer(CLIENT)


@pytest.mark.asyncio
async def test_all_sends_failing_counts_as_zero_drivers(services, transport, register_driver):
    driver = await register_driver()
    transport.fail_always(driver.phone, TransientSendFailure(driver.phone, "gateway 500"))

    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")
    assert ticket.broadcast.sent == 0
    assert ticket.broadcast.failed == 1
    assert ticket.auto_cancelled
    assert ticket.request.status == RequestStatus.CANCELLED.value
    assert transport.texts_to(CLIENT) == [messages.NO_DRIVERS_AVAILABLE]


@pytest.mark.asyncio
async def test_requester_is_not_notified_as_driver(services, transport, register_driver):
    requester = await register_driver()
    other = await register_driver()

    ticket = await services.dispatch.create_request(requester.phone, "Maria", "Calle 10 # 5-20")
    assert ticket.broadcast.sent == 1
    assert transport.texts_to(other.phone)


@pytest.mark.asyncio
async def test_rebroadcast_only_pending(services, register_driver):
    await register_driver()
    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")

    result = await services.dispatch.broadcast(ticket.request.id)
    assert result.sent == 1

    await services.dispatch.cancel_request(ticket.request.id)
    with pytest.raises(InvalidTransition):
        await services.dispatch.broadcast(ticket.request.id)


# ═══════════════════════════════════════════════════════════
# Accept
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_accept_notifies_everyone(services, transport, register_driver):
    winner = await register_driver(name="Carlos", plate="XYZ789")
    other = await register_driver()
    await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")

    outcome = await services.dispatch.try_accept(winner.phone)
    assert isinstance(outcome, Assigned)
    assert not services.supervisor.has_timer(CLIENT)

    client_texts = transport.texts_to(CLIENT)
    assert any("XYZ789" in t and "Carlos" in t for t in client_texts)
    assert messages.CLIENT_CANCELLATION_AVAILABLE in client_texts
    assert any(messages.DRIVER_ACCEPTED in t for t in transport.texts_to(winner.phone))
    assert transport.texts_to(other.phone)[-1] == messages.other_drivers_taken("Carlos")


@pytest.mark.asyncio
async def test_late_accept_is_told_too_late(services, transport, register_driver):
    first = await register_driver()
    second = await register_driver()
    await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")

    assert isinstance(await services.dispatch.try_accept(first.phone), Assigned)
    outcome = await services.dispatch.try_accept(second.phone)
    assert isinstance(outcome, AlreadyTaken)
    assert transport.texts_to(second.phone)[-1] == messages.DRIVER_TOO_LATE


@pytest.mark.asyncio
async def test_inactive_driver_is_told_so(services, transport, register_driver):
    driver = await register_driver()
    await register_driver()
    await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")
    await services.drivers.set_active(driver.phone, False)

    outcome = await services.dispatch.try_accept(driver.phone)
    assert isinstance(outcome, NotEligible)
    assert transport.texts_to(driver.phone)[-1] == messages.DRIVER_INACTIVE


# ═══════════════════════════════════════════════════════════
# Request timer
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_request_timer_cancels_and_notifies_once(services, transport, register_driver):
    await register_driver()
    services.supervisor.request_timeout = 0.05

    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")
    await asyncio.sleep(0.3)

    request = await services.dispatch.lifecycle.get(ticket.request.id)
    assert request.status == RequestStatus.CANCELLED.value
    assert request.cancel_reason == "timeout"
    timeouts = [t for t in transport.texts_to(CLIENT) if t.startswith(messages.REQUEST_TIMEOUT)]
    assert len(timeouts) == 1


@pytest.mark.asyncio
async def test_accept_before_expiry_wins_over_timer(services, transport, register_driver):
    driver = await register_driver()
    services.supervisor.request_timeout = 0.1

    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")
    assert isinstance(await services.dispatch.try_accept(driver.phone), Assigned)
    await asyncio.sleep(0.3)

    request = await services.dispatch.lifecycle.get(ticket.request.id)
    assert request.status == RequestStatus.ASSIGNED.value
    assert not any(t.startswith(messages.REQUEST_TIMEOUT) for t in transport.texts_to(CLIENT))


@pytest.mark.asyncio
async def test_client_cancel_disarms_timer(services, transport, register_driver):
    await register_driver()
    services.supervisor.request_timeout = 0.1
    await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")

    assert await services.dispatch.cancel_client_pending(CLIENT) is True
    await asyncio.sleep(0.3)

    texts = transport.texts_to(CLIENT)
    assert messages.REQUEST_CANCELLED in texts
    assert not any(t.startswith(messages.REQUEST_TIMEOUT) for t in texts)


@pytest.mark.asyncio
async def test_cancelling_superseded_request_keeps_new_timer(services, transport, register_driver):
    await register_driver()
    services.supervisor.request_timeout = 0.1
    first = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")
    second = await services.dispatch.create_request(CLIENT, "Maria", "Carrera 7 # 12-40")

    # first is already CANCELLED (superseded); cancelling it again is a no-op
    again = await services.dispatch.cancel_request(first.request.id)
    assert again.cancel_reason == "superseded by a new request"
    assert services.supervisor.armed_request(CLIENT) == second.request.id

    await asyncio.sleep(0.4)
    request = await services.dispatch.lifecycle.get(second.request.id)
    assert request.status == RequestStatus.CANCELLED.value
    assert request.cancel_reason == "timeout"
    timeouts = [t for t in transport.texts_to(CLIENT) if t.startswith(messages.REQUEST_TIMEOUT)]
    assert len(timeouts) == 1


@pytest.mark.asyncio
async def test_cancel_racing_timer_resolves_once(services, transport, register_driver):
    await register_driver()
    services.supervisor.request_timeout = 0.1
    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")

    await asyncio.sleep(0.09)
    await asyncio.gather(
        services.dispatch.lifecycle.cancel(ticket.request.id, "client"),
        asyncio.sleep(0.03),
    )
    await asyncio.sleep(0.2)

    request = await services.dispatch.lifecycle.get(ticket.request.id)
    assert request.status == RequestStatus.CANCELLED.value
    assert request.cancel_reason in ("client", "timeout")

    async with services.store.session_factory() as db:
        events = await EventStore(db).read_stream(ride_stream(ticket.request.id))
    assert [e.type for e in events].count("ride.cancelled") == 1
    timeouts = [t for t in transport.texts_to(CLIENT) if t.startswith(messages.REQUEST_TIMEOUT)]
    assert len(timeouts) == (1 if request.cancel_reason == "timeout" else 0)


@pytest.mark.asyncio
async def test_rebroadcast_reaching_nobody_cancels(services, transport, register_driver):
    driver = await register_driver()
    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")
    transport.fail_always(driver.phone, TransientSendFailure(driver.phone, "gateway 500"))

    result = await services.dispatch.broadcast(ticket.request.id)
    assert result.sent == 0

    request = await services.dispatch.lifecycle.get(ticket.request.id)
    assert request.status == RequestStatus.CANCELLED.value
    assert request.cancel_reason == "no drivers"
    assert transport.texts_to(CLIENT).count(messages.NO_DRIVERS_AVAILABLE) == 1
    assert not services.supervisor.has_timer(CLIENT)


@pytest.mark.asyncio
async def test_rebroadcast_restarts_accept_window(services, register_driver):
    await register_driver()
    services.supervisor.request_timeout = 0.2
    ticket = await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")

    await asyncio.sleep(0.12)
    await services.dispatch.broadcast(ticket.request.id)
    assert services.supervisor.armed_request(CLIENT) == ticket.request.id

    # past the first window, inside the restarted one
    await asyncio.sleep(0.12)
    request = await services.dispatch.lifecycle.get(ticket.request.id)
    assert request.status == RequestStatus.PENDING.value

    await asyncio.sleep(0.3)
    request = await services.dispatch.lifecycle.get(ticket.request.id)
    assert request.cancel_reason == "timeout"


@pytest.mark.asyncio
async def test_cancel_without_pending(services, transport):
    assert await services.dispatch.cancel_client_pending(CLIENT) is False
    assert transport.texts_to(CLIENT) == [messages.NO_PENDING_REQUEST]


# ═══════════════════════════════════════════════════════════
# Completion
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_driver_completes_ride(services, transport, register_driver):
    driver = await register_driver()
    await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")
    await services.dispatch.try_accept(driver.phone)

    ride = await services.dispatch.complete_for_driver(driver.phone)
    assert ride.status == RequestStatus.COMPLETED.value
    assert transport.texts_to(CLIENT)[-1] == messages.RIDE_COMPLETED

    assert await services.dispatch.complete_for_driver(driver.phone) is None


@pytest.mark.asyncio
async def test_complete_for_unknown_driver(services):
    with pytest.raises(DriverNotFoundError):
        await services.dispatch.complete_for_driver("3005556666")


# ═══════════════════════════════════════════════════════════
# Housekeeping
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_cleanup_expired_cancels_stale_pending(services):
    lifecycle = services.dispatch.lifecycle
    stale = await lifecycle.create_request("3001110000", "Ana", "Calle 10 # 5-20")
    fresh = await lifecycle.create_request("3002220000", "Luis", "Carrera 7 # 12-40")

    async with services.store.transaction() as db:
        await db.execute(
            update(RideRequest)
            .where(RideRequest.id == stale.id)
            .values(created_at=utcnow() - timedelta(minutes=30))
        )

    assert await services.dispatch.cleanup_expired() == 1
    stale = await lifecycle.get(stale.id)
    assert stale.status == RequestStatus.CANCELLED.value
    assert stale.cancel_reason == "expired"
    assert (await lifecycle.get(fresh.id)).status == RequestStatus.PENDING.value


@pytest.mark.asyncio
async def test_stats_shape(services, register_driver):
    await register_driver()
    await services.dispatch.create_request(CLIENT, "Maria", "Calle 10 # 5-20")

    stats = await services.dispatch.stats()
    assert stats["requests"]["PENDING"] == 1
    assert stats["requests"]["TOTAL"] == 1
    assert stats["drivers"]["active_drivers"] == 1
    assert stats["delivery"]["sent"] >= 1
    assert stats["active_request_timers"] == 1
