"""Ride request lifecycle tests.

Tests the state machine (PENDING → ASSIGNED → COMPLETED, PENDING →
CANCELLED), supersession of a client's previous request, idempotent
cancellation and the audit events written alongside every change.
"""

import uuid

import pytest

from taxi_dispatch.container import build_services
from taxi_dispatch.db.models import RequestStatus
from taxi_dispatch.errors import InvalidTransition, RequestNotFoundError, ValidationError
from taxi_dispatch.events.store import EventStore, ride_stream
from taxi_dispatch.services.assignment import Assigned, AssignmentCoordinator
from taxi_dispatch.services.lifecycle import RequestLifecycle, can_transition


@pytest.fixture()
def lifecycle(services) -> RequestLifecycle:
    return services.dispatch.lifecycle


async def _events(store, request_id):
    async with store.session_factory() as db:
        return await EventStore(db).read_stream(ride_stream(request_id))


# ═══════════════════════════════════════════════════════════
# State machine table
# ═══════════════════════════════════════════════════════════


def test_transition_table():
    S = RequestStatus
    assert can_transition(S.PENDING, S.ASSIGNED)
    assert can_transition(S.PENDING, S.CANCELLED)
    assert can_transition(S.ASSIGNED, S.COMPLETED)
    assert not can_transition(S.ASSIGNED, S.CANCELLED)
    assert not can_transition(S.ASSIGNED, S.PENDING)
    assert not can_transition(S.COMPLETED, S.PENDING)
    assert not can_transition(S.CANCELLED, S.PENDING)


# ═══════════════════════════════════════════════════════════
# Creation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_request_is_pending(lifecycle):
    req = await lifecycle.create_request("+57 300 111 2222", "Maria", "Calle 10 # 5-20")
    assert req.status == RequestStatus.PENDING.value
    assert req.client_phone == "3001112222"
    assert req.assigned_driver_id is None
    assert req.cancel_reason is None


@pytest.mark.asyncio
async def test_create_request_supersedes_previous_pending(lifecycle):
    first = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    second = await lifecycle.create_request("3001112222", "Maria", "Carrera 7 # 12-40")

    first = await lifecycle.get(first.id)
    assert first.status == RequestStatus.CANCELLED.value
    assert first.cancel_reason == "superseded by a new request"
    assert second.status == RequestStatus.PENDING.value


@pytest.mark.asyncio
async def test_create_request_leaves_other_clients_alone(lifecycle):
    a = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    await lifecycle.create_request("3003334444", "Pedro", "Carrera 7 # 12-40")
    assert (await lifecycle.get(a.id)).status == RequestStatus.PENDING.value


@pytest.mark.asyncio
async def test_create_request_validation_writes_nothing(lifecycle, services):
    with pytest.raises(ValidationError) as exc:
        await lifecycle.create_request("3001112222", "M", "Calle 10 # 5-20")
    assert exc.value.field == "name"
    with pytest.raises(ValidationError):
        await lifecycle.create_request("12345", "Maria", "Calle 10 # 5-20")
    with pytest.raises(ValidationError):
        await lifecycle.create_request("3001112222", "Maria", "abc")

    assert await services.store.list_requests() == []


# ═══════════════════════════════════════════════════════════
# Cancellation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_cancel_pending(lifecycle):
    req = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    cancelled = await lifecycle.cancel(req.id, "client")
    assert cancelled.status == RequestStatus.CANCELLED.value
    assert cancelled.cancel_reason == "client"


@pytest.mark.asyncio
async def test_cancel_is_idempotent(lifecycle):
    req = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    await lifecycle.cancel(req.id, "client")
    again = await lifecycle.cancel(req.id, "operator")
    assert again.status == RequestStatus.CANCELLED.value
    assert again.cancel_reason == "client"


@pytest.mark.asyncio
async def test_cancel_if_pending_reports_who_won(lifecycle):
    req = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    assert await lifecycle.cancel_if_pending(req.id, "timeout") is True
    assert await lifecycle.cancel_if_pending(req.id, "timeout") is False


@pytest.mark.asyncio
async def test_cancel_assigned_is_rejected(lifecycle, services, register_driver):
    driver = await register_driver()
    req = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    outcome = await AssignmentCoordinator(services.store).try_assign(req.id, driver.phone)
    assert isinstance(outcome, Assigned)

    with pytest.raises(InvalidTransition):
        await lifecycle.cancel(req.id, "client")
    assert (await lifecycle.get(req.id)).status == RequestStatus.ASSIGNED.value


@pytest.mark.asyncio
async def test_cancel_missing_request(lifecycle):
    with pytest.raises(RequestNotFoundError):
        await lifecycle.cancel(uuid.uuid4(), "client")


# ═══════════════════════════════════════════════════════════
# Completion
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_complete_requires_assigned(lifecycle):
    req = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    with pytest.raises(InvalidTransition):
        await lifecycle.complete(req.id)

    await lifecycle.cancel(req.id, "client")
    with pytest.raises(InvalidTransition):
        await lifecycle.complete(req.id)
    assert (await lifecycle.get(req.id)).status == RequestStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_complete_assigned(lifecycle, services, register_driver):
    driver = await register_driver()
    req = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    await AssignmentCoordinator(services.store).try_assign(req.id, driver.phone)

    done = await lifecycle.complete(req.id)
    assert done.status == RequestStatus.COMPLETED.value
    assert done.assigned_driver_id == driver.id


# ═══════════════════════════════════════════════════════════
# Audit trail
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_every_change_is_recorded(lifecycle, services, register_driver):
    driver = await register_driver()
    req = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    await AssignmentCoordinator(services.store).try_assign(req.id, driver.phone)
    await lifecycle.complete(req.id)

    events = await _events(services.store, req.id)
    assert [e.type for e in events] == ["ride.requested", "ride.assigned", "ride.completed"]
    assert events[1].data["driver_phone"] == driver.phone


@pytest.mark.asyncio
async def test_noop_cancel_writes_no_event(lifecycle, services):
    req = await lifecycle.create_request("3001112222", "Maria", "Calle 10 # 5-20")
    await lifecycle.cancel(req.id, "client")
    await lifecycle.cancel(req.id, "client")

    events = await _events(services.store, req.id)
    assert [e.type for e in events] == ["ride.requested", "ride.cancelled"]


@pytest.mark.asyncio
async def test_country_code_setting_reaches_every_service(test_settings, session_factory, transport):
    test_settings.country_code = "593"
    svc = build_services(test_settings, session_factory, transport=transport, publish_events=False)
    try:
        driver = await svc.drivers.register("+593 310 000 0001", "Carlos", "ABC123")
        assert driver.phone == "3100000001"
        assert (await svc.drivers.get("5933100000001")).id == driver.id

        req = await svc.dispatch.lifecycle.create_request(
            "+593 300 111 2222", "Maria", "Calle 10 # 5-20"
        )
        assert req.client_phone == "3001112222"
    finally:
        await svc.aclose()
