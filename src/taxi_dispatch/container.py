"""Service wiring — one place that builds the dispatch core.

Learn: Every component takes its collaborators as constructor arguments
(no module-level singletons besides `settings`), so the API lifespan,
the standalone worker and the tests all build the same graph and only
swap the edges: the session factory, the transport, the settings.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxi_dispatch.config import Settings
from taxi_dispatch.conversation.fsm import ConversationStore
from taxi_dispatch.conversation.router import InboundRouter
from taxi_dispatch.geocoding import Geocoder
from taxi_dispatch.monitor.health import HealthMonitor
from taxi_dispatch.notifications.dispatcher import NotificationDispatcher
from taxi_dispatch.notifications.sender import ReliableSender
from taxi_dispatch.notifications.transport import HttpGatewayTransport, MessagingTransport
from taxi_dispatch.realtime.pubsub import publish_ride_event
from taxi_dispatch.services.assignment import AssignmentCoordinator
from taxi_dispatch.services.dispatch import DispatchService
from taxi_dispatch.services.driver_service import DriverService
from taxi_dispatch.services.lifecycle import RequestLifecycle
from taxi_dispatch.services.request_store import RequestStore
from taxi_dispatch.supervisor.timeouts import SessionTimeoutSupervisor


@dataclass
class Services:
    settings: Settings
    store: RequestStore
    transport: MessagingTransport
    drivers: DriverService
    notifier: NotificationDispatcher
    supervisor: SessionTimeoutSupervisor
    health: HealthMonitor
    dispatch: DispatchService
    router: InboundRouter
    conversations: ConversationStore
    geocoder: Optional[Geocoder] = None

    async def aclose(self) -> None:
        self.health.stop()
        await self.supervisor.shutdown()
        await self.transport.close()
        if self.geocoder is not None:
            await self.geocoder.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    transport: Optional[MessagingTransport] = None,
    geocoder: Optional[Geocoder] = None,
    publish_events: bool = True,
) -> Services:
    store = RequestStore(session_factory)
    lifecycle = RequestLifecycle(store, country_code=settings.country_code)
    conversations = ConversationStore()

    if transport is None:
        transport = HttpGatewayTransport(
            settings.gateway_url,
            token=settings.gateway_token,
            country_code=settings.country_code,
            timeout=settings.message_timeout_seconds + 5,
        )
    if geocoder is None and settings.google_maps_api_key:
        geocoder = Geocoder(
            settings.google_maps_api_key,
            language=settings.geocoding_language,
            region=settings.geocoding_region,
            timeout=settings.geocoding_timeout_seconds,
        )

    health = HealthMonitor(transport, settings)
    sender = ReliableSender(
        transport,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay_seconds,
        message_timeout=settings.message_timeout_seconds,
    )
    notifier = NotificationDispatcher(
        store,
        transport,
        sender,
        batch_size=settings.batch_size,
        min_batch_size=settings.min_batch_size,
        max_batch_size=settings.max_batch_size,
        max_parallel_batches=settings.max_parallel_batches,
        batch_delay=settings.batch_delay_seconds,
        location_pin_delay=settings.location_pin_delay_seconds,
        presence_delay=settings.presence_delay_seconds,
        parallel=settings.parallel_notifications,
        batch_size_hint=health.current_batch_size_hint,
    )
    supervisor = SessionTimeoutSupervisor(
        lifecycle,
        store,
        notify_timeout=notifier.notify_timeout,
        conversations=conversations,
        request_timeout=settings.request_timeout_seconds,
        idle_timeout=settings.idle_timeout_seconds,
    )
    dispatch = DispatchService(
        store=store,
        lifecycle=lifecycle,
        assignment=AssignmentCoordinator(store),
        notifier=notifier,
        supervisor=supervisor,
        settings=settings,
        geocoder=geocoder,
        conversations=conversations,
        publish=publish_ride_event if publish_events else None,
    )
    drivers = DriverService(store, country_code=settings.country_code)
    router = InboundRouter(dispatch, drivers, conversations, notifier, settings)

    return Services(
        settings=settings,
        store=store,
        transport=transport,
        drivers=drivers,
        notifier=notifier,
        supervisor=supervisor,
        health=health,
        dispatch=dispatch,
        router=router,
        conversations=conversations,
        geocoder=geocoder,
    )
