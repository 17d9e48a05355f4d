"""Driver service — registration, availability and location of drivers.

Learn: Drivers are the workers of the dispatch core. Only ACTIVE drivers
receive broadcasts and may accept rides. Every mutation is validated
here and recorded in the audit log by the store.
"""

from typing import Optional

import structlog

from taxi_dispatch.db.models import Driver
from taxi_dispatch.errors import DriverNotFoundError
from taxi_dispatch.events.types import DRIVER_LOCATION_UPDATED, DRIVER_STATUS_CHANGED
from taxi_dispatch.services.request_store import RequestStore
from taxi_dispatch.validation import (
    clean_phone,
    validate_location,
    validate_name,
    validate_phone,
    validate_plate,
)

logger = structlog.get_logger()


class DriverService:
    def __init__(self, store: RequestStore, country_code: str = "57"):
        self.store = store
        self.country_code = country_code

    async def register(
        self,
        phone: str,
        name: str,
        plate: str,
        location: Optional[str] = None,
    ) -> Driver:
        """Register a new active driver.

        Raises:
            ValidationError: malformed phone, name, plate or location
            DuplicateDriverError: the phone is already registered
        """
        phone = validate_phone(phone, self.country_code)
        name = validate_name(name)
        plate = validate_plate(plate)
        if location:
            location = validate_location(location)

        driver = await self.store.create_driver(
            phone=phone, name=name, plate=plate, location=location
        )
        logger.info("driver.registered", driver_id=str(driver.id), phone=phone, plate=plate)
        return driver

    async def get(self, phone: str) -> Driver:
        driver = await self.store.get_driver_by_phone(clean_phone(phone, self.country_code))
        if not driver:
            raise DriverNotFoundError(f"Driver {phone} not found")
        return driver

    async def is_registered(self, phone: str) -> bool:
        phone = clean_phone(phone, self.country_code)
        return await self.store.get_driver_by_phone(phone) is not None

    async def list_drivers(
        self, active: Optional[bool] = True, location: Optional[str] = None
    ) -> list[Driver]:
        return await self.store.list_drivers(active=active, location=location)

    async def set_active(self, phone: str, is_active: bool) -> Driver:
        phone = clean_phone(phone, self.country_code)
        driver = await self.store.update_driver(
            phone, event_type=DRIVER_STATUS_CHANGED, is_active=is_active
        )
        if not driver:
            raise DriverNotFoundError(f"Driver {phone} not found")
        logger.info("driver.status_changed", phone=phone, is_active=is_active)
        return driver

    async def update_location(self, phone: str, location: str) -> Driver:
        location = validate_location(location)
        phone = clean_phone(phone, self.country_code)
        driver = await self.store.update_driver(
            phone, event_type=DRIVER_LOCATION_UPDATED, location=location
        )
        if not driver:
            raise DriverNotFoundError(f"Driver {phone} not found")
        return driver

    async def delete(self, phone: str) -> None:
        """Raises DriverNotFoundError, or DriverBusyError while they have rides."""
        phone = clean_phone(phone, self.country_code)
        if not await self.store.delete_driver(phone):
            raise DriverNotFoundError(f"Driver {phone} not found")
        logger.info("driver.deleted", phone=phone)

    async def stats(self) -> dict[str, int]:
        return await self.store.driver_stats()
