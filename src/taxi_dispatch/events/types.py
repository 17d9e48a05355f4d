"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all event types in the system.
"""

# ─── Ride requests ───────────────────────────────────────

RIDE_REQUESTED = "ride.requested"
RIDE_ASSIGNED = "ride.assigned"
RIDE_COMPLETED = "ride.completed"
RIDE_CANCELLED = "ride.cancelled"
RIDE_BROADCAST = "ride.broadcast"

# ─── Drivers ─────────────────────────────────────────────

DRIVER_REGISTERED = "driver.registered"
DRIVER_STATUS_CHANGED = "driver.status_changed"
DRIVER_LOCATION_UPDATED = "driver.location_updated"
DRIVER_DELETED = "driver.deleted"
