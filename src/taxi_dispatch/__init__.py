"""Taxi Dispatch — ride request dispatch for a taxi cooperative.

Requesters chat with the cooperative's messaging number; every active
driver is notified of a new ride, the first to reply gets it, and the
rest are told it is gone. This package is that dispatch core plus its
HTTP API, background worker and operator CLI.
"""

__version__ = "0.1.0"
