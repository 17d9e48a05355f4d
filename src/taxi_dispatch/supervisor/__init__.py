"""Per-requester timers (request accept window and idle window)."""
