"""Background worker — cleanup sweeper and health monitor loops."""
