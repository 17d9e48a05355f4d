"""Process health: transport liveness, resource pressure, batch sizing."""
