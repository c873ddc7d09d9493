"""Runtime, telemetry and health infrastructure."""
