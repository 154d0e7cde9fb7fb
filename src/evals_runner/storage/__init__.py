"""SQLite storage for runs, tasks and task telemetry."""
