"""Read-only status API consumed by the dashboard."""
