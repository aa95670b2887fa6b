"""HTTP surface (health and metrics) for typed-exchange services."""
