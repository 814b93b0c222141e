"""HTTP API for the order reconciliation service."""
