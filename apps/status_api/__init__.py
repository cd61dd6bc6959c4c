"""Read-only HTTP status endpoint for the running consumer."""
