"""Read-only HTTP endpoints for ledger status."""
