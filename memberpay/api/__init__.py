"""HTTP API for memberpay."""
