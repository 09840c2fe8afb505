"""Versioned request bodies for the HTTP API."""
