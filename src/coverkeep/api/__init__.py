"""Operational HTTP API."""
