"""Shared helpers: logging, error alerting and feature toggles."""
