"""Shared utilities: logging, errors, configuration and timestamps."""
