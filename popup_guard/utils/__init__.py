"""Shared utilities: logging, configuration, payload sanitization."""
