"""Shared utilities: logging setup and retry helpers."""
