"""Shared utilities: file helpers and logging formatters."""

__all__: list[str] = []
