"""Telemetry domain: operational system logging.

Structure:
    system/         System operational logs (stderr + optional system.jsonl)
"""

__all__: list[str] = []
