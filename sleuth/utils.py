"""Shared utility functions used across Sleuth modules."""
from __future__ import annotations

import math
from datetime import datetime


def round_half_up(value: float) -> int:
    """Round halves upwards (``round()`` would round them to even)."""
    return math.floor(value + 0.5)


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
