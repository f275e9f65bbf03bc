"""
performance_record.py - The flat metric record sent in the beacon.
"""

from __future__ import annotations

import math
from collections import UserDict


def is_defined(value) -> bool:
    """False for None and for floats that are NaN or infinite."""
    if value is None:
        return False
    if isinstance(value, float) and not math.isfinite(value):
        return False
    return True


def is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def js_round(value: float) -> int:
    """Round half up, like Math.round (Python's round() is half-to-even)."""
    return math.floor(value + 0.5)


class PerformanceRecord(UserDict):
    """
    Metric name -> number or string.

    Assigning an undefined value (None, NaN, +/-inf) removes the field, so an
    absent metric is never serialized.
    """

    def __setitem__(self, key: str, value) -> None:
        if is_defined(value):
            self.data[key] = value
        else:
            self.data.pop(key, None)
