"""Warning/critical threshold classification."""

from datetime import timedelta
from enum import IntEnum
from typing import TypeVar

T = TypeVar("T", timedelta, float)


class Level(IntEnum):
    NONE = 0
    WARNING = 1
    CRITICAL = 2


def classify(value: T, warning: T, critical: T) -> Level:
    """Map a duration or percentage onto NONE/WARNING/CRITICAL.

    Crossing is inclusive (>=) and critical is checked first. Assumes
    warning < critical, which Settings validation guarantees.
    """
    if value >= critical:
        return Level.CRITICAL
    if value >= warning:
        return Level.WARNING
    return Level.NONE
