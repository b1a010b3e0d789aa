"""Pure metric math helpers used by change detection and the performance monitor."""
from __future__ import annotations

from typing import Sequence


def safe_div(numerator: float | int, denominator: float | int) -> float:
    if denominator in (0, 0.0):
        return 0.0
    return float(numerator) / float(denominator)


def percent_change(previous: float | int, current: float | int) -> float:
    """Signed percent change; 0 when there is no baseline."""
    if previous == 0:
        return 0.0
    return (float(current) - float(previous)) / float(previous) * 100.0


def percentage(part: float | int, whole: float | int) -> float:
    return safe_div(part, whole) * 100.0


def mean(values: Sequence[float]) -> float:
    return safe_div(sum(values), len(values))


def median(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2.0
    return float(ordered[mid])


__all__ = ["safe_div", "percent_change", "percentage", "mean", "median"]
