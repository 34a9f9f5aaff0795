"""Shared utility functions used across RivalScout modules."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Iterable, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the DateTime columns are stored."""
    return datetime.now(UTC).replace(tzinfo=None)


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def uniq(items: Iterable[T]) -> list[T]:
    """Order-preserving de-duplication."""
    return list(dict.fromkeys(items))
