"""Fixed-size batching of ordered work lists."""

from __future__ import annotations

from typing import Iterator, Sequence, TypeVar

T = TypeVar("T")


def chunk(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive batches of at most ``size`` items, preserving order.

    An empty input yields nothing; the last batch may be short.
    """
    if size < 1:
        raise ValueError(f"batch size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def batch_count(total: int, size: int) -> int:
    return (total + size - 1) // size
