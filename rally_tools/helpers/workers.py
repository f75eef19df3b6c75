"""Bounded thread pool for fanning out blocking API calls."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_MAX_WORKERS = 8


def run_concurrently(fn: Callable[[T], R], items: Iterable[T], max_workers: int = DEFAULT_MAX_WORKERS) -> List[R]:
    """Apply fn to every item with at most max_workers calls in flight.

    Results come back in input order. The first exception raised by fn
    propagates once every submitted call has finished, so callers that want
    per-item failures must catch them inside fn.
    """
    items = list(items)
    if not items:
        return []
    workers = max(1, min(max_workers, len(items)))
    if workers == 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rally") as pool:
        return list(pool.map(fn, items))
