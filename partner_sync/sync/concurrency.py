"""Bounded worker pool for per-entity remote reads."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Iterator, Sequence, TypeVar

from .errors import SyncError

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")

DEFAULT_MAX_WORKERS = 10


@dataclass(frozen=True)
class Outcome(Generic[ItemT, ResultT]):
    item: ItemT
    value: ResultT | None = None
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def bounded_map(
    fn: Callable[[ItemT], ResultT],
    items: Iterable[ItemT],
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> list[Outcome[ItemT, ResultT]]:
    """
    Run ``fn`` over ``items`` with at most ``max_workers`` concurrent calls.

    Outcomes come back in input order regardless of completion order.
    ``SyncError`` is captured per item; anything else propagates.
    Workers must only do remote I/O: database work stays on the caller's thread.
    """

    materialized = list(items)
    if not materialized:
        return []

    def call(item: ItemT) -> Outcome[ItemT, ResultT]:
        try:
            return Outcome(item, value=fn(item))
        except SyncError as exc:
            return Outcome(item, error=exc)

    workers = max(1, min(max_workers, len(materialized)))
    if workers == 1:
        return [call(item) for item in materialized]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="partner-sync") as executor:
        return list(executor.map(call, materialized))


def chunked(items: Sequence[ItemT], size: int) -> Iterator[Sequence[ItemT]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start : start + size]
