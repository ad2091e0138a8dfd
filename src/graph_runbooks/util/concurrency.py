from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def parallel_map_ordered(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    max_workers: int,
) -> List[R]:
    """
    Apply func to every item and return the results in input order.

    With max_workers <= 1 (or a single item) everything runs on the calling
    thread, one item at a time. Otherwise a pool of at most max_workers
    threads is used. The first worker exception propagates and cancels work
    that has not started yet.
    """
    batch = list(items)
    workers = min(max_workers, len(batch))
    if workers <= 1:
        return [func(item) for item in batch]

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lookup") as executor:
        futures = [executor.submit(func, item) for item in batch]
        try:
            return [fut.result() for fut in futures]
        except BaseException:
            for fut in futures:
                fut.cancel()
            raise
