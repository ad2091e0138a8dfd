from __future__ import annotations

from typing import Callable, Iterator, Optional, Sequence, Set, Tuple, TypeVar

from .errors import FetchError

T = TypeVar("T")

PageFetcher = Callable[[Optional[str]], Tuple[Sequence[T], Optional[str]]]


def paginate(fetch: PageFetcher[T]) -> Iterator[T]:
    """
    Yield every item of a cursor-paged collection, in arrival order.

    fetch(None) requests the first page; each later call receives the previous
    response's next link exactly as the server sent it (an absolute
    `@odata.nextLink` URL or a cost query `nextLink`), never rebuilt locally.
    A missing or empty link ends the collection. A link the server already
    handed out means the collection would never end, so it raises FetchError.
    """
    seen: Set[str] = set()
    next_link: Optional[str] = None
    while True:
        items, next_link = fetch(next_link)
        yield from items
        if not next_link:
            return
        if next_link in seen:
            raise FetchError(f"Pagination repeated a next link: {next_link}", url=next_link)
        seen.add(next_link)
