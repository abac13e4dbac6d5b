from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

ItemT = TypeVar("ItemT")

PageFetcher = Callable[[str], tuple[list[ItemT], str]]


def accumulate_pages(fetch_page: PageFetcher[ItemT], *, limit: int | None = None) -> list[ItemT]:
    """Follow a platform cursor until it comes back empty, concatenating pages in order.

    `fetch_page` receives the previous page's cursor ("" for the first page). There is no
    page cap here: a platform that never returns an empty cursor keeps this looping, and
    that is the platform API's contract to honor. Callers that only want the first N items
    pass `limit` explicitly.
    """
    items: list[ItemT] = []
    cursor = ""
    while True:
        page, cursor = fetch_page(cursor)
        items.extend(page)
        if not cursor:
            break
        if limit is not None and limit > 0 and len(items) >= limit:
            break

    if limit is not None and limit > 0:
        return items[:limit]
    return items
