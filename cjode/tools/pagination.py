"""Offset/limit windowing shared by the search tools."""

from typing import Sequence, TypeVar

T = TypeVar("T")


def paginate(items: Sequence[T], offset: int, limit: int) -> list[T]:
    """Return the ``[offset, offset + limit)`` window of ``items``.

    An offset past the end yields an empty page.
    """
    start = max(0, int(offset))
    size = max(0, int(limit))
    return list(items[start:start + size])
