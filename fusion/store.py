"""
fusion.store
============
Resolution-tagged image store.

Images are kept under the key ``(tag, date)``; at most one image exists per
key.  The store never performs I/O itself: it is filled with :meth:`set` by
whoever loads or predicts an image and emptied with :meth:`remove`, so peak
memory is controlled entirely by the caller.

Public API
----------
ImageStore()
    .has(tag, date)        → bool
    .get(tag, date)        → np.ndarray          (NotFoundError if absent)
    .set(tag, date, img)   → None                (overwrites)
    .remove(tag, date)     → np.ndarray          (NotFoundError if absent)
    .get_dates(tag)        → sorted list of dates
    .tags                  → sorted list of resolution tags
    .count(tag=None)       → number of images (for one tag or in total)
    .get_any()             → any stored image
"""

from __future__ import annotations

from typing import Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

import numpy as np


T = TypeVar("T")


class NotFoundError(KeyError):
    """Raised when a ``(tag, date)`` key is not present in a store."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Key not found"


class MultiResCollection(Generic[T]):
    """
    Generic ``(tag, date) → value`` collection.

    Used for images (:class:`ImageStore`) and for lighter things like
    file entries or :class:`~fusion.ingestion.GeoInfo` records.
    """

    def __init__(self) -> None:
        self._items: Dict[str, Dict[int, T]] = {}

    def has(self, tag: str, date: int) -> bool:
        return date in self._items.get(tag, {})

    def get(self, tag: str, date: int) -> T:
        try:
            return self._items[tag][date]
        except KeyError:
            raise NotFoundError(
                f"No entry for resolution tag '{tag}' and date {date}."
            ) from None

    def set(self, tag: str, date: int, value: T) -> None:
        self._items.setdefault(tag, {})[int(date)] = value

    def remove(self, tag: str, date: int) -> T:
        if not self.has(tag, date):
            raise NotFoundError(
                f"Cannot remove: no entry for resolution tag '{tag}' and date {date}."
            )
        value = self._items[tag].pop(date)
        if not self._items[tag]:
            del self._items[tag]
        return value

    def get_dates(self, tag: str) -> List[int]:
        return sorted(self._items.get(tag, {}))

    @property
    def tags(self) -> List[str]:
        return sorted(self._items)

    def count(self, tag: Optional[str] = None) -> int:
        if tag is not None:
            return len(self._items.get(tag, {}))
        return sum(len(d) for d in self._items.values())

    def keys(self) -> List[Tuple[str, int]]:
        return [(tag, date) for tag in self.tags for date in self.get_dates(tag)]

    def get_any(self) -> T:
        for dates in self._items.values():
            for value in dates.values():
                return value
        raise NotFoundError("The collection is empty.")

    def __len__(self) -> int:
        return self.count()

    def __iter__(self) -> Iterator[Tuple[str, int]]:
        return iter(self.keys())

    def __contains__(self, key: Tuple[str, int]) -> bool:
        tag, date = key
        return self.has(tag, date)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.keys()})"


class ImageStore(MultiResCollection[np.ndarray]):
    """
    Image cache keyed by resolution tag and date.

    Images are ``(channels, height, width)`` arrays.  The store tracks the
    largest number of images it ever held at once in :attr:`peak`.
    """

    def __init__(self) -> None:
        super().__init__()
        self.peak = 0

    def set(self, tag: str, date: int, value: np.ndarray) -> None:
        super().set(tag, date, value)
        self.peak = max(self.peak, self.count())
