"""Bounded window of recently seen transaction signatures."""

from __future__ import annotations

from collections import OrderedDict

DEFAULT_MAX_SIZE = 1000


class DedupWindow:
    """Insertion-ordered set of signatures with a high-water mark.

    A signature is inserted when processing begins and stays in the window
    after it completes, so a repeat within the same batch or across the
    ``until`` boundary of the next poll is skipped. ``trim()`` keeps the most
    recent ``max_size`` insertions; anything older may be processed again.
    Entries never survive a restart.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        self._max_size = max_size
        self._entries: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, signature: object) -> bool:
        return signature in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, signature: str) -> bool:
        """Insert a signature. Returns False if it was already in the window."""
        if signature in self._entries:
            return False
        self._entries[signature] = None
        return True

    def trim(self) -> int:
        """Drop the oldest entries beyond ``max_size``. Returns the count evicted."""
        evicted = 0
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)
            evicted += 1
        return evicted
