"""
Sequential ID allocation, one counter per entity kind
"""
from collections import Counter

PREFIXES = {
    "chapter": "ch",
    "image": "img",
    "table": "tbl",
    "footnote": "ftn",
}


class IdAllocator:
    """
    Explicit allocation context threaded through one processing run.

    IDs look like ``ch-001``; padding is 3 digits and simply grows past 999.
    A new run creates a new allocator instead of resetting a shared one.
    """

    def __init__(self):
        self._counters = Counter()

    def next_id(self, kind: str) -> str:
        if kind not in PREFIXES:
            raise KeyError(f"Unknown ID kind: {kind}")
        self._counters[kind] += 1
        return f"{PREFIXES[kind]}-{self._counters[kind]:03d}"

    def chapter_id(self) -> str:
        return self.next_id("chapter")

    def image_id(self) -> str:
        return self.next_id("image")

    def table_id(self) -> str:
        return self.next_id("table")

    def footnote_id(self) -> str:
        return self.next_id("footnote")

    def counts(self) -> dict:
        return dict(self._counters)
