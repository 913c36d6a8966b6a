"""Append-only conversation log shared by the processor."""

from __future__ import annotations

from collections.abc import Iterator

from .model import HistoryEntry


class ConversationHistory:
    """Ordered log of everything said in the channel that we acted on.

    Entries are never removed or rewritten. ``snapshot`` hands out an
    immutable tuple so callers can keep it across a network wait while
    new entries keep arriving.
    """

    def __init__(self, entries: tuple[HistoryEntry, ...] = ()) -> None:
        self._entries: list[HistoryEntry] = list(entries)

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)

    def snapshot(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self.snapshot())
