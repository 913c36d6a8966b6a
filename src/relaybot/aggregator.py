"""Per-sender debounce buffer and the periodic flush scheduler."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import anyio

from .dispatch import DispatchClosedError, DispatchQueue
from .logging import get_logger
from .model import FlushedUnit

logger = get_logger(__name__)

DEFAULT_TTL_MS = 1000.0
DEFAULT_TICK_MS = 100.0


@dataclass
class PendingAggregate:
    """Messages from one sender that have not been flushed yet."""

    messages: list[str] = field(default_factory=list)
    last_activity: float = 0.0


class MessageAggregator:
    """Coalesces bursts of messages from the same sender.

    A sender's messages are held until nothing new has arrived from them
    for ``ttl_ms``, then joined with single spaces into one FlushedUnit.
    Both methods run without suspending, so on a single event loop every
    ``record`` and every flush scan is atomic.

    Usage:
        aggregator = MessageAggregator(ttl_ms=1000.0)
        aggregator.record("alice", "hello")
        aggregator.record("alice", "world")
        ...
        for unit in aggregator.flush_expired():
            ...
    """

    def __init__(
        self,
        ttl_ms: float = DEFAULT_TTL_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_ms = ttl_ms
        self.ttl_s = ttl_ms / 1000.0
        self._clock = clock
        self._pending: dict[str, PendingAggregate] = {}

    def record(self, sender: str, text: str) -> None:
        """Buffer ``text`` for ``sender`` and restart their idle window."""
        entry = self._pending.get(sender)
        if entry is None:
            entry = PendingAggregate()
            self._pending[sender] = entry
        entry.messages.append(text)
        entry.last_activity = self._clock()

    def flush_expired(self) -> list[FlushedUnit]:
        """Flush every sender idle for at least the TTL.

        Flushed senders are removed from the table. Units come back
        ordered by sender so one tick's output is deterministic.
        """
        now = self._clock()
        flushed: list[FlushedUnit] = []

        for sender in sorted(self._pending):
            entry = self._pending[sender]
            if entry.messages and now - entry.last_activity >= self.ttl_s:
                flushed.append(FlushedUnit(sender, " ".join(entry.messages)))
                entry.messages = []

        for sender in [s for s, e in self._pending.items() if not e.messages]:
            del self._pending[sender]

        return flushed

    def has_pending(self) -> bool:
        return bool(self._pending)

    def pending_senders(self) -> list[str]:
        return sorted(self._pending)


async def flush_once(aggregator: MessageAggregator, queue: DispatchQueue) -> int:
    """Run one scheduler tick: scan, then hand units to the queue.

    Returns:
        Number of units accepted by the queue.
    """
    if not aggregator.has_pending():
        return 0
    sent = 0
    for unit in aggregator.flush_expired():
        logger.debug(
            "flush.unit",
            sender=unit.sender,
            length=len(unit.combined_text),
        )
        try:
            if await queue.send(unit):
                sent += 1
        except DispatchClosedError as exc:
            logger.error(
                "flush.dispatch_failed",
                sender=unit.sender,
                error=str(exc),
            )
    return sent


async def run_flush_scheduler(
    aggregator: MessageAggregator,
    queue: DispatchQueue,
    *,
    tick_ms: float = DEFAULT_TICK_MS,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> None:
    """Background task that flushes idle senders every ``tick_ms``."""
    tick_s = tick_ms / 1000.0
    logger.debug(
        "flush.scheduler_started", tick_ms=tick_ms, ttl_ms=aggregator.ttl_ms
    )
    while True:
        await sleep(tick_s)
        await flush_once(aggregator, queue)
