"""Bounded hand-off between the flush scheduler and the processor."""

from __future__ import annotations

from enum import Enum

import anyio

from .logging import get_logger
from .model import FlushedUnit

logger = get_logger(__name__)

DEFAULT_CAPACITY = 100


class OverflowPolicy(str, Enum):
    """What ``DispatchQueue.send`` does when the queue is full."""

    BLOCK = "block"
    DROP_NEWEST = "drop_newest"
    DROP_OLDEST = "drop_oldest"


class DispatchClosedError(RuntimeError):
    """The receiving side of the queue is gone."""

    pass


class DispatchQueue:
    """FIFO of flushed units backed by an anyio memory object stream.

    Usage:
        queue = DispatchQueue(capacity=100)

        async with anyio.create_task_group() as tg:
            tg.start_soon(processor.run, queue)
            await queue.send(FlushedUnit("alice", "hello world"))
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        overflow: OverflowPolicy | str = OverflowPolicy.BLOCK,
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.overflow = OverflowPolicy(overflow)
        self._send, self._receive = anyio.create_memory_object_stream[FlushedUnit](
            capacity
        )
        self.dropped = 0

    def __len__(self) -> int:
        return self._send.statistics().current_buffer_used

    async def send(self, unit: FlushedUnit) -> bool:
        """Enqueue a unit according to the overflow policy.

        Returns:
            True if the unit was queued, False if the policy dropped it.

        Raises:
            DispatchClosedError: If the receiving side has been closed.
        """
        try:
            if self.overflow is OverflowPolicy.BLOCK:
                await self._send.send(unit)
                return True

            try:
                self._send.send_nowait(unit)
                return True
            except anyio.WouldBlock:
                pass

            if self.overflow is OverflowPolicy.DROP_NEWEST:
                self.dropped += 1
                logger.warning(
                    "dispatch.dropped_newest",
                    sender=unit.sender,
                    capacity=self.capacity,
                )
                return False

            evicted = self._receive.receive_nowait()
            self.dropped += 1
            logger.warning(
                "dispatch.dropped_oldest",
                sender=evicted.sender,
                capacity=self.capacity,
            )
            self._send.send_nowait(unit)
            return True
        except (anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
            raise DispatchClosedError("dispatch queue receiver is closed") from exc

    async def receive(self) -> FlushedUnit:
        """Wait for the next unit.

        Raises:
            anyio.EndOfStream: If the sending side is closed and drained.
        """
        return await self._receive.receive()

    def __aiter__(self) -> DispatchQueue:
        return self

    async def __anext__(self) -> FlushedUnit:
        try:
            return await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            raise StopAsyncIteration from None

    def close_sender(self) -> None:
        """Stop accepting units; the receiver drains what is left."""
        self._send.close()

    def close_receiver(self) -> None:
        """Stop consuming; further sends raise DispatchClosedError."""
        self._receive.close()
