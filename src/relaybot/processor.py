"""Serialized processing of flushed units: history, completion, reply."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .chunker import DEFAULT_MAX_CHUNK, normalize_reply, split_into_chunks
from .completion import CompletionBackend, CompletionError, first_choice
from .dispatch import DispatchQueue
from .history import ConversationHistory
from .logging import bind_unit_context, clear_context, get_logger
from .model import CompletionRequest, FlushedUnit, HistoryEntry, Turn
from .pacing import TokenBucket

logger = get_logger(__name__)

# Without the leader flag we wait for at least this many history entries
# before answering, so a fresh follower never speaks first.
MIN_HISTORY_FOR_FOLLOWER = 2


class LineSender(Protocol):
    async def send(self, channel: str, line: str) -> bool: ...


@dataclass(frozen=True, slots=True)
class ProcessorConfig:
    """Settings the processor needs for each unit."""

    model: str
    nickname: str
    channel: str
    leader: bool = False
    chunk_max_size: int = DEFAULT_MAX_CHUNK


@dataclass(frozen=True, slots=True)
class UnitOutcome:
    """What happened to one unit; returned for logging and tests."""

    suppressed: bool = False
    failed: bool = False
    reply: str | None = None
    chunks_sent: int = 0
    chunks_failed: int = 0


def build_turns(
    entries: tuple[HistoryEntry, ...], nickname: str
) -> tuple[Turn, ...]:
    return tuple(
        Turn(
            role="assistant" if entry.author == nickname else "user",
            content=entry.render(),
        )
        for entry in entries
    )


class RelayProcessor:
    """Single consumer of the dispatch queue.

    For each unit: record the user's turn, ask the backend for a reply,
    post it to the channel in paced chunks and record our own turn.
    Failures drop the unit and move on; nothing is retried or rolled back.
    """

    def __init__(
        self,
        cfg: ProcessorConfig,
        *,
        backend: CompletionBackend,
        sender: LineSender,
        history: ConversationHistory | None = None,
        pacer: TokenBucket | None = None,
    ) -> None:
        self.cfg = cfg
        self.backend = backend
        self.sender = sender
        self.history = history if history is not None else ConversationHistory()
        self.pacer = pacer if pacer is not None else TokenBucket()

    def build_request(self, unit: FlushedUnit) -> CompletionRequest | None:
        """Append the unit to history and build the request.

        Returns:
            The request, or None when a non-leader has too little history.
        """
        self.history.append(HistoryEntry(author=unit.sender, text=unit.combined_text))
        snapshot = self.history.snapshot()

        if not self.cfg.leader and len(snapshot) < MIN_HISTORY_FOR_FOLLOWER:
            logger.info("processor.skip_first_message", history_len=len(snapshot))
            return None

        return CompletionRequest(
            model=self.cfg.model,
            turns=build_turns(snapshot, self.cfg.nickname),
        )

    async def handle(self, unit: FlushedUnit) -> UnitOutcome:
        logger.debug("processor.unit", text=unit.combined_text)

        request = self.build_request(unit)
        if request is None:
            return UnitOutcome(suppressed=True)

        try:
            response = await self.backend.complete(request)
        except CompletionError as exc:
            logger.error("processor.completion_failed", error=str(exc))
            return UnitOutcome(failed=True)

        reply = normalize_reply(first_choice(response))
        chunks = split_into_chunks(reply, self.cfg.chunk_max_size)

        sent = failed = 0
        for chunk in chunks:
            await self.pacer.acquire()
            try:
                ok = await self.sender.send(self.cfg.channel, chunk)
            except Exception as exc:
                logger.exception(
                    "processor.chunk_send_failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                ok = False
            if ok:
                sent += 1
            else:
                failed += 1

        if failed:
            logger.warning("processor.chunks_failed", failed=failed, total=len(chunks))

        self.history.append(HistoryEntry(author=self.cfg.nickname, text=reply))
        logger.debug(
            "processor.history",
            entries=[entry.render() for entry in self.history.snapshot()],
        )
        return UnitOutcome(
            reply=reply, chunks_sent=sent, chunks_failed=failed
        )

    async def run(self, queue: DispatchQueue) -> None:
        """Drain the queue until its sending side is closed."""
        async for unit in queue:
            bind_unit_context(sender=unit.sender)
            try:
                outcome = await self.handle(unit)
                logger.info(
                    "processor.unit_done",
                    suppressed=outcome.suppressed,
                    failed=outcome.failed,
                    chunks_sent=outcome.chunks_sent,
                )
            except Exception as exc:
                logger.exception(
                    "processor.unit_failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
            finally:
                clear_context()
        logger.info("processor.stopped")
