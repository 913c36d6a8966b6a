"""Tests for the relay processor."""

from __future__ import annotations

import anyio
import pytest

from relaybot.completion import NO_RESPONSE_TEXT, CompletionError
from relaybot.dispatch import DispatchQueue
from relaybot.history import ConversationHistory
from relaybot.model import (
    CompletionReply,
    CompletionRequest,
    FlushedUnit,
    HistoryEntry,
)
from relaybot.pacing import TokenBucket
from relaybot.processor import ProcessorConfig, RelayProcessor, build_turns


class _FakeBackend:
    def __init__(self, replies: list[CompletionReply | Exception] | None = None) -> None:
        self.replies = list(replies or [])
        self.requests: list[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> CompletionReply:
        self.requests.append(request)
        result = self.replies.pop(0) if self.replies else CompletionReply(("ok",))
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        return None


class _FakeSender:
    def __init__(self, fail_on: set[int] | None = None, raise_on: set[int] | None = None) -> None:
        self.lines: list[tuple[str, str]] = []
        self.fail_on = fail_on or set()
        self.raise_on = raise_on or set()
        self._calls = 0

    async def send(self, channel: str, line: str) -> bool:
        index = self._calls
        self._calls += 1
        if index in self.raise_on:
            raise RuntimeError("socket gone")
        if index in self.fail_on:
            return False
        self.lines.append((channel, line))
        return True


def _processor(
    backend: _FakeBackend,
    sender: _FakeSender | None = None,
    *,
    leader: bool = False,
    history: ConversationHistory | None = None,
    chunk_max_size: int = 500,
) -> RelayProcessor:
    return RelayProcessor(
        ProcessorConfig(
            model="test/model",
            nickname="bot",
            channel="#chat",
            leader=leader,
            chunk_max_size=chunk_max_size,
        ),
        backend=backend,
        sender=sender or _FakeSender(),
        history=history,
        pacer=TokenBucket(rate_per_s=0.0),
    )


class TestBuildTurns:
    def test_roles_follow_entry_author(self) -> None:
        entries = (
            HistoryEntry("alice", "hi"),
            HistoryEntry("bot", "hello"),
            HistoryEntry("bob", "yo"),
        )
        turns = build_turns(entries, "bot")
        assert [t.role for t in turns] == ["user", "assistant", "user"]
        assert turns[1].content == "bot - hello"

    def test_nickname_match_is_case_sensitive(self) -> None:
        turns = build_turns((HistoryEntry("Bot", "hi"),), "bot")
        assert turns[0].role == "user"


class TestBuildRequest:
    def test_follower_suppresses_first_message(self) -> None:
        processor = _processor(_FakeBackend())
        assert processor.build_request(FlushedUnit("alice", "hello")) is None
        # The user's turn is still recorded
        assert len(processor.history) == 1

    def test_follower_answers_second_message(self) -> None:
        processor = _processor(_FakeBackend())
        processor.build_request(FlushedUnit("alice", "hello"))
        request = processor.build_request(FlushedUnit("bob", "anyone?"))
        assert request is not None
        assert request.model == "test/model"
        assert [t.content for t in request.turns] == ["alice - hello", "bob - anyone?"]

    def test_leader_answers_first_message(self) -> None:
        processor = _processor(_FakeBackend(), leader=True)
        request = processor.build_request(FlushedUnit("alice", "hello"))
        assert request is not None
        assert len(request.turns) == 1


class TestHandle:
    @pytest.mark.anyio
    async def test_non_leader_never_calls_backend_on_cold_start(self) -> None:
        backend = _FakeBackend()
        processor = _processor(backend)
        outcome = await processor.handle(FlushedUnit("alice", "hello"))
        assert outcome.suppressed
        assert backend.requests == []

    @pytest.mark.anyio
    async def test_reply_is_sent_and_recorded(self) -> None:
        backend = _FakeBackend([CompletionReply(("hi alice",))])
        sender = _FakeSender()
        processor = _processor(backend, sender, leader=True)

        outcome = await processor.handle(FlushedUnit("alice", "hello"))

        assert outcome.reply == "hi alice"
        assert sender.lines == [("#chat", "hi alice")]
        assert processor.history.snapshot() == (
            HistoryEntry("alice", "hello"),
            HistoryEntry("bot", "hi alice"),
        )

    @pytest.mark.anyio
    async def test_own_reply_becomes_assistant_turn(self) -> None:
        backend = _FakeBackend()
        processor = _processor(backend, leader=True)
        await processor.handle(FlushedUnit("alice", "one"))
        await processor.handle(FlushedUnit("alice", "two"))
        roles = [t.role for t in backend.requests[1].turns]
        assert roles == ["user", "assistant", "user"]

    @pytest.mark.anyio
    async def test_backend_failure_keeps_user_turn_only(self) -> None:
        backend = _FakeBackend([CompletionError("boom")])
        sender = _FakeSender()
        processor = _processor(backend, sender, leader=True)

        outcome = await processor.handle(FlushedUnit("alice", "hello"))

        assert outcome.failed
        assert sender.lines == []
        assert processor.history.snapshot() == (HistoryEntry("alice", "hello"),)

    @pytest.mark.anyio
    async def test_reply_normalized_before_chunking(self) -> None:
        backend = _FakeBackend([CompletionReply(("line1\nline2 `code`",))])
        sender = _FakeSender()
        processor = _processor(backend, sender, leader=True)

        await processor.handle(FlushedUnit("alice", "hello"))

        sent = " ".join(line for _, line in sender.lines)
        assert "\n" not in sent
        assert "`" not in sent
        assert sent == "line1 line2 code"

    @pytest.mark.anyio
    async def test_long_reply_split_into_chunks(self) -> None:
        backend = _FakeBackend([CompletionReply(("y" * 1200,))])
        sender = _FakeSender()
        processor = _processor(backend, sender, leader=True)

        outcome = await processor.handle(FlushedUnit("alice", "hello"))

        assert [len(line) for _, line in sender.lines] == [500, 500, 200]
        assert outcome.chunks_sent == 3
        # History keeps the whole reply, not the chunks
        assert processor.history.snapshot()[-1].text == "y" * 1200

    @pytest.mark.anyio
    async def test_failed_chunk_does_not_abort_the_rest(self) -> None:
        backend = _FakeBackend([CompletionReply(("aaa bbb ccc",))])
        sender = _FakeSender(fail_on={0}, raise_on={1})
        processor = _processor(backend, sender, leader=True, chunk_max_size=3)

        outcome = await processor.handle(FlushedUnit("alice", "hello"))

        assert sender.lines == [("#chat", "ccc")]
        assert outcome.chunks_sent == 1
        assert outcome.chunks_failed == 2
        assert processor.history.snapshot()[-1] == HistoryEntry("bot", "aaa bbb ccc")

    @pytest.mark.anyio
    async def test_empty_choices_use_notice(self) -> None:
        backend = _FakeBackend([CompletionReply(())])
        sender = _FakeSender()
        processor = _processor(backend, sender, leader=True)

        outcome = await processor.handle(FlushedUnit("alice", "hello"))

        assert outcome.reply == NO_RESPONSE_TEXT
        assert sender.lines == [("#chat", NO_RESPONSE_TEXT)]

    @pytest.mark.anyio
    async def test_chunks_are_paced(self, clock) -> None:
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            clock.advance(seconds)

        backend = _FakeBackend([CompletionReply(("aaa bbb ccc",))])
        processor = RelayProcessor(
            ProcessorConfig(model="m", nickname="bot", channel="#chat", leader=True, chunk_max_size=3),
            backend=backend,
            sender=_FakeSender(),
            pacer=TokenBucket(10.0, 1, clock=clock, sleep=fake_sleep),
        )
        await processor.handle(FlushedUnit("alice", "hello"))
        assert sleeps == [pytest.approx(0.1), pytest.approx(0.1)]


class TestRun:
    @pytest.mark.anyio
    async def test_failure_moves_on_to_next_unit(self) -> None:
        backend = _FakeBackend(
            [CompletionError("down"), CompletionReply(("second answer",))]
        )
        sender = _FakeSender()
        processor = _processor(backend, sender, leader=True)
        queue = DispatchQueue(capacity=10)

        await queue.send(FlushedUnit("alice", "first"))
        await queue.send(FlushedUnit("bob", "second"))
        queue.close_sender()

        with anyio.fail_after(2):
            await processor.run(queue)

        assert sender.lines == [("#chat", "second answer")]
        assert [e.author for e in processor.history.snapshot()] == ["alice", "bob", "bot"]

    @pytest.mark.anyio
    async def test_unexpected_error_does_not_stop_loop(self) -> None:
        backend = _FakeBackend([ValueError("weird"), CompletionReply(("fine",))])
        sender = _FakeSender()
        processor = _processor(backend, sender, leader=True)
        queue = DispatchQueue(capacity=10)

        await queue.send(FlushedUnit("alice", "first"))
        await queue.send(FlushedUnit("alice", "second"))
        queue.close_sender()

        with anyio.fail_after(2):
            await processor.run(queue)

        assert sender.lines == [("#chat", "fine")]
