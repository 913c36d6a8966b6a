"""Wires the transport, debounce pipeline and processor together."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from functools import partial

import anyio

from .aggregator import MessageAggregator, run_flush_scheduler
from .completion import CompletionBackend, OpenAICompatClient
from .dispatch import DispatchQueue
from .irc import IrcClient
from .logging import get_logger
from .pacing import TokenBucket
from .processor import ProcessorConfig, RelayProcessor
from .settings import RelaySettings
from .transport import InboundMessage, Transport, channel_matches

logger = get_logger(__name__)


@dataclass
class RelayPipeline:
    """The long-lived pieces of a running relay."""

    aggregator: MessageAggregator
    queue: DispatchQueue
    processor: RelayProcessor
    flush_tick_ms: float


def build_pipeline(
    settings: RelaySettings,
    *,
    transport: Transport,
    backend: CompletionBackend,
) -> RelayPipeline:
    processor = RelayProcessor(
        ProcessorConfig(
            model=settings.model,
            nickname=settings.nickname,
            channel=settings.channel,
            leader=settings.leader,
            chunk_max_size=settings.chunk_max_size,
        ),
        backend=backend,
        sender=transport,
        pacer=TokenBucket(settings.send_rate_per_s, settings.send_burst),
    )
    return RelayPipeline(
        aggregator=MessageAggregator(ttl_ms=settings.debounce_ttl_ms),
        queue=DispatchQueue(settings.queue_capacity, settings.queue_overflow),
        processor=processor,
        flush_tick_ms=settings.flush_tick_ms,
    )


async def pump_inbound(
    messages: AsyncIterator[InboundMessage],
    aggregator: MessageAggregator,
    channel: str,
) -> int:
    """Feed channel messages into the aggregator until the stream ends.

    Returns:
        Number of messages recorded.
    """
    recorded = 0
    async for msg in messages:
        if not channel_matches(msg.target, channel):
            continue
        logger.debug("inbound.message", sender=msg.sender, text=msg.text)
        aggregator.record(msg.sender, msg.text)
        recorded += 1
    return recorded


async def run_pipeline(
    pipeline: RelayPipeline,
    transport: Transport,
    channel: str,
) -> None:
    """Run listener, flush scheduler and processor until the transport ends."""
    async with anyio.create_task_group() as tg:
        tg.start_soon(
            partial(run_flush_scheduler, tick_ms=pipeline.flush_tick_ms),
            pipeline.aggregator,
            pipeline.queue,
        )
        tg.start_soon(pipeline.processor.run, pipeline.queue)

        recorded = await pump_inbound(transport.messages(), pipeline.aggregator, channel)
        logger.info(
            "relay.transport_ended",
            recorded=recorded,
            unflushed=pipeline.aggregator.pending_senders(),
        )
        tg.cancel_scope.cancel()


async def run_relay(
    settings: RelaySettings,
    *,
    transport: Transport | None = None,
    backend: CompletionBackend | None = None,
) -> None:
    """Connect to IRC and relay the channel until disconnected.

    Raises:
        IrcConnectionError: If the initial connection or registration fails.
    """
    logger.info("relay.starting", model=settings.model, leader=settings.leader)

    if transport is None:
        client = IrcClient(
            server=settings.server,
            port=settings.port,
            nickname=settings.nickname,
            channel=settings.channel,
            tls=settings.tls,
        )
        await client.connect()
        transport = client
    if backend is None:
        api_key = settings.api_key.get_secret_value() if settings.api_key else None
        if api_key is None:
            logger.warning("relay.no_api_key", base_url=settings.base_url)
        backend = OpenAICompatClient(
            api_key,
            base_url=settings.base_url,
            timeout_s=settings.request_timeout_s,
        )

    pipeline = build_pipeline(settings, transport=transport, backend=backend)
    try:
        await run_pipeline(pipeline, transport, settings.channel)
    finally:
        with anyio.CancelScope(shield=True):
            await backend.close()
            await transport.close()
