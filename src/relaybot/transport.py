"""Transport abstraction for the chat network.

The relay only needs two things from a chat network: a stream of inbound
channel messages and a way to post one line to a channel.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A message seen on the network."""

    target: str  # channel (or our nick, for private messages)
    sender: str
    text: str


class Transport(Protocol):
    """Protocol for chat network implementations."""

    def messages(self) -> AsyncIterator[InboundMessage]:
        """Yield inbound messages until the connection ends."""
        ...

    async def send(self, channel: str, line: str) -> bool:
        """Post a single line to a channel.

        Returns:
            True if the line was written, False on failure
        """
        ...

    async def close(self) -> None:
        """Close the transport and release resources."""
        ...


def channel_matches(target: str, channel: str) -> bool:
    """IRC channel names compare case-insensitively."""
    return target.casefold() == channel.casefold()
