"""Minimal IRC client: register, join one channel, read and post PRIVMSGs."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import anyio
from anyio.abc import AnyByteStream
from anyio.streams.buffered import BufferedByteReceiveStream

from .logging import get_logger
from .transport import InboundMessage

logger = get_logger(__name__)

# RFC 1459 caps a line at 512 bytes including CRLF; many servers accept
# longer lines with IRCv3 tags, so reading allows more.
MAX_READ_LINE = 8192
MAX_SEND_LINE = 512
UNKNOWN_SENDER = "unknown"
REGISTRATION_TIMEOUT_S = 60.0

Connector = Callable[[], Awaitable[AnyByteStream]]


class IrcConnectionError(RuntimeError):
    """Connecting to or registering with the server failed."""

    pass


class IrcSendError(RuntimeError):
    """A line could not be written to the server."""

    pass


@dataclass(frozen=True, slots=True)
class IrcMessage:
    """One parsed protocol line."""

    prefix: str | None
    command: str
    params: tuple[str, ...]

    @property
    def source_nickname(self) -> str | None:
        if not self.prefix:
            return None
        nick = self.prefix.split("!", 1)[0].split("@", 1)[0]
        return nick or None


def parse_line(line: str) -> IrcMessage:
    """Parse a raw IRC line (without CRLF).

    IRCv3 message tags are skipped. The trailing parameter (after " :")
    is kept verbatim, spaces included.
    """
    rest = line.rstrip("\r\n")
    if rest.startswith("@"):
        _, _, rest = rest.partition(" ")
        rest = rest.lstrip(" ")

    prefix: str | None = None
    if rest.startswith(":"):
        prefix, _, rest = rest[1:].partition(" ")
        rest = rest.lstrip(" ")

    trailing: str | None = None
    if rest.startswith(":"):
        trailing = rest[1:]
        rest = ""
    elif " :" in rest:
        rest, trailing = rest.split(" :", 1)

    words = rest.split()
    if not words:
        raise ValueError(f"no command in IRC line: {line!r}")
    command = words[0].upper()
    params = words[1:]
    if trailing is not None:
        params.append(trailing)
    return IrcMessage(prefix=prefix, command=command, params=tuple(params))


def format_line(command: str, *params: str) -> str:
    """Build a protocol line; the last parameter becomes trailing if needed."""
    for param in params:
        if "\r" in param or "\n" in param:
            raise ValueError("IRC parameters cannot contain CR or LF")
    if not params:
        return command
    *middle, last = params
    if not last or " " in last or last.startswith(":"):
        last = f":{last}"
    return " ".join([command, *middle, last])


class IrcClient:
    """IRC connection for a single channel.

    Usage:
        client = IrcClient(server="irc.libera.chat", port=6667,
                           nickname="bot", channel="#chat")
        await client.connect()
        async for msg in client.messages():
            ...
    """

    def __init__(
        self,
        *,
        server: str,
        port: int,
        nickname: str,
        channel: str,
        tls: bool = False,
        realname: str | None = None,
        connector: Connector | None = None,
        registration_timeout_s: float = REGISTRATION_TIMEOUT_S,
    ) -> None:
        self.server = server
        self.port = port
        self.nickname = nickname
        self.channel = channel
        self.tls = tls
        self.realname = realname or nickname
        self._connector = connector or self._connect_tcp
        self.registration_timeout_s = registration_timeout_s
        self._stream: AnyByteStream | None = None
        self._reader: BufferedByteReceiveStream | None = None
        self._send_lock = anyio.Lock()

    async def _connect_tcp(self) -> AnyByteStream:
        return await anyio.connect_tcp(self.server, self.port, tls=self.tls)

    async def connect(self) -> None:
        """Open the connection, register and join the channel.

        Raises:
            IrcConnectionError: If the server is unreachable or rejects us.
        """
        logger.info(
            "irc.connecting", server=self.server, port=self.port, tls=self.tls
        )
        try:
            self._stream = await self._connector()
        except OSError as exc:
            raise IrcConnectionError(
                f"cannot connect to {self.server}:{self.port}: {exc}"
            ) from exc
        self._reader = BufferedByteReceiveStream(self._stream)

        try:
            with anyio.fail_after(self.registration_timeout_s):
                await self._register()
            await self._write(format_line("JOIN", self.channel))
        except TimeoutError as exc:
            await self._abort()
            raise IrcConnectionError(
                f"no welcome from {self.server} within {self.registration_timeout_s}s"
            ) from exc
        except IrcSendError as exc:
            await self._abort()
            raise IrcConnectionError(str(exc)) from exc
        except IrcConnectionError:
            await self._abort()
            raise

        logger.info("irc.joined", channel=self.channel)

    async def _register(self) -> None:
        await self._write(format_line("NICK", self.nickname))
        await self._write(format_line("USER", self.nickname, "0", "*", self.realname))

        while True:
            msg = await self._read()
            if msg is None:
                raise IrcConnectionError("server closed the connection during registration")
            if msg.command == "PING":
                await self._write(format_line("PONG", *msg.params))
            elif msg.command == "001":
                logger.info("irc.registered", nickname=self.nickname)
                return
            elif msg.command in ("432", "433", "436"):
                raise IrcConnectionError(
                    f"nickname {self.nickname!r} rejected ({msg.command})"
                )
            elif msg.command == "ERROR":
                reason = msg.params[-1] if msg.params else "unknown error"
                raise IrcConnectionError(f"server error: {reason}")

    async def _abort(self) -> None:
        if self._stream is not None:
            await self._stream.aclose()
        self._stream = None
        self._reader = None

    async def _read(self) -> IrcMessage | None:
        if self._reader is None:
            raise IrcConnectionError("not connected")
        while True:
            try:
                raw = await self._reader.receive_until(b"\n", MAX_READ_LINE)
            except (anyio.IncompleteRead, anyio.EndOfStream, anyio.ClosedResourceError):
                return None
            except anyio.DelimiterNotFound:
                logger.error("irc.line_too_long", limit=MAX_READ_LINE)
                return None
            line = raw.decode("utf-8", errors="replace").rstrip("\r")
            if not line.strip():
                continue
            try:
                return parse_line(line)
            except ValueError:
                logger.warning("irc.unparseable_line", line=line)

    async def _write(self, line: str) -> None:
        if self._stream is None:
            raise IrcSendError("not connected")
        logger.debug("irc.send", line=line)
        async with self._send_lock:
            try:
                await self._stream.send(line.encode("utf-8") + b"\r\n")
            except (
                anyio.BrokenResourceError,
                anyio.ClosedResourceError,
                OSError,
            ) as exc:
                raise IrcSendError(f"failed to write to server: {exc}") from exc

    async def messages(self) -> AsyncIterator[InboundMessage]:
        """Yield PRIVMSGs, answering PINGs along the way.

        Ends when the server closes the connection.
        """
        while True:
            msg = await self._read()
            if msg is None:
                logger.info("irc.disconnected")
                return
            if msg.command == "PING":
                try:
                    await self._write(format_line("PONG", *msg.params))
                except IrcSendError as exc:
                    logger.error("irc.pong_failed", error=str(exc))
                    logger.info("irc.disconnected")
                    return
                continue
            if msg.command == "ERROR":
                logger.error("irc.server_error", params=list(msg.params))
                continue
            if msg.command != "PRIVMSG" or len(msg.params) < 2:
                continue
            sender = msg.source_nickname or UNKNOWN_SENDER
            yield InboundMessage(target=msg.params[0], sender=sender, text=msg.params[1])

    async def send(self, channel: str, line: str) -> bool:
        """Post ``line`` to ``channel`` as a PRIVMSG.

        Lines over 512 bytes (CRLF included) are still sent; most servers
        truncate them, so the overflow is logged.
        """
        try:
            wire = format_line("PRIVMSG", channel, line)
            size = len(wire.encode("utf-8")) + 2
            if size > MAX_SEND_LINE:
                logger.warning(
                    "irc.line_over_limit", channel=channel, bytes=size, limit=MAX_SEND_LINE
                )
            await self._write(wire)
        except (IrcSendError, ValueError) as exc:
            logger.error("irc.send_failed", channel=channel, error=str(exc))
            return False
        return True

    async def close(self) -> None:
        if self._stream is None:
            return
        try:
            await self._write(format_line("QUIT", "bye"))
        except IrcSendError:
            pass
        await self._stream.aclose()
        self._stream = None
        self._reader = None
