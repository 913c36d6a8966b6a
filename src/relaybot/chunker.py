"""Reply normalization and splitting for single-line transports.

Chunk sizes count characters. With the PRIVMSG framing or multi-byte text
a full chunk can exceed the 512-byte IRC line, which the IRC client logs.
"""

from __future__ import annotations

DEFAULT_MAX_CHUNK = 500


def normalize_reply(text: str) -> str:
    """Flatten a model reply onto one line.

    Newlines become spaces and backticks are dropped, since IRC carries
    one plain-text line per message.
    """
    return text.replace("\r", " ").replace("\n", " ").replace("`", "")


def split_into_chunks(text: str, max_size: int = DEFAULT_MAX_CHUNK) -> list[str]:
    """Split text into chunks of at most ``max_size`` characters.

    Words are packed greedily, separated by single spaces. A word longer
    than ``max_size`` is flushed on its own as fixed-size slices.

    Args:
        text: Text to split. Any whitespace separates words.
        max_size: Maximum chunk length in characters.

    Returns:
        Non-empty chunks in order. Empty for blank input.

    Raises:
        ValueError: If max_size is not positive.
    """
    if max_size <= 0:
        raise ValueError(f"max_size must be positive, got {max_size}")

    chunks: list[str] = []
    current = ""

    for word in text.split():
        if len(word) > max_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(
                word[start : start + max_size]
                for start in range(0, len(word), max_size)
            )
            continue

        if current and len(current) + 1 + len(word) > max_size:
            chunks.append(current)
            current = ""

        current = f"{current} {word}" if current else word

    if current:
        chunks.append(current)

    return chunks
