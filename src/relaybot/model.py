"""Value types passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Role = Literal["user", "assistant"]


@dataclass(frozen=True, slots=True)
class FlushedUnit:
    """One sender's debounced burst, joined in arrival order."""

    sender: str
    combined_text: str


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """A single line of conversation, either from a user or from us."""

    author: str
    text: str

    def render(self) -> str:
        return f"{self.author} - {self.text}"


@dataclass(frozen=True, slots=True)
class Turn:
    role: Role
    content: str


@dataclass(frozen=True, slots=True)
class CompletionRequest:
    model: str
    turns: tuple[Turn, ...]


@dataclass(frozen=True, slots=True)
class CompletionReply:
    """Backend response; only the first choice is ever used."""

    choices: tuple[str, ...] = ()
