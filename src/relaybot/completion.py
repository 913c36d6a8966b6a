"""Client for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from .logging import get_logger
from .model import CompletionReply, CompletionRequest

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_TIMEOUT_S = 120.0
NO_RESPONSE_TEXT = "No response from the completion backend."


class CompletionError(RuntimeError):
    """The completion request failed for any reason."""

    pass


class CompletionBackend(Protocol):
    """Anything that turns a conversation into a reply."""

    async def complete(self, request: CompletionRequest) -> CompletionReply:
        """Run one completion.

        Raises:
            CompletionError: If the backend could not produce a reply.
        """
        ...

    async def close(self) -> None:
        ...


def first_choice(reply: CompletionReply) -> str:
    """Return the first choice's text, or a fixed notice if there is none."""
    if not reply.choices:
        return NO_RESPONSE_TEXT
    return reply.choices[0]


def request_payload(request: CompletionRequest) -> dict[str, Any]:
    return {
        "model": request.model,
        "messages": [
            {"role": turn.role, "content": turn.content} for turn in request.turns
        ],
    }


def parse_reply(payload: Any) -> CompletionReply:
    if not isinstance(payload, dict):
        raise CompletionError(f"unexpected response body: {type(payload).__name__}")
    error = payload.get("error")
    if error:
        detail = error.get("message") if isinstance(error, dict) else error
        raise CompletionError(f"completion backend reported an error: {detail}")
    if "choices" not in payload:
        raise CompletionError("response has no 'choices'")
    choices = payload["choices"] or []
    if not isinstance(choices, list):
        raise CompletionError("response 'choices' is not a list")
    contents: list[str] = []
    for choice in choices:
        message = choice.get("message") if isinstance(choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        contents.append(content if isinstance(content, str) else "")
    return CompletionReply(choices=tuple(contents))


class OpenAICompatClient:
    """POSTs to ``{base_url}/chat/completions``.

    Args:
        api_key: Sent as a Bearer token when set.
        base_url: API root, OpenRouter by default.
        timeout_s: Per-request timeout.
        client: Optional pre-built httpx client (tests use MockTransport).
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._headers = headers
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def complete(self, request: CompletionRequest) -> CompletionReply:
        url = f"{self._base_url}/chat/completions"
        logger.debug(
            "completion.request",
            model=request.model,
            turns=len(request.turns),
        )
        try:
            resp = await self._client.post(
                url, json=request_payload(request), headers=self._headers
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise CompletionError(
                f"completion backend returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise CompletionError(f"completion request failed: {exc}") from exc
        except ValueError as exc:
            raise CompletionError("completion backend returned invalid JSON") from exc

        reply = parse_reply(payload)
        logger.debug("completion.response", choices=len(reply.choices))
        return reply

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
