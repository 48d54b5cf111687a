"""LLM client — HTTP connection to a chat-completion backend.

Components that need a model take an LLM callable matching the protocol:

    async def __call__(self, stage: str, messages: list[ChatMessage],
                       *, max_output_tokens: int | None = None) -> str: ...

`stage` identifies which step is calling ("analysis", "compress",
"long_summary"). Implementations may use it for logging or routing; the
simplest implementation ignores it.

Two implementations are provided:

    HttpLLM   — real HTTP client for OpenAI-compatible chat completions or
                 the Gemini generateContent API. Selected by provider_format.
    EchoLLM   — returns the last message back unchanged. Useful for
                 smoke-testing the wiring without a running model.

Model output is always treated as untrusted text; parsing and validation
happen in the caller.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


def system_user(system: str, user: str) -> list[ChatMessage]:
    return [ChatMessage(role="system", content=system), ChatMessage(role="user", content=user)]


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(
        self,
        stage: str,
        messages: list[ChatMessage],
        *,
        max_output_tokens: int | None = None,
    ) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["openai", "gemini"]

DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}


class HttpLLM:
    """Async HTTP client for chat-completion backends.

    Supported formats:
      "openai"  — POST {base}/chat/completions
                  {"model": ..., "messages": [...], "max_tokens": ...}
                  Response: {"choices": [{"message": {"content": "..."}}]}
      "gemini"  — POST {base}/models/{model}:generateContent
                  {"systemInstruction": ..., "contents": [...],
                   "generationConfig": {"maxOutputTokens": ...}}
                  Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

    Args:
        base_url:        API base, e.g. "https://api.openai.com/v1". Empty
                         means the provider's public endpoint.
        api_key:         Bearer token (openai) or API key (gemini).
        provider_format: Wire format to use. Defaults to "openai".
        model:           Model identifier.
        timeout:         HTTP timeout in seconds. Defaults to 60.
    """

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        provider_format: ProviderFormat = "openai",
        model: str = "",
        timeout: float = 60.0,
    ) -> None:
        self._base_url = (base_url or DEFAULT_BASE_URLS[provider_format]).rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if not self._api_key:
            return headers
        if self._format == "gemini":
            headers["x-goog-api-key"] = self._api_key
        else:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(
        self, messages: list[ChatMessage], max_output_tokens: int | None
    ) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "gemini":
            url = f"{self._base_url}/models/{self._model}:generateContent"
            system = "\n\n".join(m.content for m in messages if m.role == "system")
            contents = [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in messages
                if m.role != "system"
            ]
            body: dict = {"contents": contents}
            if system:
                body["systemInstruction"] = {"parts": [{"text": system}]}
            if max_output_tokens:
                body["generationConfig"] = {"maxOutputTokens": max_output_tokens}
            return url, body

        # openai (default)
        url = f"{self._base_url}/chat/completions"
        body = {"messages": [m.model_dump() for m in messages]}
        if self._model:
            body["model"] = self._model
        if max_output_tokens:
            body["max_tokens"] = max_output_tokens
        return url, body

    def _parse_response(self, data: object) -> str:
        """Extract the completion text from the response body."""
        if self._format == "gemini":
            try:
                parts = data["candidates"][0]["content"]["parts"]
                text = "".join(
                    part.get("text") or "" for part in parts if isinstance(part, dict)
                )
            except (TypeError, KeyError, IndexError, AttributeError) as e:
                raise LLMError("Unexpected response format from Gemini backend") from e
            return text

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise LLMError("Unexpected response format from OpenAI-compatible backend")
        content = message.get("content")
        return content if isinstance(content, str) else ""

    async def __call__(
        self,
        stage: str,
        messages: list[ChatMessage],
        *,
        max_output_tokens: int | None = None,
    ) -> str:
        url, body = self._build_request(messages, max_output_tokens)
        logger.debug(
            "llm call stage=%s url=%s messages=%d max_tokens=%s",
            stage, url, len(messages), max_output_tokens,
        )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM transport error: {type(e).__name__}: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = self._parse_response(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM: returns the last message unchanged; useful for smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the last message's text as-is. No network calls.

    The output won't be valid JSON for structured stages, so every caller
    falls back to its safe default. Use StubLLM in tests when you need
    controlled responses.
    """

    async def __call__(
        self,
        stage: str,
        messages: list[ChatMessage],
        *,
        max_output_tokens: int | None = None,
    ) -> str:
        logger.debug("EchoLLM stage=%s messages=%d", stage, len(messages))
        return messages[-1].content if messages else ""


# ---------------------------------------------------------------------------
# LLMError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
