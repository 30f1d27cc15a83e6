"""OpenRouter LLM client for nightfix.

httpx client for an OpenAI-compatible chat completions endpoint. One call
uses one API key chosen by the caller; retries and key rotation live in
KeyRotationClient, so this layer only classifies failures.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

import httpx

from nightfix.core.config import LLMConfig
from nightfix.core.exceptions import (
    AuthenticationError,
    LLMError,
    RateLimitError,
    ResponseParseError,
    TransientLLMError,
)

logger = logging.getLogger("nightfix.llm")

DEFAULT_TIMEOUT_SECONDS = 120.0


class LLMMessage:
    """A single message in a conversation."""

    def __init__(self, role: str, content: str):
        self.role = role
        self.content = content

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class LLMResponse:
    """Parsed response from the LLM."""

    def __init__(
        self,
        content: str,
        model: str,
        tokens_used: int = 0,
        raw: Optional[dict] = None,
        credential_handle: str = "",
    ):
        self.content = content
        self.model = model
        self.tokens_used = tokens_used
        self.raw = raw or {}
        self.credential_handle = credential_handle


class OpenRouterClient:
    """HTTP client for OpenRouter's OpenAI-compatible API.

    Never holds an API key of its own: the key is passed per call.
    """

    def __init__(self, config: Optional[LLMConfig] = None, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.config = config or LLMConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout_seconds),
            )
        return self._client

    def complete(
        self,
        messages: list[LLMMessage],
        api_key: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Send one chat completion request.

        timeout_seconds overrides the client-wide timeout for this request.

        Raises:
            RateLimitError: HTTP 429 (carries Retry-After when sent).
            AuthenticationError: HTTP 401/403.
            TransientLLMError: timeouts, connection errors, HTTP 5xx.
            LLMError: any other non-success status or unreadable body.
        """
        payload: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature if temperature is not None else self.config.default_temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "X-Title": "nightfix",
        }

        try:
            resp = self.client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=httpx.Timeout(timeout_seconds) if timeout_seconds else httpx.USE_CLIENT_DEFAULT,
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientLLMError(f"Network error: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError(
                "Rate limited",
                retry_after=_parse_retry_after(resp.headers.get("retry-after")),
            )
        if resp.status_code in (401, 403):
            raise AuthenticationError("Invalid API key")
        if resp.status_code >= 500:
            raise TransientLLMError(f"Server error {resp.status_code}")
        if resp.status_code >= 400:
            raise LLMError(f"Request rejected with status {resp.status_code}: {resp.text[:200]}")

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Unexpected response body: {e}") from e

        model_used = data.get("model", payload["model"])
        tokens = data.get("usage", {}).get("total_tokens", 0)
        logger.debug("LLM response: model=%s tokens=%d", model_used, tokens)
        return LLMResponse(content=content, model=model_used, tokens_used=tokens, raw=data)

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def backoff_delay(attempt: int, base_seconds: float = 2.0) -> float:
    """Exponential backoff: 2s, 4s, 8s, ..."""
    return min(base_seconds * (2 ** attempt), 60)


def parse_json_response(text: str) -> dict[str, Any]:
    """Parse JSON from LLM response, stripping markdown code fences if present."""
    cleaned = text.strip()

    fence_pattern = r"^```(?:json)?\s*\n?(.*?)\n?```$"
    match = re.match(fence_pattern, cleaned, re.DOTALL)
    if match:
        cleaned = match.group(1).strip()

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Failed to parse JSON from LLM response: {e}\nRaw: {text[:500]}")
    if not isinstance(parsed, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed
