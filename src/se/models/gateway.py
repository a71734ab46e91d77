"""HTTP client for an OpenAI-compatible chat-completions gateway."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["DEFAULT_BASE_URL", "GatewayClient", "Transport", "message_content"]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1/chat/completions"
USER_AGENT = "surgical-editor/0.1"

# Takes the request body, returns the raw response body.
Transport = Callable[[Dict[str, Any]], str]


def _env_timeout(default: float) -> float:
    override = os.getenv("SE_LLM_TIMEOUT")
    if not override:
        return default
    try:
        value = float(override)
    except ValueError:
        LOGGER.warning("Ignoring invalid SE_LLM_TIMEOUT=%r", override)
        return default
    return value if value > 0 else default


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content.strip() and content
    if isinstance(content, list):
        pieces = (
            part if isinstance(part, str) else part.get("text")
            for part in content
            if isinstance(part, (str, dict))
        )
        return "".join(piece for piece in pieces if isinstance(piece, str)).strip()
    return ""


def message_content(body: str) -> Optional[str]:
    """Pull the assistant text out of a completions body.

    A body that is not a completions envelope is returned unchanged, since
    some gateways answer with the structured payload directly.
    """
    if not body:
        return None
    try:
        envelope = json.loads(body)
    except json.JSONDecodeError:
        return body
    if not isinstance(envelope, dict):
        return body

    failure = envelope.get("error")
    if isinstance(failure, dict):
        raise LLMTransportError(f"Gateway error: {failure.get('message') or failure}")

    choices = envelope.get("choices")
    if not isinstance(choices, list):
        return body
    for choice in filter(lambda item: isinstance(item, dict), choices):
        message = choice.get("message")
        text = _text_of(message.get("content")) if isinstance(message, dict) else ""
        text = text or _text_of(choice.get("text"))
        if text:
            return text
    return None


class GatewayClient(LLMClient):
    """Posts chat-completion requests; tests pass their own ``transport``.

    The key comes from ``api_key``, ``SE_API_KEY`` or ``OPENROUTER_API_KEY``,
    and ``SE_LLM_TIMEOUT`` overrides the timeout.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = "anthropic/claude-sonnet-4",
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv("SE_API_KEY") or os.getenv("OPENROUTER_API_KEY")
        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")
        self._base_url = base_url
        self._timeout = _env_timeout(timeout)
        self._transport = transport or self._post

    @property
    def timeout(self) -> float:
        return self._timeout

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            body = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:  # pragma: no cover - transport-specific failures
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

        content = message_content(body)
        if content is None:
            raise LLMResponseFormatError("Gateway response did not contain message content.")
        return content

    def _post(self, payload: Dict[str, Any]) -> str:
        LOGGER.debug("POST %s model=%s", self._base_url, payload.get("model"))
        http_request = urllib.request.Request(
            self._base_url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "X-Title": USER_AGENT,
            },
        )
        try:
            with urllib.request.urlopen(http_request, timeout=self._timeout) as reply:
                status = getattr(reply, "status", 200)
                body = reply.read().decode("utf-8")
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            detail = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {detail}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model gateway: {error.reason}") from error
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Model call timed out after {self._timeout:.0f}s.") from error

        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")
        return body
