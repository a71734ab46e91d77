"""Model-call base class: JSON extraction, strict validation and retries."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Type, TypeVar

from pydantic import TypeAdapter, ValidationError

__all__ = [
    "AttemptLogger",
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "extract_json",
]

T = TypeVar("T")

# Called once per try with (payload, raw text, parsed JSON, error, try number).
AttemptLogger = Callable[[Dict[str, Any], Optional[str], Optional[Any], Optional[Exception], int], None]

METADATA_VALUE_LIMIT = 512
_FENCE = re.compile(r"^```[A-Za-z]*\s*\n(?P<body>.*)\n\s*```\s*$", re.DOTALL)


class LLMClientError(RuntimeError):
    """Any failure of a model call."""


class LLMTransportError(LLMClientError):
    """The endpoint could not be reached or answered with an error."""


class LLMResponseFormatError(LLMClientError):
    """The model answered, but not with usable JSON."""


class LLMRetryError(LLMClientError):
    """Every try failed; ``__cause__`` holds the last failure."""


@lru_cache(maxsize=None)
def _adapter_for(model: Any) -> TypeAdapter:
    return TypeAdapter(model)


def _clip(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True)
    if len(text) <= METADATA_VALUE_LIMIT:
        return text
    return text[: METADATA_VALUE_LIMIT - 3] + "..."


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """One structured call.

    ``history`` holds earlier ``{"role", "content"}`` turns; they sit between
    the system prompt and ``prompt``.
    """

    prompt: str
    response_model: Type[T]
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    history: List[Dict[str, str]] = field(default_factory=list)
    temperature: float = 0.0
    max_attempts: Optional[int] = None

    def messages(self) -> List[Dict[str, str]]:
        conversation: List[Dict[str, str]] = []
        if self.system_prompt:
            conversation.append({"role": "system", "content": self.system_prompt})
        conversation.extend(
            {"role": str(turn.get("role") or "user"), "content": str(turn["content"])}
            for turn in self.history
            if turn.get("content")
        )
        conversation.append({"role": "user", "content": self.prompt})
        return conversation

    def response_schema(self) -> Dict[str, Any]:
        try:
            return _adapter_for(self.response_model).json_schema(by_alias=True)
        except Exception:  # pragma: no cover - unsupported schema types
            return {"type": "object"}

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Chat-completions body; metadata values are flattened to short strings."""
        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "messages": self.messages(),
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": getattr(self.response_model, "__name__", "se_response"),
                    "schema": self.response_schema(),
                },
            },
        }
        if self.temperature:
            payload["temperature"] = self.temperature
        if self.metadata:
            payload["metadata"] = {key: _clip(value) for key, value in self.metadata.items()}
        return payload


def _without_fence(text: str) -> str:
    match = _FENCE.match(text)
    return match.group("body").strip() if match else text


def _first_balanced_block(text: str) -> Optional[str]:
    """Return the first complete ``{...}``/``[...]`` block, skipping string contents."""
    closers: list[str] = []
    start: Optional[int] = None
    in_string = escaped = False
    for position, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = start is not None
        elif char in "{[":
            if start is None:
                start = position
            closers.append("}" if char == "{" else "]")
        elif closers and char == closers[-1]:
            closers.pop()
            if not closers:
                return text[start : position + 1]
    return None


def _candidates(text: str) -> Iterator[str]:
    yield text
    unfenced = _without_fence(text)
    if unfenced != text:
        yield unfenced
    block = _first_balanced_block(unfenced)
    if block is not None:
        yield block


def extract_json(raw: str) -> Any:
    """Parse model output, tolerating code fences and prose around the JSON value.

    The JSON itself is never rewritten; a malformed value fails the try.
    """
    text = raw.strip()
    if not text:
        raise LLMResponseFormatError("Model returned an empty response.")
    for candidate in _candidates(text):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")


class LLMClient:
    """Base client; subclasses supply the transport in :meth:`_raw_invoke`.

    Parsed JSON is validated in strict mode against the response model. A
    value of the wrong type is a failed try, never silently converted.
    """

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        return self._model

    def invoke(self, request: LLMRequest[T]) -> T:
        return self.invoke_structured(request)[0]

    def invoke_structured(
        self,
        request: LLMRequest[T],
        *,
        logger: Optional[AttemptLogger] = None,
    ) -> tuple[T, Any]:
        """Return ``(validated, parsed_json)``; raise :class:`LLMRetryError` when every try fails."""
        tries = request.max_attempts or self._max_attempts
        adapter = _adapter_for(request.response_model)
        payload = request.to_payload(self._model)
        failure: Optional[Exception] = None

        for number in range(1, tries + 1):
            if number > 1 and self._retry_delay > 0:
                time.sleep(self._retry_delay)
            raw: Optional[str] = None
            parsed: Optional[Any] = None
            try:
                raw = self._raw_invoke(payload)
                parsed = self._parse_json(raw)
                result = adapter.validate_python(parsed, strict=True)
            except (LLMTransportError, LLMResponseFormatError, ValidationError) as error:
                failure = error
                if logger is not None:
                    logger(payload, raw, parsed, error, number)
                continue
            if logger is not None:
                logger(payload, raw, parsed, None, number)
            return result, parsed

        raise LLMRetryError(
            f"Failed to produce schema-valid JSON after {tries} attempt(s) for model "
            f"{request.model or self._model}: {failure}"
        ) from failure

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        return extract_json(raw_response)
