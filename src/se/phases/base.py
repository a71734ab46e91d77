"""Run a phase through the model client and keep a written record of it."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TypeVar

from ..context_builder import ContextBuilder
from ..models.llm_client import LLMClient, LLMClientError, LLMRequest
from ..utils.slug import slugify, timestamped_name

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


def invoke_phase(
    phase: str,
    request: Any,
    response_model: type[T],
    *,
    client: LLMClient,
    context_builder: ContextBuilder,
) -> T:
    """Build the prompt for ``phase``, call the client and log every try."""
    package = context_builder.build(phase, request)
    llm_request = LLMRequest(
        prompt=package.user_prompt,
        system_prompt=package.system_prompt,
        response_model=response_model,
        metadata=package.metadata,
        history=list(package.history),
    )
    recorder = _PhaseRecorder(
        phase=phase,
        request=_json_safe(request),
        data_root=context_builder.data_root,
        logs_root=context_builder.logs_root,
    )

    LOGGER.debug("Invoking %s phase for project %s", phase, recorder.project_slug or "-")
    try:
        result, _ = client.invoke_structured(llm_request, logger=recorder.on_attempt)
    except LLMClientError as error:
        LOGGER.warning("%s phase failed: %s", phase, error)
        recorder.write(llm_request, error=error)
        raise
    recorder.write(llm_request, result=result)
    return result


@dataclass(slots=True)
class _PhaseRecorder:
    """Collects the tries of one phase call and writes them to disk.

    Each try's prompt and raw reply go to ``<data>/llm_inputs/*.txt``; the
    whole call goes to ``<logs>/phases/*.json``. Write failures are ignored.
    """

    phase: str
    request: Any
    data_root: Path
    logs_root: Path
    attempts: list[dict[str, Any]] = field(default_factory=list)
    project_slug: str = field(init=False, default="")
    attempt_label: str = field(init=False, default="")

    def __post_init__(self) -> None:
        if isinstance(self.request, dict):
            project_id = self.request.get("project_id")
            if project_id:
                self.project_slug = slugify(str(project_id), fallback="project")
            number = self.request.get("attempt_number")
            if isinstance(number, int):
                self.attempt_label = f"attempt-{number}"

    def on_attempt(
        self,
        payload: dict[str, Any],
        raw: Optional[str],
        parsed: Any,
        error: Optional[Exception],
        attempt: int,
    ) -> None:
        self.attempts.append(
            {
                "attempt": attempt,
                "raw": raw,
                "parsed": _json_safe(parsed),
                "error": str(error) if error else None,
            }
        )
        self._write_exchange(payload, raw, error, attempt)

    def write(
        self,
        llm_request: LLMRequest[Any],
        *,
        result: Any | None = None,
        error: Exception | None = None,
    ) -> Optional[Path]:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "phase": self.phase,
            "request": self.request,
            "context": {
                "system_prompt": llm_request.system_prompt,
                "user_prompt": llm_request.prompt,
                "metadata": _json_safe(llm_request.metadata),
            },
            "attempts": self.attempts,
        }
        if result is not None:
            entry["result"] = _json_safe(result)
        if error is not None:
            entry["error"] = str(error)

        name = timestamped_name("phase", self.phase, self.project_slug, self.attempt_label)
        target = self.logs_root / "phases" / name
        text = json.dumps(entry, indent=2, sort_keys=True, ensure_ascii=False)
        return target if _write_quietly(target, text) else None

    def _write_exchange(
        self,
        payload: dict[str, Any],
        raw: Optional[str],
        error: Optional[Exception],
        attempt: int,
    ) -> None:
        header = [
            f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
            f"Phase: {self.phase}",
            f"Call: {attempt}",
        ]
        if self.project_slug:
            header.append(f"Project: {self.project_slug}")
        if payload.get("model"):
            header.append(f"Model: {payload['model']}")

        blocks = ["\n".join(header)]
        for message in payload.get("messages") or []:
            content = str(message.get("content") or "").strip()
            if content:
                role = str(message.get("role") or "").strip()
                blocks.append(f"{role.title() + ' ' if role else ''}Prompt:\n{content}")
        if error is not None:
            blocks.append(f"Error: {error}")
        if raw is not None:
            blocks.append(f"Raw Response:\n{raw}")

        name = timestamped_name(
            "exchange",
            self.phase,
            self.project_slug,
            self.attempt_label,
            f"call-{attempt}",
            uuid.uuid4().hex[:8],
            suffix=".txt",
        )
        _write_quietly(self.data_root.resolve() / "llm_inputs" / name, "\n\n".join(blocks))


def _write_quietly(path: Path, text: str) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8", errors="backslashreplace")
    except (OSError, UnicodeError) as error:
        LOGGER.debug("Could not write %s: %s", path, error)
        return False
    return True


def _json_safe(value: Any) -> Any:
    """Reduce dataclasses, pydantic models and paths to plain JSON values."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if is_dataclass(value) and not isinstance(value, type):
        return _json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        return _json_safe(value.model_dump(by_alias=True, exclude_none=True))
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    return str(value)


__all__ = ["invoke_phase"]
