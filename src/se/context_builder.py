"""Turn phase requests into bounded system/user prompt packages."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field, is_dataclass
from pathlib import Path
from typing import Any

from . import prompts
from .phases import PhaseName

CHARS_PER_TOKEN = 4


@dataclass(slots=True)
class ContextPackage:
    """Prompts, conversation history and bookkeeping for one model call."""

    system_prompt: str
    user_prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)
    history: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class _Section:
    label: str
    text: str
    priority: int
    truncatable: bool = False


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN) if text else 0


def _strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, Sequence):
        return [item for item in value if isinstance(item, str) and item.strip()]
    return []


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


class ContextBuilder:
    """Assemble prompts section by section until the token budget runs out.

    Sections are added in priority order. One that does not fit is dropped
    whole unless it is marked truncatable; every decision is listed under
    ``metadata["sections"]``.
    """

    DEFAULT_TOKEN_BUDGET = 24_000
    DEFAULT_HISTORY_TURNS = 10

    def __init__(
        self,
        *,
        data_root: Path | str | None = None,
        logs_root: Path | str | None = None,
        token_budget: int | None = None,
        history_turns: int | None = None,
        guidance: Sequence[str] | None = None,
    ) -> None:
        self._data_root = Path(data_root) if data_root else Path("data")
        self._logs_root = Path(logs_root) if logs_root else self._data_root / "logs"
        self._token_budget = token_budget or self.DEFAULT_TOKEN_BUDGET
        self._history_turns = self.DEFAULT_HISTORY_TURNS if history_turns is None else max(0, history_turns)
        self._guidance = tuple(line.strip() for line in _strings(list(guidance or ())))

    @classmethod
    def from_config(cls, config: Mapping[str, Any], project_root: Path | None = None) -> ContextBuilder:
        """Read ``paths`` and ``context`` settings; relative paths hang off ``project_root``."""
        root = project_root or Path.cwd()

        def _rooted(value: Any, default: Path) -> Path:
            path = Path(value) if value else default
            return path if path.is_absolute() else root / path

        paths = _as_mapping(config.get("paths"))
        data_root = _rooted(paths.get("data"), Path("data"))
        logs_root = _rooted(paths.get("logs"), data_root / "logs")

        context = _as_mapping(config.get("context"))
        budget = context.get("token_budget")
        turns = context.get("history_turns")
        return cls(
            data_root=data_root,
            logs_root=logs_root,
            token_budget=budget if isinstance(budget, int) and budget > 0 else None,
            history_turns=turns if isinstance(turns, int) else None,
            guidance=_strings(context.get("guidance")) or None,
        )

    @property
    def data_root(self) -> Path:
        return self._data_root

    @property
    def logs_root(self) -> Path:
        return self._logs_root

    @property
    def token_budget(self) -> int:
        return self._token_budget

    def build(self, phase: str, request: Any) -> ContextPackage:
        data = self._request_data(request)
        if phase == PhaseName.GENERATE.value:
            preamble, contract = prompts.GENERATE_SYSTEM_PREAMBLE, prompts.GENERATE_RESPONSE_CONTRACT
            sections = self._generate_sections(data)
        elif phase == PhaseName.VERIFY.value:
            preamble, contract = prompts.VERIFY_SYSTEM_PREAMBLE, prompts.VERIFY_RESPONSE_CONTRACT
            sections = self._verify_sections(data)
        else:
            raise ValueError(f"Unknown phase: {phase}")

        guidance = prompts.render_project_guidance(self._guidance)
        if guidance:
            sections.append(_Section("guidance", guidance, priority=15))

        system_prompt = "\n\n".join(
            [
                preamble,
                prompts.render_phase_brief(phase),
                contract,
                f"## Response Instructions\n{prompts.JSON_RESPONSE_INSTRUCTION}",
            ]
        )
        system_tokens = estimate_tokens(system_prompt)
        user_prompt, report, used = self._fit(sections, max(self._token_budget - system_tokens, 0))
        history = self._recent_history(data.get("history"))

        metadata: dict[str, Any] = {
            "phase": phase,
            "project_id": data.get("project_id"),
            "attempt_number": data.get("attempt_number"),
            "token_budget": self._token_budget,
            "token_estimate": used + system_tokens,
            "sections": report,
            "history_turns": len(history),
        }
        if self._guidance:
            metadata["guidance"] = list(self._guidance)
        return ContextPackage(system_prompt, user_prompt, metadata, history)

    def _generate_sections(self, data: Mapping[str, Any]) -> list[_Section]:
        files = _as_mapping(data.get("files"))
        sections = [
            _Section("user_request", f"## User Request\n{str(data.get('user_request') or '').strip()}", 0),
            _Section(
                "project_metadata",
                prompts.render_project_metadata(str(data.get("framework") or ""), files),
                10,
            ),
        ]
        feedback = prompts.render_feedback_section(
            _strings(data.get("feedback")), int(data.get("attempt_number") or 1)
        )
        if feedback:
            sections.append(_Section("feedback", feedback, 5))
        sections.extend(
            _Section(f"file:{path}", prompts.render_numbered_file(path, files[path]), 20 + offset)
            for offset, path in enumerate(sorted(files))
        )
        return sections

    def _verify_sections(self, data: Mapping[str, Any]) -> list[_Section]:
        changed = _strings(data.get("files_modified"))
        lines = [
            "## Execution Result",
            f"- Success: {bool(data.get('success'))}",
            f"- Files Modified: {len(changed)}",
            *(f"  - {path}" for path in changed),
        ]
        message = str(data.get("message") or "").strip()
        if message:
            lines.append(f"- Message: {message[:500]}")
        error = str(data.get("error") or "").strip()
        if error:
            lines.append(f"- Error: {error}")
        attempt_number = int(data.get("attempt_number") or 1)
        if attempt_number > 1:
            lines.append(f"\nThis is attempt #{attempt_number}.")

        sections = [
            _Section("user_request", f"## User Request\n\"{str(data.get('user_request') or '').strip()}\"", 0),
            _Section("execution_result", "\n".join(lines), 5),
        ]
        prior = _strings(data.get("prior_feedback"))
        if prior:
            sections.append(
                _Section("prior_feedback", f"## Previous Feedback Given\n{prompts.render_numbered_list(prior)}", 10)
            )
        summary = str(data.get("change_summary") or "").strip()
        if summary:
            sections.append(_Section("change_summary", f"## Changes Applied\n{summary}", 20, truncatable=True))
        return sections

    def _recent_history(self, value: Any) -> list[dict[str, str]]:
        if self._history_turns == 0 or isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            return []
        turns = [
            {"role": str(entry.get("role") or "").strip(), "content": str(entry.get("content") or "").strip()}
            for entry in value
            if isinstance(entry, Mapping)
        ]
        kept = [turn for turn in turns if turn["role"] in {"user", "assistant"} and turn["content"]]
        return kept[-self._history_turns :]

    @staticmethod
    def _fit(sections: Sequence[_Section], budget: int) -> tuple[str, list[dict[str, Any]], int]:
        remaining = budget
        chosen: list[str] = []
        report: list[dict[str, Any]] = []
        for section in sorted(sections, key=lambda item: item.priority):
            text = section.text.strip()
            cost = estimate_tokens(text)
            truncated = False
            if cost > remaining:
                if section.truncatable and remaining > 0:
                    text = text[: remaining * CHARS_PER_TOKEN].rstrip() + "\n... (truncated)"
                    cost = estimate_tokens(text)
                    truncated = True
                else:
                    text = ""
                    cost = 0
            report.append({"label": section.label, "included": bool(text), "truncated": truncated, "tokens": cost})
            if text:
                chosen.append(text)
                remaining = max(0, remaining - cost)
        return "\n\n".join(chosen).strip(), report, budget - remaining

    @staticmethod
    def _request_data(request: Any) -> dict[str, Any]:
        if is_dataclass(request) and not isinstance(request, type):
            return asdict(request)
        if isinstance(request, Mapping):
            return dict(request)
        raise TypeError(f"Unsupported request type: {type(request)!r}")


__all__ = ["ContextBuilder", "ContextPackage", "estimate_tokens"]
