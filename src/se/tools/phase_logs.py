"""Read back the JSON records written for each phase call."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

__all__ = ["PhaseLogEntry", "list_phase_logs", "load_phase_log"]


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


@dataclass(frozen=True, slots=True)
class PhaseLogEntry:
    path: Path
    phase: str
    payload: Mapping[str, Any]

    @property
    def request(self) -> Mapping[str, Any]:
        return _mapping(self.payload.get("request"))

    @property
    def metadata(self) -> Mapping[str, Any]:
        return _mapping(_mapping(self.payload.get("context")).get("metadata"))

    @property
    def project_id(self) -> str | None:
        value = self.request.get("project_id")
        return value.strip() or None if isinstance(value, str) else None

    @property
    def attempt_number(self) -> int | None:
        value = self.request.get("attempt_number")
        return value if isinstance(value, int) else None

    @property
    def error(self) -> str | None:
        return str(self.payload["error"]) if self.payload.get("error") else None

    @property
    def succeeded(self) -> bool:
        return self.error is None and "result" in self.payload


def load_phase_log(path: Path | str) -> PhaseLogEntry:
    resolved = Path(path).resolve()
    payload = json.loads(resolved.read_text(encoding="utf-8"))
    return PhaseLogEntry(resolved, str(payload.get("phase") or "").strip(), payload)


def list_phase_logs(logs_root: Path | str, *, phase: str | None = None) -> list[Path]:
    """Phase logs under ``<logs_root>/phases``, in name (and so time) order."""
    directory = Path(logs_root) / "phases"
    if not directory.is_dir():
        return []
    pattern = f"phase__{phase}__*.json" if phase else "phase__*.json"
    return sorted(directory.glob(pattern))
