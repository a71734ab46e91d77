from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from se.models.llm_client import LLMClient, LLMTransportError  # noqa: E402


class ScriptedClient(LLMClient):
    """Replays canned responses per phase; the last response of a phase repeats."""

    def __init__(self, *, generate: Iterable[Any] = (), verify: Iterable[Any] = ()) -> None:
        super().__init__("scripted", max_attempts=1, retry_delay=0.0)
        self.responses: dict[str, list[Any]] = {
            "generate": list(generate),
            "verify": list(verify),
        }
        self.payloads: list[dict[str, Any]] = []

    @property
    def phases(self) -> list[str]:
        return [payload["metadata"]["phase"] for payload in self.payloads]

    def prompts_for(self, phase: str) -> list[str]:
        return [
            payload["messages"][-1]["content"]
            for payload in self.payloads
            if payload["metadata"]["phase"] == phase
        ]

    def _raw_invoke(self, payload: dict[str, Any]) -> str:
        self.payloads.append(payload)
        phase = payload["metadata"]["phase"]
        queue = self.responses.get(phase) or []
        if not queue:
            raise LLMTransportError(f"No scripted {phase} response left.")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item if isinstance(item, str) else json.dumps(item)


@pytest.fixture()
def scripted_client() -> Callable[..., ScriptedClient]:
    return ScriptedClient


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    """Directory project with a four-line text file and a small component."""
    root = tmp_path / "app"
    (root / "src").mkdir(parents=True)
    (root / "notes.txt").write_text("A\nB\nC\nD", encoding="utf-8")
    (root / "src" / "App.tsx").write_text(
        "export function App() {\n  return <main />;\n}\n",
        encoding="utf-8",
    )
    return root


@pytest.fixture()
def se_config(tmp_path: Path) -> dict[str, Any]:
    data_dir = tmp_path / "data"
    return {
        "paths": {
            "data": data_dir.as_posix(),
            "logs": (data_dir / "logs").as_posix(),
        },
        "iteration": {"backoff_seconds": 0},
    }
