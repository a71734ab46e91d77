from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from se.attempt import AttemptContext, ExecutionAttempt, FailureKind, find_placeholders
from se.context_builder import ContextBuilder
from se.storage import DirectoryFileStore, PersistenceError
from se.structured import FileArtifact
from se.tools.progress import RecordingBroadcaster


class _FlakyStore(DirectoryFileStore):
    def __init__(self, root: Path, failing: set[str]) -> None:
        super().__init__(root)
        self._failing = failing

    def write(self, project_id: str, path: str, content: str, *, create: bool = False) -> None:
        if path in self._failing:
            raise PersistenceError(f"Failed to save {path}: disk full")
        super().write(project_id, path, content, create=create)


def _attempt(client, store, tmp_path: Path, broadcaster=None) -> ExecutionAttempt:
    return ExecutionAttempt(
        client=client,
        context_builder=ContextBuilder(data_root=tmp_path / "data"),
        store=store,
        broadcaster=broadcaster,
    )


def _context(number: int = 1, feedback: tuple[str, ...] = ()) -> AttemptContext:
    return AttemptContext(
        project_id=".",
        user_request="Update the notes",
        attempt_number=number,
        started_at=time.monotonic(),
        feedback=feedback,
    )


def _edit(**fields) -> dict:
    fields.setdefault("file", "notes.txt")
    fields.setdefault("description", "change")
    return fields


def test_surgical_attempt_applies_and_persists(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(
        generate=[
            {
                "edits": [
                    _edit(action="replace", startLine=2, endLine=2, content="B2"),
                    _edit(action="insert", insertAfterLine=3, content="X"),
                    _edit(action="create", file="src/Toggle.tsx", content="export const Toggle = () => null;"),
                ],
                "messageToUser": "Updated notes and added a toggle.",
            }
        ]
    )
    recorder = RecordingBroadcaster()
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path, recorder).run(_context())

    assert result.success
    assert result.mode == "edits"
    assert result.edit_count == 3
    assert result.modified_paths == ["notes.txt", "src/Toggle.tsx"]
    assert (project_dir / "notes.txt").read_text(encoding="utf-8") == "A\nB2\nC\nX\nD"
    assert (project_dir / "src" / "Toggle.tsx").exists()
    assert result.message == "Updated notes and added a toggle."
    assert result.summary.startswith("**Surgical Edit Complete**")
    assert recorder.names() == [
        "generation:surgical_analysis",
        "generation:applying_edits",
        "generation:surgical_complete",
    ]


def test_invalid_batch_writes_nothing(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(
        generate=[
            {
                "edits": [
                    _edit(action="replace", startLine=1, endLine=2, content="x"),
                    _edit(action="delete", startLine=2, endLine=3),
                    _edit(action="create", file="src/New.tsx", content="new"),
                ]
            }
        ]
    )
    recorder = RecordingBroadcaster()
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path, recorder).run(_context())

    assert not result.success
    assert result.failure_kind is FailureKind.VALIDATION
    assert result.files_modified == ()
    assert len(result.validation_errors) == 1
    assert result.error.startswith("Invalid edits: ")
    assert result.message.startswith("Attempt 1 failed: ")
    assert (project_dir / "notes.txt").read_text(encoding="utf-8") == "A\nB\nC\nD"
    assert not (project_dir / "src" / "New.tsx").exists()
    assert recorder.names()[-1] == "generation:attempt_failed"


def test_persistence_failure_is_isolated(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(
        generate=[
            {
                "edits": [
                    _edit(action="insert", insertAfterLine=0, content="top"),
                    _edit(action="create", file="src/Broken.tsx", content="export {};"),
                ]
            }
        ]
    )
    store = _FlakyStore(project_dir, failing={"src/Broken.tsx"})
    result = _attempt(client, store, tmp_path).run(_context())

    assert result.success
    assert result.modified_paths == ["notes.txt"]
    assert result.persistence_errors == ("src/Broken.tsx: Failed to save src/Broken.tsx: disk full",)
    assert (project_dir / "notes.txt").read_text(encoding="utf-8").startswith("top\n")


def test_model_failure_is_model_call_failure(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(generate=['{"edits": "not a list"}'])
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path).run(_context())

    assert not result.success
    assert result.failure_kind is FailureKind.MODEL_CALL
    assert result.error.startswith("Model call failed: ")
    assert result.files_modified == ()


def test_missing_project_is_storage_failure(tmp_path: Path, scripted_client) -> None:
    store = DirectoryFileStore(tmp_path / "nowhere")
    client = scripted_client()
    result = _attempt(client, store, tmp_path).run(_context())

    assert result.failure_kind is FailureKind.STORAGE
    assert client.payloads == []


def test_full_file_generation_rejects_placeholders(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(
        generate=[
            {
                "files": [
                    {"path": "src/App.tsx", "content": "export function App() {\n  // ... rest of code\n}"},
                ]
            }
        ]
    )
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path).run(_context())

    assert result.failure_kind is FailureKind.GENERATION
    assert "src/App.tsx contains incomplete code" in result.error
    assert "<main />" in (project_dir / "src" / "App.tsx").read_text(encoding="utf-8")


def test_full_file_generation_overlays_snapshot(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(
        generate=[
            {
                "files": [
                    {"path": "src/App.tsx", "content": "export function App() {\n  return <section />;\n}\n"},
                    {"path": "notes.txt", "content": "A\nB\nC\nD"},
                ],
                "messageToUser": "Rewrote the app.",
            }
        ]
    )
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path).run(_context())

    assert result.success
    assert result.mode == "files"
    assert result.modified_paths == ["src/App.tsx"]
    assert "Rewrote src/App.tsx (4 lines)" in result.summary


def test_feedback_reaches_the_prompt(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(generate=[{"edits": []}])
    _attempt(client, DirectoryFileStore(project_dir), tmp_path).run(
        _context(number=2, feedback=("**Issues Found:**\n1. Wrong line.",))
    )
    prompt = client.prompts_for("generate")[0]
    assert "## Corrective Feedback (attempt 2)" in prompt
    assert "1. Wrong line." in prompt
    assert "2: B" in prompt


def test_find_placeholders_ignores_plain_ellipsis() -> None:
    files = [
        FileArtifact(path="a.js", content="const rest = [...items];"),
        FileArtifact(path="b.js", content="// Existing code stays here"),
    ]
    assert find_placeholders(files) == ["b.js"]


def _hide_seed(root: Path) -> str:
    (root / "data").mkdir()
    (root / "data" / "seed.json").write_text('{"users": [1, 2, 3]}', encoding="utf-8")
    return "data/seed.json"


def _hide_bundle(root: Path) -> str:
    (root / "bundle.js").write_text("x" * 600_000, encoding="utf-8")
    return "bundle.js"


def _hide_logo(root: Path) -> str:
    (root / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\xff\xfe")
    return "logo.png"


@pytest.mark.parametrize("hide", [_hide_seed, _hide_bundle, _hide_logo])
def test_create_never_overwrites_files_left_out_of_the_snapshot(
    tmp_path: Path, project_dir: Path, scripted_client, hide
) -> None:
    path = hide(project_dir)
    before = (project_dir / path).read_bytes()
    store = DirectoryFileStore(project_dir)
    assert path not in store.read(".")

    client = scripted_client(generate=[{"edits": [_edit(action="create", file=path, content="{}")]}])
    result = _attempt(client, store, tmp_path).run(_context())

    assert not result.success
    assert result.failure_kind is FailureKind.VALIDATION
    assert "cannot create it" in result.validation_errors[0]
    assert (project_dir / path).read_bytes() == before


def test_whole_file_payload_cannot_replace_hidden_file(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    path = _hide_seed(project_dir)
    client = scripted_client(generate=[{"files": [{"path": path, "content": "{}"}]}])
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path).run(_context())

    assert result.failure_kind is FailureKind.VALIDATION
    assert result.mode == "files"
    assert (project_dir / path).read_text(encoding="utf-8") == '{"users": [1, 2, 3]}'


def test_unencodable_content_is_rejected_before_writing(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(
        generate=[
            {
                "edits": [
                    _edit(action="replace", startLine=1, endLine=1, content="fine"),
                    _edit(action="create", file="src/Bad.tsx", content="bad \ud800"),
                ]
            }
        ]
    )
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path).run(_context())

    assert result.failure_kind is FailureKind.VALIDATION
    assert "not valid UTF-8" in result.error
    assert (project_dir / "notes.txt").read_text(encoding="utf-8") == "A\nB\nC\nD"
    assert not (project_dir / "src" / "Bad.tsx").exists()
    assert list((tmp_path / "data" / "logs" / "phases").glob("phase__generate__*.json"))


def test_unencodable_whole_file_is_generation_failure(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    client = scripted_client(generate=[{"files": [{"path": "notes.txt", "content": "\udc80"}]}])
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path).run(_context())

    assert result.failure_kind is FailureKind.GENERATION
    assert (project_dir / "notes.txt").read_text(encoding="utf-8") == "A\nB\nC\nD"


def test_trailing_comma_reply_is_not_repaired(tmp_path: Path, project_dir: Path, scripted_client) -> None:
    edit = _edit(action="replace", startLine=1, endLine=1, content="const a = [1, 2, ];")
    raw = json.dumps({"edits": [edit]})[:-1] + ",}"
    client = scripted_client(generate=[raw])
    result = _attempt(client, DirectoryFileStore(project_dir), tmp_path).run(_context())

    assert result.failure_kind is FailureKind.MODEL_CALL
    assert (project_dir / "notes.txt").read_text(encoding="utf-8") == "A\nB\nC\nD"
