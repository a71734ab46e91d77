from __future__ import annotations

from pathlib import Path

import pytest

from se import prompts
from se.context_builder import ContextBuilder
from se.phases.generate import GenerateRequest
from se.phases.verify import VerifyRequest


def _builder(tmp_path: Path, **kwargs) -> ContextBuilder:
    return ContextBuilder(data_root=tmp_path / "data", **kwargs)


def test_generate_prompt_numbers_file_lines(tmp_path: Path) -> None:
    request = GenerateRequest(
        project_id="demo",
        user_request="Rename B",
        files={"notes.txt": "A\nB\nC"},
        framework="react",
    )
    package = _builder(tmp_path).build("generate", request)

    assert "## User Request\nRename B" in package.user_prompt
    assert "### notes.txt (3 lines)" in package.user_prompt
    assert "1: A\n2: B\n3: C" in package.user_prompt
    assert "- Framework: react" in package.user_prompt
    assert package.metadata["phase"] == "generate"
    assert package.metadata["project_id"] == "demo"
    assert prompts.JSON_RESPONSE_INSTRUCTION in package.system_prompt


def test_feedback_section_follows_request(tmp_path: Path) -> None:
    request = GenerateRequest(
        project_id="demo",
        user_request="Fix it",
        attempt_number=2,
        feedback=["**Issues Found:**\n1. Line numbers were off."],
    )
    prompt = _builder(tmp_path).build("generate", request).user_prompt
    assert prompt.index("## User Request") < prompt.index("## Corrective Feedback (attempt 2)")
    assert "### Review 1\n**Issues Found:**" in prompt


def test_large_files_show_head_and_tail() -> None:
    content = "\n".join(f"row {index}" for index in range(1, 151))
    rendered = prompts.render_numbered_file("big.txt", content)
    assert "### big.txt (150 lines)" in rendered
    assert "50: row 50" in rendered
    assert "51: row 51" not in rendered
    assert "... [80 lines omitted] ..." in rendered
    assert "131: row 131" in rendered
    assert "150: row 150" in rendered


def test_token_budget_drops_low_priority_sections(tmp_path: Path) -> None:
    files = {"a.txt": "a" * 400, "b.txt": "b" * 8000}
    builder = _builder(tmp_path, token_budget=1200)
    package = builder.build("generate", GenerateRequest(project_id="p", user_request="go", files=files))

    sections = {entry["label"]: entry for entry in package.metadata["sections"]}
    assert sections["user_request"]["included"] is True
    assert sections["file:a.txt"]["included"] is True
    assert sections["file:b.txt"]["included"] is False
    assert "### b.txt" not in package.user_prompt


def test_history_is_filtered_and_capped(tmp_path: Path) -> None:
    history = [
        {"role": "system", "content": "ignored"},
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "second"},
    ]
    builder = _builder(tmp_path, history_turns=2)
    package = builder.build(
        "generate",
        GenerateRequest(project_id="p", user_request="go", history=history),
    )
    assert package.history == [
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "second"},
    ]
    assert package.metadata["history_turns"] == 2


def test_verify_prompt_lists_execution_result(tmp_path: Path) -> None:
    request = VerifyRequest(
        project_id="p",
        user_request="Add a toggle",
        attempt_number=2,
        success=True,
        message="Added toggle.",
        files_modified=["Header.tsx"],
        change_summary="**Surgical Edit Complete**",
        prior_feedback=["Toggle was missing."],
    )
    package = _builder(tmp_path).build("verify", request)
    assert '## User Request\n"Add a toggle"' in package.user_prompt
    assert "- Files Modified: 1\n  - Header.tsx" in package.user_prompt
    assert "This is attempt #2." in package.user_prompt
    assert "## Previous Feedback Given\n1. Toggle was missing." in package.user_prompt
    assert "## Changes Applied" in package.user_prompt
    assert prompts.VERIFY_SYSTEM_PREAMBLE in package.system_prompt


def test_guidance_from_config(tmp_path: Path) -> None:
    config = {
        "paths": {"data": "data", "logs": "data/logs"},
        "context": {"guidance": ["Prefer Tailwind classes."], "token_budget": 5000},
    }
    builder = ContextBuilder.from_config(config, project_root=tmp_path)
    assert builder.data_root == tmp_path / "data"
    assert builder.logs_root == tmp_path / "data" / "logs"
    assert builder.token_budget == 5000
    package = builder.build("generate", GenerateRequest(project_id="p", user_request="go"))
    assert "## Project Guidance\n- Prefer Tailwind classes." in package.user_prompt


def test_unknown_phase_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _builder(tmp_path).build("deploy", {"project_id": "p"})
