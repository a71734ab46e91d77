"""Prompt templates and helpers shared across surgical editor phases."""

from __future__ import annotations

from typing import Mapping, Sequence

from .structured import split_lines

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object that satisfies the documented response schema. "
    "Do not include markdown fences, explanations, or trailing text. "
    "Use double-quoted keys and strings."
)

# Files longer than this are shown as head + tail previews.
LARGE_FILE_LINES = 100
LARGE_FILE_HEAD = 50
LARGE_FILE_TAIL = 20

GENERATE_SYSTEM_PREAMBLE = (
    "You are a surgical code editor. You make precise, line-level modifications: "
    "identify the exact lines to change and modify only those lines. "
    "Never regenerate entire files unless a new file is required."
)

VERIFY_SYSTEM_PREAMBLE = (
    "You are a senior software engineer reviewing whether completed work fulfils the user's request. "
    "Be specific and actionable; when rejecting, explain exactly what needs to be fixed."
)

GENERATE_RESPONSE_CONTRACT = """## Response Contract
Return {"thought", "edits", "messageToUser", "requiresConfirmation"}.
Each edit is {"file", "action", "description"} plus:
- replace: "startLine", "endLine", "content" (replaces the inclusive range)
- delete: "startLine", "endLine"
- insert: "insertAfterLine" (0 = start of file), "content"
- create: "content" (only for files that do not exist yet)
When whole files are unavoidable, return "files": [{"path", "content"}] instead of "edits", never both.
Rules:
- Line numbers are 1-indexed and refer to the numbered listing below, before any edit is applied.
- Edits on the same file must not overlap.
- Multi-line content uses \\n and keeps the surrounding indentation.
- Never use placeholders such as "// ... rest of code"; content must be complete."""

VERIFY_RESPONSE_CONTRACT = """## Response Contract
Return {"approved", "confidence", "reasoning", "issues", "suggestions"}:
- approved: true when the change fulfils the request
- confidence: number between 0.0 and 1.0
- reasoning: clear explanation of the decision
- issues / suggestions: specific strings, empty lists when there are none
Consider whether the output matches the request, whether the expected files changed, and whether anything is obviously missing."""


def render_phase_brief(phase: str) -> str:
    """Return the canonical phase brief used across all prompts."""
    return (
        "## Phase Brief\n"
        f"You are executing the `{phase}` phase. Review the provided context "
        "and return structured JSON that matches the expected response schema."
    )


def render_project_guidance(guidance: Sequence[str]) -> str:
    """Format project guidance strings as a single bullet list block."""
    if not guidance:
        return ""
    body = "\n".join(f"- {line.strip()}" for line in guidance if line.strip())
    if not body:
        return ""
    return f"## Project Guidance\n{body}"


def render_numbered_file(path: str, content: str) -> str:
    """Render ``content`` with 1-indexed line numbers for the model to address."""
    lines = split_lines(content)
    total = len(lines)
    if total > LARGE_FILE_LINES:
        head = [f"{index}: {line}" for index, line in enumerate(lines[:LARGE_FILE_HEAD], start=1)]
        tail_start = total - LARGE_FILE_TAIL + 1
        tail = [
            f"{index}: {line}"
            for index, line in enumerate(lines[-LARGE_FILE_TAIL:], start=tail_start)
        ]
        omitted = total - LARGE_FILE_HEAD - LARGE_FILE_TAIL
        body = "\n".join([*head, f"... [{omitted} lines omitted] ...", *tail])
    else:
        body = "\n".join(f"{index}: {line}" for index, line in enumerate(lines, start=1))
    return f"### {path} ({total} lines)\n```\n{body}\n```"


def render_numbered_list(items: Sequence[str]) -> str:
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))


def render_feedback_section(feedback: Sequence[str], attempt_number: int) -> str:
    """Render supervisor feedback collected from earlier attempts."""
    entries = [entry.strip() for entry in feedback if entry and entry.strip()]
    if not entries:
        return ""
    blocks = [
        f"## Corrective Feedback (attempt {attempt_number})",
        "Earlier attempts were rejected. Address every point below.",
    ]
    for index, entry in enumerate(entries, start=1):
        blocks.append(f"### Review {index}\n{entry}")
    return "\n\n".join(blocks)


def render_project_metadata(framework: str, files: Mapping[str, str]) -> str:
    total_lines = sum(len(split_lines(content)) for content in files.values())
    return (
        "## Project Context\n"
        f"- Framework: {framework or 'unknown'}\n"
        f"- Total Files: {len(files)}\n"
        f"- Total Lines: {total_lines}"
    )


__all__ = [
    "GENERATE_RESPONSE_CONTRACT",
    "GENERATE_SYSTEM_PREAMBLE",
    "JSON_RESPONSE_INSTRUCTION",
    "LARGE_FILE_HEAD",
    "LARGE_FILE_LINES",
    "LARGE_FILE_TAIL",
    "VERIFY_RESPONSE_CONTRACT",
    "VERIFY_SYSTEM_PREAMBLE",
    "render_feedback_section",
    "render_numbered_file",
    "render_numbered_list",
    "render_phase_brief",
    "render_project_guidance",
    "render_project_metadata",
]
