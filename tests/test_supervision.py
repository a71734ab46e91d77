from __future__ import annotations

import math
from pathlib import Path

import pytest

from se.attempt import ExecutionResult, FailureKind
from se.context_builder import ContextBuilder
from se.supervision import (
    CONFIDENCE_FLOOR,
    FAILED_ATTEMPT_CONFIDENCE,
    SupervisionGate,
    build_feedback,
    clamp_confidence,
)
from se.tools.progress import RecordingBroadcaster

_SUCCESS = ExecutionResult(success=True, message="Added toggle.", summary="**Surgical Edit Complete**")


def _gate(client, tmp_path: Path, broadcaster=None) -> SupervisionGate:
    return SupervisionGate(
        client=client,
        context_builder=ContextBuilder(data_root=tmp_path / "data"),
        broadcaster=broadcaster,
    )


def test_failed_attempt_rejected_without_model_call(tmp_path: Path, scripted_client) -> None:
    client = scripted_client()
    failed = ExecutionResult(
        success=False,
        message="Attempt 1 failed",
        error="Invalid edits: overlap",
        failure_kind=FailureKind.VALIDATION,
        validation_errors=("Edits 1 and 2 overlap in a.txt (lines 1-2 vs lines 2-3).",),
    )
    verdict = _gate(client, tmp_path).verify("go", failed, 1)

    assert client.payloads == []
    assert verdict.approved is False
    assert verdict.confidence == FAILED_ATTEMPT_CONFIDENCE
    assert verdict.requires_iteration is True
    assert verdict.issues == failed.validation_errors
    assert verdict.feedback.startswith("**Issues Found:**\n1. Edits 1 and 2 overlap")
    assert "**Suggestions:**" in verdict.feedback


def test_approval_never_requires_iteration(tmp_path: Path, scripted_client) -> None:
    client = scripted_client(verify=[{"approved": True, "confidence": 0.9, "reasoning": "Looks right."}])
    recorder = RecordingBroadcaster()
    verdict = _gate(client, tmp_path, recorder).verify("go", _SUCCESS, 1)

    assert verdict.approved
    assert verdict.requires_iteration is False
    assert verdict.feedback is None
    assert verdict.reasoning == "Looks right."
    assert recorder.names() == ["generation:verifying"]


@pytest.mark.parametrize(
    ("confidence", "requires_iteration"),
    [(0.29, False), (CONFIDENCE_FLOOR, True), (0.8, True)],
)
def test_confidence_floor(tmp_path: Path, scripted_client, confidence: float, requires_iteration: bool) -> None:
    client = scripted_client(
        verify=[{"approved": False, "confidence": confidence, "issues": ["Toggle missing"]}]
    )
    verdict = _gate(client, tmp_path).verify("go", _SUCCESS, 1)
    assert verdict.requires_iteration is requires_iteration
    assert verdict.feedback == "**Issues Found:**\n1. Toggle missing"


def test_confidence_is_clamped(tmp_path: Path, scripted_client) -> None:
    client = scripted_client(verify=[{"approved": False, "confidence": 7}])
    verdict = _gate(client, tmp_path).verify("go", _SUCCESS, 1)
    assert verdict.confidence == 1.0
    assert clamp_confidence(-2) == 0.0
    assert clamp_confidence(None) == 0.5
    assert clamp_confidence(math.nan) == 0.5


def test_verifier_failure_still_retries(tmp_path: Path, scripted_client) -> None:
    client = scripted_client(verify=["<html>bad gateway</html>"])
    verdict = _gate(client, tmp_path).verify("go", _SUCCESS, 2)

    assert verdict.approved is False
    assert verdict.confidence == 0.0
    assert verdict.requires_iteration is True
    assert verdict.issues[0].startswith("Verification failed: ")


def test_prior_feedback_is_shown_to_verifier(tmp_path: Path, scripted_client) -> None:
    client = scripted_client(verify=[{"approved": True}])
    _gate(client, tmp_path).verify("go", _SUCCESS, 2, ["Toggle missing"], project_id="demo")
    prompt = client.prompts_for("verify")[0]
    assert "## Previous Feedback Given\n1. Toggle missing" in prompt


def test_build_feedback_empty() -> None:
    assert build_feedback([], []) is None
    assert build_feedback([], ["Try again"]) == "**Suggestions:**\n1. Try again"
