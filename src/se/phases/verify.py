"""Verify phase: a second model judges whether an attempt fulfils the request."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from pydantic import Field

from ..context_builder import ContextBuilder
from ..models.llm_client import LLMClient
from ..structured import WireModel
from . import PhaseName
from .base import invoke_phase


@dataclass(slots=True)
class VerifyRequest:
    """Input payload for the Verify phase."""

    project_id: str
    user_request: str
    attempt_number: int
    success: bool
    message: str = ""
    files_modified: list[str] = field(default_factory=list)
    change_summary: str = ""
    error: str = ""
    prior_feedback: list[str] = field(default_factory=list)


class VerifyResponse(WireModel):
    """Verdict returned by the verifier model; confidence is clamped by the caller."""

    approved: bool
    confidence: float = 0.5
    reasoning: str = ""
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


def run(
    request: VerifyRequest,
    *,
    client: LLMClient,
    context_builder: ContextBuilder,
) -> VerifyResponse:
    """Execute the Verify phase via the shared LLM client."""
    return invoke_phase(
        PhaseName.VERIFY.value,
        request,
        VerifyResponse,
        client=client,
        context_builder=context_builder,
    )
