"""Generate phase: propose line-level edits or whole files for a request."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..context_builder import ContextBuilder
from ..models.llm_client import LLMClient, LLMResponseFormatError
from ..structured import GenerationResponse
from . import PhaseName
from .base import invoke_phase


@dataclass(slots=True)
class GenerateRequest:
    """Input payload for the Generate phase."""

    project_id: str
    user_request: str
    attempt_number: int = 1
    files: dict[str, str] = field(default_factory=dict)
    feedback: list[str] = field(default_factory=list)
    history: list[dict[str, str]] = field(default_factory=list)
    framework: str = ""


def run(
    request: GenerateRequest,
    *,
    client: LLMClient,
    context_builder: ContextBuilder,
) -> GenerationResponse:
    """Execute the Generate phase via the shared LLM client.

    Raises :class:`LLMResponseFormatError` when the payload carries neither
    or both of ``edits`` and ``files``.
    """
    response = invoke_phase(
        PhaseName.GENERATE.value,
        request,
        GenerationResponse,
        client=client,
        context_builder=context_builder,
    )
    if (response.edits is None) == (response.files is None):
        raise LLMResponseFormatError(
            "Generation response must contain exactly one of 'edits' or 'files'."
        )
    return response
