"""Shared phase enumerations and execution ordering."""

from __future__ import annotations

from enum import Enum


class PhaseName(str, Enum):
    """Enumeration of the model phases run for each attempt."""

    GENERATE = "generate"
    VERIFY = "verify"


PHASE_SEQUENCE = [
    PhaseName.GENERATE,
    PhaseName.VERIFY,
]


__all__ = ["PHASE_SEQUENCE", "PhaseName"]
