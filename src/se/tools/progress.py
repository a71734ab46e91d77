"""Best-effort progress broadcasting for UI observers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol

__all__ = [
    "LoggingBroadcaster",
    "NullBroadcaster",
    "ProgressBroadcaster",
    "RecordingBroadcaster",
    "safe_emit",
]

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("se.telemetry")


class ProgressBroadcaster(Protocol):
    """Collaborator that forwards status events to whoever is watching."""

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        ...


def _serialise_event_value(value: Any) -> Any:
    """Convert event payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    if hasattr(value, "model_dump"):
        return _serialise_event_value(value.model_dump())
    return str(value)


class LoggingBroadcaster:
    """Emit each event as a compact JSON line on the ``se.telemetry`` logger."""

    def __init__(self, channel: str = "", logger: logging.Logger | None = None) -> None:
        self._channel = channel
        self._logger = logger or TELEMETRY_LOGGER

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        record: dict[str, Any] = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._channel:
            record["channel"] = self._channel
        for key, value in payload.items():
            record[str(key)] = _serialise_event_value(value)
        self._logger.info(json.dumps(record, separators=(",", ":"), ensure_ascii=True))


class NullBroadcaster:
    """Broadcaster used when nobody is listening."""

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        return None


@dataclass(slots=True)
class RecordingBroadcaster:
    """Keep emitted events in memory; handy for CLIs and tests."""

    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def emit(self, event: str, payload: Mapping[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def safe_emit(broadcaster: ProgressBroadcaster | None, event: str, **payload: Any) -> None:
    """Forward an event without ever letting a broadcast failure reach the caller."""
    if broadcaster is None:
        return
    try:
        broadcaster.emit(event, payload)
    except Exception as error:  # noqa: BLE001 - broadcasting is fire-and-forget
        LOGGER.warning("Progress broadcast %s failed: %s", event, error)
