"""Edit engine tools and best-effort reporting helpers."""

from .applier import apply_edits, changed_paths, order_for_application
from .diff_report import DiffSummary, PerformanceMetrics, render_completion_summary, render_files_summary, summarize
from .phase_logs import PhaseLogEntry, list_phase_logs, load_phase_log
from .progress import LoggingBroadcaster, NullBroadcaster, ProgressBroadcaster, RecordingBroadcaster, safe_emit
from .validator import EditValidationError, ensure_valid, validate_edits

__all__ = [
    "DiffSummary",
    "EditValidationError",
    "LoggingBroadcaster",
    "NullBroadcaster",
    "PerformanceMetrics",
    "PhaseLogEntry",
    "ProgressBroadcaster",
    "RecordingBroadcaster",
    "apply_edits",
    "changed_paths",
    "ensure_valid",
    "list_phase_logs",
    "load_phase_log",
    "order_for_application",
    "render_completion_summary",
    "render_files_summary",
    "safe_emit",
    "summarize",
    "validate_edits",
]
