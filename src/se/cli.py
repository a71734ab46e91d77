"""CLI commands for running surgical edits against a project directory."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import typer
import yaml
from pydantic import TypeAdapter, ValidationError

from .context_builder import ContextBuilder
from .models import GatewayClient, LLMClient
from .orchestrator import Orchestrator, ProjectContext, RequestOutcome
from .phases import PhaseName
from .storage import DirectoryFileStore, FileStore, SQLiteFileStore, StorageError
from .structured import Edit, snapshot_line_total
from .tools.diff_report import summarize
from .tools.phase_logs import list_phase_logs
from .tools.progress import LoggingBroadcaster
from .tools.validator import validate_edits

APP_HELP = "Surgical editor CLI entry point."
DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "root": ".",
        "framework": "",
        "store": "directory",
    },
    "iteration": {
        "backoff_seconds": 0,
    },
    "models": {
        "default": "anthropic/claude-sonnet-4",
        "verifier": "",
        "base_url": "",
        "timeout": 120,
        "max_attempts": 3,
        "retry_delay": 0.5,
    },
    "reporting": {
        "baseline_seconds": 20,
        "preview_lines": 10,
        "write_iteration_artifacts": True,
    },
    "context": {
        "token_budget": 24000,
        "history_turns": 10,
        "guidance": [],
    },
    "paths": {
        "data": "data",
        "db_path": "data/se.sqlite",
        "logs": "data/logs",
        "config": DEFAULT_CONFIG_NAME,
    },
}

_EDIT_LIST = TypeAdapter(List[Edit])

# (key, cast, lower bound, bound inclusive)
_GATEWAY_NUMERIC_OPTIONS = (
    ("timeout", float, 0, False),
    ("max_attempts", int, 1, True),
    ("retry_delay", float, 0, True),
)

app = typer.Typer(help=APP_HELP)


def _abort(message: str) -> NoReturn:
    typer.echo(message)
    raise typer.Exit(code=1)


def _default_config() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _save_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.safe_dump(config_data, sort_keys=False), encoding="utf-8")


def load_config(config_path: Path) -> Dict[str, Any]:
    """Read the YAML configuration; an empty file yields an empty mapping."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as error:
        _abort(f"Failed to parse config: {error}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        _abort("Configuration must be a mapping at the top level.")
    return data


def _load_config_or_default(config_path: Path) -> Dict[str, Any]:
    return load_config(config_path) if config_path.exists() else _default_config()


def _resolve_project_root(config: Dict[str, Any], config_path: Path, override: Optional[str]) -> Path:
    """The ``--project-root`` flag wins; otherwise ``project.root`` relative to the config file."""
    if override:
        return Path(override).resolve()
    configured = Path(str((config.get("project") or {}).get("root") or "."))
    return configured.resolve() if configured.is_absolute() else (config_path.parent / configured).resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _gateway_options(models_cfg: Dict[str, Any]) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    for key, cast, floor, inclusive in _GATEWAY_NUMERIC_OPTIONS:
        value = models_cfg.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if cast is int and not isinstance(value, int):
            continue
        if value > floor or (inclusive and value == floor):
            options[key] = cast(value)
    base_url = str(models_cfg.get("base_url") or "").strip()
    if base_url:
        options["base_url"] = base_url
    return options


def _build_client(config: Dict[str, Any], *, use_remote: bool, role: str = "default") -> LLMClient:
    """Gateway client for ``role``, or the offline stub when remote calls are off."""
    models_cfg = config.get("models") or {}
    model_name = str(models_cfg.get(role) or models_cfg.get("default") or "offline")
    if not use_remote or model_name.lower() == "offline" or model_name.lower().endswith("-offline"):
        typer.echo(f"Using offline stub client for {role}.")
        return _OfflineLLMClient()

    typer.echo(f"Using gateway client for {role} ({model_name}).")
    try:
        return GatewayClient(model=model_name, **_gateway_options(models_cfg))
    except ValueError as error:
        if "api key" not in str(error).lower():
            _abort(f"Failed to initialise gateway client: {error}")
        _abort(
            "No API key given. Set SE_API_KEY or OPENROUTER_API_KEY, "
            "or re-run with --no-use-remote to use the offline stub."
        )


def _build_store(config: Dict[str, Any], project_root: Path) -> tuple[FileStore, str]:
    """Return the configured store and the project id to address in it."""
    project_cfg = config.get("project") or {}
    backend = str(project_cfg.get("store") or "directory").strip().lower()
    if backend == "sqlite":
        project_id = str(project_cfg.get("name") or project_root.name)
        return SQLiteFileStore.from_config(config), project_id
    if backend != "directory":
        raise typer.BadParameter(f"Unknown project.store backend: {backend}")
    return DirectoryFileStore(project_root), "."


class _OfflineLLMClient(LLMClient):
    """Local stub that returns deterministic JSON for demos and dry runs."""

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1, retry_delay=0.0)

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        metadata = payload.get("metadata") or {}
        phase = str(metadata.get("phase") or "")
        if phase == PhaseName.VERIFY.value:
            response: Dict[str, Any] = {
                "approved": True,
                "confidence": 0.5,
                "reasoning": "Offline review: nothing to check.",
                "issues": [],
                "suggestions": [],
            }
        else:
            response = {
                "thought": "Offline mode cannot analyse the request.",
                "edits": [],
                "messageToUser": "Offline mode: no changes were proposed.",
                "requiresConfirmation": False,
            }
        return json.dumps(response)


def _render_outcome(outcome: RequestOutcome) -> None:
    typer.echo(outcome.summary or outcome.message)
    if outcome.summary and outcome.message not in outcome.summary:
        typer.echo("")
        typer.echo(outcome.message)
    typer.echo("")
    typer.echo(f"Attempts: {len(outcome.iteration_history)} | state: {outcome.state.value}")
    for record in outcome.iteration_history:
        result = record.execution_result
        verdict = record.supervision_verdict
        status_label = "ok" if result.success else (result.failure_kind.value if result.failure_kind else "failed")
        typer.echo(
            f"- #{record.attempt_number}: {status_label}, "
            f"approved={verdict.approved} confidence={verdict.confidence:.2f} -> {record.transition.value}"
        )
        for entry in result.persistence_errors:
            typer.echo(f"    ! {entry}")
    if outcome.files_modified:
        typer.echo("Files modified:")
        for artifact in outcome.files_modified:
            typer.echo(f"  - {artifact.path}")
    if outcome.artifact_path is not None:
        typer.echo(f"Artifact: {outcome.artifact_path.as_posix()}")


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file to create.",
    ),
    project_root: str = typer.Option(".", "--project-root", "-p", help="Project directory to edit."),
    name: Optional[str] = typer.Option(None, "--name", help="Project name (defaults to the directory name)."),
    framework: str = typer.Option("", "--framework", help="Framework hint shown to the model."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)

    config_data = _default_config()
    project_cfg = config_data["project"]
    project_cfg["root"] = project_root
    project_cfg["name"] = name or Path(project_root).resolve().name
    project_cfg["framework"] = framework
    config_data["paths"]["config"] = config_path.name
    _save_config(config_path, config_data)
    typer.echo(f"Created configuration at {config_path}.")


@app.command()
def edit(
    request: str = typer.Argument(..., help="What to change, in plain language."),
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    project_root: Optional[str] = typer.Option(None, "--project-root", "-p", help="Override project.root."),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the model gateway instead of the offline stub (requires API key).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run the execute/verify loop for one request and print the summary."""
    _configure_logging(verbose)
    config_path = Path(config)
    config_data = _load_config_or_default(config_path)
    root = _resolve_project_root(config_data, config_path, project_root)

    client = _build_client(config_data, use_remote=use_remote)
    verifier_client: Optional[LLMClient] = None
    if str((config_data.get("models") or {}).get("verifier") or "").strip():
        verifier_client = _build_client(config_data, use_remote=use_remote, role="verifier")

    store, project_id = _build_store(config_data, root)
    project_cfg = config_data.get("project") or {}
    orchestrator = Orchestrator(
        client=client,
        verifier_client=verifier_client,
        store=store,
        config=config_data,
        context_builder=ContextBuilder.from_config(config_data, project_root=config_path.resolve().parent),
        broadcaster=LoggingBroadcaster(channel=str(project_cfg.get("name") or root.name)),
    )
    try:
        outcome = orchestrator.process_request(
            request,
            ProjectContext(project_id=project_id, framework=str(project_cfg.get("framework") or "")),
        )
    finally:
        if isinstance(store, SQLiteFileStore):
            store.close()

    _render_outcome(outcome)
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command()
def validate(
    edits_file: Path = typer.Argument(..., help="JSON file holding an edit list or {\"edits\": [...]}."),
    project_root: str = typer.Option(".", "--project-root", "-p", help="Project directory the edits target."),
    preview_lines: int = typer.Option(10, "--preview-lines", min=1, help="Lines shown for created files."),
) -> None:
    """Check an edit batch against a project without writing anything."""
    try:
        payload = json.loads(edits_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        typer.echo(f"Failed to read {edits_file}: {error}")
        raise typer.Exit(code=1) from error

    raw_edits = payload.get("edits") if isinstance(payload, dict) else payload
    try:
        edits = _EDIT_LIST.validate_python(raw_edits)
    except ValidationError as error:
        typer.echo(f"Edit file does not match the edit schema:\n{error}")
        raise typer.Exit(code=1) from error

    store = DirectoryFileStore(project_root)
    try:
        snapshot = store.read(".")
    except StorageError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    occupied = {
        edit.file
        for edit in edits
        if edit.action == "create" and edit.file not in snapshot and store.exists(".", edit.file)
    }
    errors = validate_edits(edits, snapshot, occupied=occupied)
    if errors:
        typer.echo(f"{len(errors)} problem(s) found:")
        for entry in errors:
            typer.echo(f"  - {entry}")
        raise typer.Exit(code=1)

    summary = summarize(edits, snapshot, elapsed_seconds=0.0, preview_lines=preview_lines)
    typer.echo(f"{len(edits)} edit(s) are valid.")
    if summary.per_file_diffs:
        typer.echo(summary.per_file_diffs)
    if summary.edit_overview:
        typer.echo("")
        typer.echo(summary.edit_overview)


@app.command()
def status(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    project_root: Optional[str] = typer.Option(None, "--project-root", "-p", help="Override project.root."),
) -> None:
    """Validate configuration and report project statistics."""
    config_path = Path(config)
    config_data = load_config(config_path)
    project_cfg = config_data.get("project") or {}
    root = _resolve_project_root(config_data, config_path, project_root)

    typer.echo(f"Loaded configuration from {config_path}")
    typer.echo(f"Project: {project_cfg.get('name') or 'unnamed'} ({root})")

    store, project_id = _build_store(config_data, root)
    try:
        snapshot = store.read(project_id)
    except StorageError as error:
        typer.echo(f"Failed to read project files: {error}")
        raise typer.Exit(code=1) from error
    finally:
        if isinstance(store, SQLiteFileStore):
            store.close()
    typer.echo(f"Files: {len(snapshot)} | lines: {snapshot_line_total(snapshot)}")

    builder = ContextBuilder.from_config(config_data, project_root=config_path.resolve().parent)
    phase_logs = list_phase_logs(builder.logs_root)
    iterations_root = builder.logs_root / "iterations"
    iteration_count = len(list(iterations_root.glob("*.json"))) if iterations_root.is_dir() else 0
    typer.echo(f"Phase logs: {len(phase_logs)} | iteration artifacts: {iteration_count}")


if __name__ == "__main__":
    app()
