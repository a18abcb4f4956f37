from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from foreman import __version__
from foreman.backends import (
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    WorkerBackend,
)
from foreman.classifier import classify
from foreman.config import BackendName, ForemanConfig, load_config, save_config
from foreman.contracts import ContractRegistry
from foreman.controller import (
    EscalationDecision,
    EscalationHandler,
    EscalationRequest,
    RetryController,
    fixed_decision,
)
from foreman.errors import ForemanError
from foreman.pipeline import load_pipeline
from foreman.runner import PipelineRunner, RunSummary
from foreman.state import ProgressStore
from foreman.workers import build_workers

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
ESCALATION_CHOICES = [decision.value for decision in EscalationDecision]
ESCALATION_POLICIES = ["prompt", "skip", "abort"]


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ForemanConfig
    registry: ContractRegistry
    state_dir: Path


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        registry=ContractRegistry.from_config(config.roles),
        state_dir=config.state_directory(repo_root),
    )


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.debug("backend event: %s", event)


def _build_single_backend(
    backend_name: BackendName, config: ForemanConfig, repo_root: Path
) -> WorkerBackend:
    if backend_name == "codex":
        return CodexBackend(
            binary=config.worker.codex_binary,
            working_directory=repo_root,
            model=config.worker.model,
            event_hook=_log_backend_event,
        )
    return ClaudeCodeBackend(
        binary=config.worker.claude_binary,
        working_directory=repo_root,
        model=config.worker.model,
        event_hook=_log_backend_event,
    )


def _build_backend(config: ForemanConfig, repo_root: Path) -> WorkerBackend:
    primary_name = config.worker.primary
    fallback_name = config.worker.fallback
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, config, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, config, repo_root),
        event_hook=_log_backend_event,
    )


def _prompt_escalation() -> EscalationHandler:
    async def _handler(request: EscalationRequest) -> EscalationDecision:
        click.echo(
            f"\nPhase {request.phase_id} ({request.role}) failed validation "
            f"{request.attempts} times."
        )
        if request.missing:
            click.echo(f"Still missing: {', '.join(request.missing)}")
        answer = await asyncio.to_thread(
            click.prompt,
            "Retry, skip, or abort?",
            type=click.Choice(ESCALATION_CHOICES),
            default=EscalationDecision.ABORT.value,
        )
        return EscalationDecision(answer)

    return _handler


def _build_runner(runtime: Runtime, on_escalation: str | None) -> PipelineRunner:
    config = runtime.config
    policy = on_escalation or config.escalation.default
    handler = _prompt_escalation() if policy == "prompt" else fixed_decision(policy)
    backend = _build_backend(config, runtime.repo_root)
    controller = RetryController(
        max_attempts=config.retry.max_attempts,
        timeout_seconds=config.worker.timeout_seconds or None,
        backoff_seconds=config.retry.backoff_seconds,
    )
    return PipelineRunner(
        registry=runtime.registry,
        workers=build_workers(
            backend, runtime.registry, config.worker, repo_root=runtime.repo_root
        ),
        controller=controller,
        state_dir=runtime.state_dir,
        escalation_handler=handler,
        classifier_config=config.classifier,
    )


def _echo_summary(summary: RunSummary) -> None:
    meta = summary.snapshot
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Pipeline: {summary.pipeline_id}")
    click.echo(f"Status: {summary.status.value}")
    click.echo(f"Phases: {meta.completed_count}/{meta.total_count} ({meta.percentage}%)")
    for item in summary.escalations:
        click.echo(f"Escalated {item['phaseId']}: {item['decision']}")
    if summary.status.value == "aborted":
        click.echo(f"Continue with: foreman resume {summary.run_id}")


def _load_store(runtime: Runtime, run_id: str) -> ProgressStore:
    try:
        return ProgressStore.load(runtime.state_dir, run_id)
    except ForemanError as exc:
        raise click.ClickException(
            f"{exc}\nList runs with `foreman status --all` or start one with `foreman run`."
        ) from exc


def _render_document(document: dict[str, Any]) -> list[str]:
    meta = document.get("meta", {})
    lines = [
        f"Run {document['runId']} ({document['pipelineId']}): {document.get('status')}",
        (
            f"Progress: {meta.get('completedCount', 0)}/{meta.get('totalCount', 0)} "
            f"({meta.get('percentage', 0)}%)"
        ),
        (
            f"Minutes: {meta.get('actualMinutesTotal', 0)} spent, "
            f"{meta.get('remainingMinutesEstimate', 0)} remaining"
        ),
    ]
    efficiency = meta.get("efficiencyPercent")
    if efficiency is not None:
        lines.append(f"Efficiency: {efficiency}%")
    if document.get("currentPhaseId"):
        lines.append(f"Current phase: {document['currentPhaseId']}")
    for phase_id, record in document.get("phases", {}).items():
        lines.append(f"  {phase_id:<24} {record.get('status')}")
    if document.get("readyToArchive"):
        lines.append("Ready to archive.")
    return lines


@click.group()
@click.version_option(__version__, prog_name="foreman")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Foreman pipeline orchestrator."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--primary", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def init_command(primary: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if primary:
        config.worker.primary = primary  # type: ignore[assignment]
        if config.worker.fallback == primary:
            config.worker.fallback = "codex" if primary == "claude" else "claude"
    save_config(config_path, config)
    state_dir = config.state_directory(repo_root)
    state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized foreman in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Worker: {config.worker.primary} (fallback {config.worker.fallback})")
    click.echo(f"State directory: {state_dir}")


@cli.command("run")
@click.argument("pipeline_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--run-id", default=None)
@click.option(
    "--on-escalation",
    type=click.Choice(ESCALATION_POLICIES),
    default=None,
    help="Override [escalation].default from the config file.",
)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def run_command(
    pipeline_path: Path, run_id: str | None, on_escalation: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    try:
        pipeline = load_pipeline(pipeline_path, runtime.registry)
        runner = _build_runner(runtime, on_escalation)
        summary = asyncio.run(runner.run(pipeline, run_id=run_id))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("resume")
@click.argument("run_id")
@click.option(
    "--on-escalation",
    type=click.Choice(ESCALATION_POLICIES),
    default=None,
)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def resume_command(run_id: str, on_escalation: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _load_store(runtime, run_id)
    try:
        runner = _build_runner(runtime, on_escalation)
        summary = asyncio.run(runner.resume(run_id))
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("status")
@click.argument("run_id", required=False)
@click.option("--all", "list_all", is_flag=True, default=False, help="List known run ids.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def status_command(run_id: str | None, list_all: bool, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if list_all or run_id is None:
        runs = ProgressStore.list_runs(runtime.state_dir)
        if as_json:
            click.echo(json.dumps(runs, ensure_ascii=False, indent=2))
            return
        if not runs:
            click.echo("No runs found.")
        for name in runs:
            click.echo(name)
        return

    store = _load_store(runtime, run_id)
    document = store.document()
    if as_json:
        payload = {
            "runId": document["runId"],
            "pipelineId": document["pipelineId"],
            "status": document.get("status"),
            "currentPhaseId": document.get("currentPhaseId"),
            "readyToArchive": document.get("readyToArchive", False),
            "meta": store.snapshot().to_dict(),
            "phases": {key: value["status"] for key, value in document["phases"].items()},
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    for line in _render_document(document):
        click.echo(line)


@cli.command("view")
@click.argument("run_id")
@click.option("--json/--text", "as_json", default=True, show_default=True)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def view_command(run_id: str, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    document = _load_store(runtime, run_id).document()
    if as_json:
        click.echo(json.dumps(document, ensure_ascii=False, indent=2))
        return
    for line in _render_document(document):
        click.echo(line)
    for event in document.get("history", []):
        phase = f" {event['phaseId']}" if event.get("phaseId") else ""
        detail = f" - {event['detail']}" if event.get("detail") else ""
        click.echo(f"{event['timestamp']} {event['eventType']}{phase}{detail}")


@cli.command("pause")
@click.argument("run_id")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def pause_command(run_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    store = _load_store(runtime, run_id)
    if store.ready_to_archive:
        raise click.ClickException(f"Run {run_id} already finished; nothing to pause.")
    store.request_abort()
    click.echo(f"Pause requested for {run_id}; it stops after the current phase.")


@cli.command("classify")
@click.argument("pipeline_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def classify_command(pipeline_path: Path, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        pipeline = load_pipeline(pipeline_path, runtime.registry)
    except ForemanError as exc:
        raise click.ClickException(str(exc)) from exc
    results = {
        phase.id: classify(phase, runtime.registry, runtime.config.classifier)
        for phase in pipeline
    }
    if as_json:
        payload = {phase_id: result.to_dict() for phase_id, result in results.items()}
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    for phase_id, result in results.items():
        click.echo(
            f"{phase_id:<24} score={result.complexity_score} "
            f"risk={result.risk_level.value:<6} mode={result.workflow_mode.value}"
        )


if __name__ == "__main__":
    cli()
