from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from phasepilot import __version__
from phasepilot.backends import build_backend
from phasepilot.config import CONFIG_FILENAME, PilotConfig, load_config, save_config
from phasepilot.improvement import ImprovementController
from phasepilot.phases import PhaseStatus, inspect_phase, resolve_targets
from phasepilot.project import Project, ProjectNotFoundError, find_project_root
from phasepilot.report import RunStats, format_summary
from phasepilot.scheduler import ExecutionDriver, PreparationScheduler
from phasepilot.watchdog import EventHook, Watchdog

EVENT_JOURNAL = "events.jsonl"
QUIET_EVENTS = {"agent_progress"}


@dataclass(slots=True)
class Runtime:
    project: Project
    config: PilotConfig
    watchdog: Watchdog
    preparer: PreparationScheduler
    driver: ExecutionDriver
    controller: ImprovementController


def _locate_project(project_path: str | None) -> Project:
    start = Path(project_path) if project_path else Path.cwd()
    try:
        return Project(find_project_root(start))
    except ProjectNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc


def _resolve_config_path(project: Project, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project.root / config_path
    return config_path.resolve()


def _describe_event(event: dict[str, Any]) -> str:
    name = event.get("event", "")
    if name == "agent_start":
        return f"[{event['label']}] started: {event['instruction']}"
    if name == "agent_exit":
        return (
            f"[{event['label']}] exited with {event['exit_code']} "
            f"after {event['duration_minutes']:.1f} min"
        )
    if name == "agent_timeout":
        return f"[{event['label']}] killed after {event['duration_minutes']:.1f} min"
    if name == "agent_progress":
        return f"[{event['label']}] {event['bytes']} bytes of output"
    if name == "prep_start":
        return f"Phase {event['phase']}: preparing ({' -> '.join(event['steps'])})"
    if name == "prep_skip":
        return f"Phase {event['phase']}: already prepared"
    if name == "exec_ineligible":
        return f"Phase {event['phase']}: nothing to execute (status: {event['status']})"
    if name == "review_health":
        return (
            f"Review #{event['iteration']}: {event['score']}/100 ({event['grade']}), "
            f"{event['blockers']} blocker(s), {event['high']} high"
        )
    if name == "remediation_created":
        return f"Review #{event['iteration']}: remediation phases {event['phases']}"
    details = ", ".join(f"{key}={value}" for key, value in event.items() if key != "event")
    return f"{name}: {details}" if details else str(name)


def _event_sink(project: Project, *, verbose: bool) -> EventHook:
    journal = project.logs_dir / EVENT_JOURNAL

    def _record(event: dict[str, Any]) -> None:
        payload = dict(event)
        payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
        journal.parent.mkdir(parents=True, exist_ok=True)
        with journal.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        if verbose or event.get("event") not in QUIET_EVENTS:
            click.echo(_describe_event(event))

    return _record


def _build_runtime(
    project: Project,
    config: PilotConfig,
    *,
    skip_research: bool,
    skip_planning: bool,
    event_hook: EventHook | None,
) -> Runtime:
    watchdog = Watchdog(
        build_backend(config.agent.backend, config.agent.binary),
        working_directory=project.root,
        log_dir=project.logs_dir,
        max_turns=config.agent.max_turns,
        skip_permissions=config.agent.skip_permissions,
        poll_interval_seconds=config.agent.poll_interval_seconds,
        event_hook=event_hook,
    )
    preparer = PreparationScheduler(
        project,
        watchdog,
        config.commands,
        skip_research=skip_research,
        skip_planning=skip_planning,
        event_hook=event_hook,
    )
    driver = ExecutionDriver(project, watchdog, config.commands, event_hook=event_hook)
    controller = ImprovementController(
        project,
        watchdog,
        preparer,
        driver,
        commands=config.commands,
        timeouts=config.timeouts,
        settings=config.improvement,
        event_hook=event_hook,
    )
    return Runtime(
        project=project,
        config=config,
        watchdog=watchdog,
        preparer=preparer,
        driver=driver,
        controller=controller,
    )


async def _run_pipeline(runtime: Runtime, targets: list[int], *, prepare_only: bool) -> RunStats:
    config = runtime.config
    stats = RunStats()
    preparation = await runtime.preparer.prepare_all(targets, config.timeouts.prep_minutes)
    stats = stats.with_preparation(preparation)
    if prepare_only:
        return stats
    execution = await runtime.driver.execute_all(targets, config.timeouts.execute_minutes)
    stats = stats.with_execution(execution)
    if config.improvement.enabled:
        stats = await runtime.controller.run(stats)
    return stats


def _echo_dry_run(runtime: Runtime, targets: list[int], *, prepare_only: bool) -> None:
    click.echo(f"Project: {runtime.project.root}")
    steps = runtime.preparer.plan(targets)
    for number in targets:
        state = inspect_phase(runtime.project, number)
        prep = " -> ".join(step.value for step in steps[number]) or "none"
        action = "skip" if state.status == PhaseStatus.COMPLETE else "execute"
        if prepare_only:
            action = "-"
        click.echo(
            f"Phase {number:>3} {state.status.value:<10} plans {state.plan_count}"
            f" summaries {state.summary_count}  prepare: {prep}  then: {action}"
        )
    improvement = runtime.config.improvement
    if improvement.enabled and not prepare_only:
        click.echo(
            f"Continuous improvement: target {improvement.target_score}, "
            f"up to {improvement.max_iterations} iteration(s)"
        )


@click.group()
@click.version_option(__version__, prog_name="phasepilot")
def cli() -> None:
    """Phase orchestration for agent-driven builds."""


@cli.command("init")
@click.option("--project-path", default=None, help="Project root (default: search upwards).")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(project_path: str | None, backend: str | None, config_value: str) -> None:
    project = _locate_project(project_path)
    config_path = _resolve_config_path(project, config_value)
    config = load_config(config_path)
    if backend:
        config.agent.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.agent.backend}")


@cli.command("status")
@click.option("--project-path", default=None, help="Project root (default: search upwards).")
def status_command(project_path: str | None) -> None:
    project = _locate_project(project_path)
    payload = {
        "root": str(project.root),
        "phases": [inspect_phase(project, number).to_dict() for number in project.known_phases()],
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("run")
@click.option("--project-path", default=None, help="Project root (default: search upwards).")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.option("--start-phase", type=int, default=0, show_default=True, help="0 = auto-detect.")
@click.option("--end-phase", type=int, default=0, show_default=True, help="0 = auto-detect.")
@click.option("--max-turns", type=int, default=None)
@click.option("--prep-timeout", "prep_timeout", type=float, default=None, help="Minutes.")
@click.option("--execute-timeout", "execute_timeout", type=float, default=None, help="Minutes.")
@click.option("--skip-research", is_flag=True, default=False)
@click.option("--skip-planning", is_flag=True, default=False)
@click.option("--prepare-only", is_flag=True, default=False)
@click.option("--dry-run", is_flag=True, default=False, help="Print the plan and exit.")
@click.option("--continuous-improvement", is_flag=True, default=False)
@click.option("--target-score", type=click.IntRange(0, 100), default=None)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--review-timeout", "review_timeout", type=float, default=None, help="Minutes.")
@click.option("--stop-on-no-improvement", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
def run_command(
    project_path: str | None,
    config_value: str,
    start_phase: int,
    end_phase: int,
    max_turns: int | None,
    prep_timeout: float | None,
    execute_timeout: float | None,
    skip_research: bool,
    skip_planning: bool,
    prepare_only: bool,
    dry_run: bool,
    continuous_improvement: bool,
    target_score: int | None,
    max_iterations: int | None,
    review_timeout: float | None,
    stop_on_no_improvement: bool,
    verbose: bool,
) -> None:
    project = _locate_project(project_path)
    config = load_config(_resolve_config_path(project, config_value))
    if max_turns is not None:
        config.agent.max_turns = max_turns
    if prep_timeout is not None:
        config.timeouts.prep_minutes = prep_timeout
    if execute_timeout is not None:
        config.timeouts.execute_minutes = execute_timeout
    if review_timeout is not None:
        config.timeouts.review_minutes = review_timeout
    if continuous_improvement:
        config.improvement.enabled = True
    if target_score is not None:
        config.improvement.target_score = target_score
    if max_iterations is not None:
        config.improvement.max_iterations = max_iterations
    if stop_on_no_improvement:
        config.improvement.stop_on_no_improvement = True

    event_hook = None if dry_run else _event_sink(project, verbose=verbose)
    runtime = _build_runtime(
        project,
        config,
        skip_research=skip_research,
        skip_planning=skip_planning,
        event_hook=event_hook,
    )
    targets = resolve_targets(project, start_phase, end_phase)

    if dry_run:
        _echo_dry_run(runtime, targets, prepare_only=prepare_only)
        return
    if not targets and not config.improvement.enabled:
        click.echo("No phases to run.")
        return

    stats = asyncio.run(_run_pipeline(runtime, targets, prepare_only=prepare_only))
    click.echo("")
    for line in format_summary(stats):
        click.echo(line)
