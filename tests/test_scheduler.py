import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path

from phasepilot.backends.base import AgentBackend
from phasepilot.config import CommandsConfig
from phasepilot.phases import PhaseStatus, Step, classify
from phasepilot.project import Project
from phasepilot.scheduler import ExecutionDriver, PreparationScheduler
from phasepilot.watchdog import ChainStep, ExecutionResult, Watchdog

ROADMAP = "\n".join(f"- [ ] **Phase {number}: p{number}** — work" for number in range(1, 6))


class PythonBackend(AgentBackend):
    name = "python"

    def build_command(
        self,
        instruction: str,
        *,
        max_turns: int | None = None,
        skip_permissions: bool = True,
    ) -> list[str]:
        _ = max_turns, skip_permissions
        return [sys.executable, "-c", instruction]


class RecordingWatchdog:
    """Stands in for Watchdog: records invocations and writes the artifacts an agent would."""

    def __init__(self, project: Project, failing: Sequence[int] = ()) -> None:
        self.project = project
        self.failing = set(failing)
        self.chains: list[list[str]] = []
        self.runs: list[str] = []

    async def run_chain(
        self, steps: Sequence[ChainStep], *, deadline: float, max_turns: int | None = None
    ) -> ExecutionResult:
        _ = deadline, max_turns
        self.chains.append([step.label for step in steps])
        return ExecutionResult(success=True, exit_code=0)

    async def run(
        self,
        instruction: str,
        timeout_minutes: float,
        *,
        label: str,
        max_turns: int | None = None,
    ) -> ExecutionResult:
        _ = timeout_minutes, max_turns
        self.runs.append(label)
        number = int(instruction.rsplit(" ", 1)[1])
        if number in self.failing:
            return ExecutionResult(success=False, exit_code=2, output="agent crashed")
        directory = self.project.phase_dir(number)
        assert directory is not None
        (directory / f"{number:02d}-01-SUMMARY.md").write_text("done", encoding="utf-8")
        return ExecutionResult(success=True, exit_code=0)


def _make_project(root: Path) -> Project:
    planning = root / ".planning"
    planning.mkdir(parents=True)
    (planning / "ROADMAP.md").write_text(ROADMAP, encoding="utf-8")
    return Project(root)


def _phase_dir(project: Project, number: int, *names: str) -> Path:
    directory = project.phases_dir / f"{number:02d}-p{number}"
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_text("x", encoding="utf-8")
    return directory


def _seed_mixed_phases(project: Project) -> None:
    _phase_dir(project, 1, "01-01-PLAN.md", "01-01-SUMMARY.md")
    _phase_dir(project, 2)
    _phase_dir(project, 3, "03-RESEARCH.md")
    _phase_dir(project, 4, "04-01-PLAN.md")
    _phase_dir(project, 5, "05-01-PLAN.md")


def test_prepare_all_builds_minimal_chains(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    _seed_mixed_phases(project)
    watchdog = RecordingWatchdog(project)
    scheduler = PreparationScheduler(project, watchdog, CommandsConfig())

    report = asyncio.run(scheduler.prepare_all([1, 2, 3, 4, 5], 10))

    assert sorted(report.results) == [2, 3]
    assert report.steps[2] == [Step.RESEARCH, Step.PLAN]
    assert report.steps[3] == [Step.PLAN]
    assert sorted(report.already_prepared) == [1, 4, 5]
    assert ["phase-02-research", "phase-02-plan"] in watchdog.chains
    assert ["phase-03-plan"] in watchdog.chains
    for chain in watchdog.chains:
        if "phase-02-plan" in chain:
            assert chain.index("phase-02-research") < chain.index("phase-02-plan")


def test_prepare_all_respects_skip_research(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    _phase_dir(project, 2)
    watchdog = RecordingWatchdog(project)
    scheduler = PreparationScheduler(project, watchdog, CommandsConfig(), skip_research=True)

    report = asyncio.run(scheduler.prepare_all([2], 10))

    assert report.steps == {2: [Step.PLAN]}
    assert watchdog.chains == [["phase-02-plan"]]


def test_shared_deadline_kills_slow_chains_but_keeps_fast_results(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    _phase_dir(project, 1)
    _phase_dir(project, 2)
    watchdog = Watchdog(
        PythonBackend(),
        working_directory=tmp_path,
        log_dir=project.logs_dir,
        poll_interval_seconds=0.05,
    )
    commands = CommandsConfig(plan="import time; time.sleep(30 if {phase} == 2 else 0)")
    scheduler = PreparationScheduler(project, watchdog, commands, skip_research=True)

    report = asyncio.run(scheduler.prepare_all([1, 2], 0.03))

    assert report.results[1].success is True
    assert report.results[2].timed_out is True
    assert report.failures == {2: report.results[2].reason}


def test_prepare_all_runs_chains_concurrently(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    for number in range(1, 5):
        _phase_dir(project, number)
    watchdog = Watchdog(
        PythonBackend(),
        working_directory=tmp_path,
        log_dir=project.logs_dir,
        poll_interval_seconds=0.05,
    )
    commands = CommandsConfig(plan="import time; time.sleep(1.0)")
    scheduler = PreparationScheduler(project, watchdog, commands, skip_research=True)

    # Four one-second chains under a three-second batch deadline.
    report = asyncio.run(scheduler.prepare_all([1, 2, 3, 4], 0.05))

    assert sorted(report.results) == [1, 2, 3, 4]
    assert all(result.success for result in report.results.values())
    assert report.failures == {}


def test_execute_all_runs_planned_phases_in_order_and_survives_failures(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    _seed_mixed_phases(project)
    _phase_dir(project, 3, "03-01-PLAN.md")
    watchdog = RecordingWatchdog(project, failing=[4])
    driver = ExecutionDriver(project, watchdog, CommandsConfig())

    report = asyncio.run(driver.execute_all([5, 4, 3, 2, 1], 60))

    assert watchdog.runs == ["phase-03-execute", "phase-04-execute", "phase-05-execute"]
    assert report.skipped == [1]
    assert report.executed == [3, 5]
    assert report.failures[4] == "exit code 2"
    assert report.failures[2].startswith("no plans to execute")
    assert classify(project, 5) == PhaseStatus.COMPLETE


def test_execute_all_never_invokes_agent_for_unplanned_phases(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    _phase_dir(project, 2)
    _phase_dir(project, 3, "03-RESEARCH.md")
    watchdog = RecordingWatchdog(project)
    driver = ExecutionDriver(project, watchdog, CommandsConfig())

    report = asyncio.run(driver.execute_all([2, 3], 60))

    assert watchdog.runs == []
    assert sorted(report.failures) == [2, 3]


def test_execute_all_flags_phases_left_incomplete(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    _phase_dir(project, 1, "01-01-PLAN.md", "01-02-PLAN.md")
    watchdog = RecordingWatchdog(project)
    driver = ExecutionDriver(project, watchdog, CommandsConfig())

    report = asyncio.run(driver.execute_all([1], 60))

    assert report.executed == [1]
    assert report.incomplete == [1]
