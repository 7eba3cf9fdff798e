import json
import sys
from pathlib import Path

from click.testing import CliRunner

from phasepilot.backends.base import AgentBackend
from phasepilot.cli import cli
from phasepilot.config import PilotConfig, save_config
from phasepilot.phases import PhaseStatus, classify
from phasepilot.project import Project

ROADMAP = """# Roadmap

- [x] **Phase 1: core** — Core
- [ ] **Phase 2: api** — API
- [ ] **Phase 3: ui** — UI
"""

# Snippets run by the fake agent; {phase} is filled in by the scheduler.
WRITE_ARTIFACT = (
    "import pathlib; "
    "d = [p for p in pathlib.Path('.planning/phases').iterdir() "
    "if p.name.startswith('%02d-' % {phase})][0]; "
    "(d / ('%02d-01-{suffix}.md' % {phase})).write_text('ok')"
)


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


def _make_project(root: Path) -> Project:
    planning = root / ".planning"
    planning.mkdir(parents=True)
    (planning / "ROADMAP.md").write_text(ROADMAP, encoding="utf-8")
    for number, slug in ((1, "core"), (2, "api"), (3, "ui")):
        (planning / "phases" / f"{number:02d}-{slug}").mkdir(parents=True)
    core = planning / "phases" / "01-core"
    (core / "01-01-PLAN.md").write_text("plan", encoding="utf-8")
    (core / "01-01-SUMMARY.md").write_text("done", encoding="utf-8")
    return Project(root)


def _write_fake_agent_config(project: Project) -> None:
    config = PilotConfig.default()
    config.agent.poll_interval_seconds = 0.05
    config.commands.research = WRITE_ARTIFACT.replace("{suffix}", "RESEARCH")
    config.commands.plan = WRITE_ARTIFACT.replace("{suffix}", "PLAN")
    config.commands.execute = WRITE_ARTIFACT.replace("{suffix}", "SUMMARY")
    save_config(project.root / "phasepilot.toml", config)


def test_run_fails_outside_a_project(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "--project-path", str(tmp_path)])

    assert result.exit_code != 0
    assert "ROADMAP.md" in result.output


def test_dry_run_prints_plan_without_side_effects(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "--project-path", str(tmp_path), "--dry-run"])

    assert result.exit_code == 0
    assert "prepare: research -> plan" in result.output
    assert "Phase   1" not in result.output
    assert "Phase   2" in result.output
    assert not project.logs_dir.exists()


def test_status_lists_phase_states(tmp_path: Path) -> None:
    _make_project(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["status", "--project-path", str(tmp_path)])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    statuses = {phase["phase"]: phase["status"] for phase in payload["phases"]}
    assert statuses == {1: "complete", 2: "pending", 3: "pending"}


def test_init_writes_config_file(tmp_path: Path) -> None:
    project = _make_project(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["init", "--project-path", str(tmp_path), "--backend", "codex"])

    assert result.exit_code == 0
    assert 'backend = "codex"' in (project.root / "phasepilot.toml").read_text(encoding="utf-8")


def test_full_run_prepares_and_executes_every_phase(tmp_path: Path, monkeypatch) -> None:
    project = _make_project(tmp_path)
    _write_fake_agent_config(project)
    monkeypatch.setattr("phasepilot.cli.build_backend", lambda name, binary: PythonBackend())
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "--project-path", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "Prepared: 2, 3" in result.output
    assert "Executed: 2, 3" in result.output
    assert classify(project, 2) == PhaseStatus.COMPLETE
    assert classify(project, 3) == PhaseStatus.COMPLETE
    journal = project.logs_dir / "events.jsonl"
    events = [json.loads(line) for line in journal.read_text(encoding="utf-8").splitlines()]
    assert any(event["event"] == "exec_done" for event in events)
    assert all("at" in event for event in events)


def test_prepare_only_skips_execution(tmp_path: Path, monkeypatch) -> None:
    project = _make_project(tmp_path)
    _write_fake_agent_config(project)
    monkeypatch.setattr("phasepilot.cli.build_backend", lambda name, binary: PythonBackend())
    runner = CliRunner()

    result = runner.invoke(
        cli, ["run", "--project-path", str(tmp_path), "--prepare-only", "--skip-research"]
    )

    assert result.exit_code == 0, result.output
    assert classify(project, 2) == PhaseStatus.PLANNED
    assert "Executed: none" in result.output


def test_agent_failures_do_not_change_exit_status(tmp_path: Path, monkeypatch) -> None:
    project = _make_project(tmp_path)
    config = PilotConfig.default()
    config.agent.poll_interval_seconds = 0.05
    config.commands.research = "import sys; sys.exit(4)"
    save_config(project.root / "phasepilot.toml", config)
    monkeypatch.setattr("phasepilot.cli.build_backend", lambda name, binary: PythonBackend())
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "--project-path", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "Preparation failed for phase 2: exit code 4" in result.output
    assert "Execution failed for phase 3: no plans to execute (status: pending)" in result.output
