from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from phasepilot.config import CommandsConfig, ImprovementConfig, TimeoutsConfig
from phasepilot.phases import PhaseStatus, classify, incomplete_phases
from phasepilot.project import Project, phase_dir_name
from phasepilot.report import RunStats
from phasepilot.review import Finding, HealthSnapshot, extract_findings, parse_health
from phasepilot.roadmap import RoadmapEntry, append_phase, next_phase_number
from phasepilot.scheduler import ExecutionDriver, PreparationScheduler
from phasepilot.watchdog import EventHook, Watchdog

REMEDIATION_TIERS = (("BLOCKER", "blocker"), ("HIGH", "high"))


class StopReason(str, Enum):
    TARGET_REACHED = "target_reached"
    REVIEW_TIMEOUT = "review_timeout"
    REVIEW_FAILED = "review_failed"
    UNPARSABLE_SCORE = "unparsable_score"
    MISSING_FINDINGS = "missing_findings"
    NO_CRITICAL_FINDINGS = "no_critical_findings"
    NO_NEW_PHASES = "no_new_phases"
    STAGNATION = "stagnation"
    MAX_ITERATIONS = "max_iterations"


STOP_MESSAGES = {
    StopReason.TARGET_REACHED: "target score reached",
    StopReason.REVIEW_TIMEOUT: "code review timed out",
    StopReason.REVIEW_FAILED: "code review failed",
    StopReason.UNPARSABLE_SCORE: "could not parse a health score from the review",
    StopReason.MISSING_FINDINGS: "findings document not found",
    StopReason.NO_CRITICAL_FINDINGS: "no BLOCKER or HIGH findings to remediate",
    StopReason.NO_NEW_PHASES: "no new phases created",
    StopReason.STAGNATION: "score did not improve",
    StopReason.MAX_ITERATIONS: "maximum iterations reached",
}


@dataclass(frozen=True, slots=True)
class IterationRecord:
    index: int
    score: int | None = None
    grade: str | None = None
    phases_created: tuple[int, ...] = ()
    phases_executed: tuple[int, ...] = ()
    stop_reason: StopReason | None = None
    detail: str = ""


@dataclass(frozen=True, slots=True)
class ImprovementOutcome:
    history: tuple[IterationRecord, ...]
    stop_reason: StopReason
    detail: str = ""
    final_health: HealthSnapshot | None = None

    @property
    def succeeded(self) -> bool:
        return self.stop_reason == StopReason.TARGET_REACHED

    def describe(self) -> str:
        message = STOP_MESSAGES[self.stop_reason]
        return f"{message} ({self.detail})" if self.detail else message


def render_remediation_plan(number: int, slug: str, severity: str, items: Sequence[Finding]) -> str:
    lines = [
        "---",
        f"phase: {phase_dir_name(number, slug)}",
        "plan: 01",
        "type: remediation",
        "---",
        "",
        f"# Phase {number} Plan 01: Resolve {severity} review findings",
        "",
        "## Tasks",
        "",
    ]
    for position, item in enumerate(items, start=1):
        lines.append(f"- [ ] Task {position}: {item.title}")
    return "\n".join(lines) + "\n"


def _plan_matches(
    project: Project, number: int, slug: str, severity: str, items: Sequence[Finding]
) -> bool:
    if classify(project, number) == PhaseStatus.COMPLETE:
        return False
    directory = project.phase_dir(number)
    if directory is None:
        return False
    plan = directory / f"{number:02d}-01-PLAN.md"
    if not plan.is_file():
        return False
    expected = render_remediation_plan(number, slug, severity, items)
    return plan.read_text(encoding="utf-8") == expected


def synthesize_remediation(
    project: Project, findings: Sequence[Finding], iteration: int
) -> list[int]:
    """Create one remediation phase per severity tier present in ``findings``.

    An unfinished phase with the same slug whose plan lists the same items is
    reused rather than appended twice.
    """
    numbers: list[int] = []
    for severity, tier in REMEDIATION_TIERS:
        items = [finding for finding in findings if finding.severity == severity]
        if not items:
            continue
        slug = f"remediate-{tier}-findings-{iteration}"
        entries = project.roadmap()
        reusable = next(
            (
                entry
                for entry in entries
                if entry.slug == slug
                and _plan_matches(project, entry.number, slug, severity, items)
            ),
            None,
        )
        if reusable is not None:
            numbers.append(reusable.number)
            continue

        number = next_phase_number(entries, project.phase_directories())
        plan_name = f"{number:02d}-01-PLAN.md"
        directory = project.phases_dir / phase_dir_name(number, slug)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / plan_name).write_text(
            render_remediation_plan(number, slug, severity, items), encoding="utf-8"
        )
        append_phase(
            project.roadmap_path,
            RoadmapEntry(
                number=number,
                slug=slug,
                description=(
                    f"Fix {len(items)} {severity} finding(s) from review iteration {iteration}"
                ),
            ),
            goal=f"Resolve every {severity} item raised by the code review",
            plan_files=[plan_name],
        )
        numbers.append(number)
    return numbers


class ImprovementController:
    """Review, remediate and re-review until a stop condition fires."""

    def __init__(
        self,
        project: Project,
        watchdog: Watchdog,
        preparer: PreparationScheduler,
        driver: ExecutionDriver,
        *,
        commands: CommandsConfig,
        timeouts: TimeoutsConfig,
        settings: ImprovementConfig,
        event_hook: EventHook | None = None,
    ) -> None:
        self.project = project
        self.watchdog = watchdog
        self.preparer = preparer
        self.driver = driver
        self.commands = commands
        self.timeouts = timeouts
        self.settings = settings
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _read(self, relative: str) -> str | None:
        path = self.project.resolve(relative)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    async def run(self, stats: RunStats | None = None) -> RunStats:
        stats = stats or RunStats()
        max_iterations = max(0, int(self.settings.max_iterations))
        history: list[IterationRecord] = []
        previous: HealthSnapshot | None = None
        final: HealthSnapshot | None = None
        stop_reason: StopReason | None = None
        detail = ""

        for index in range(1, max_iterations + 1):
            self._emit({"event": "improvement_iteration", "iteration": index})
            record, health, stats = await self._iterate(index, previous, stats)
            history.append(record)
            if health is not None:
                final = health
            if record.stop_reason is not None:
                stop_reason = record.stop_reason
                detail = record.detail
                break
            previous = health

        if stop_reason is None:
            stop_reason = StopReason.MAX_ITERATIONS
            detail = f"{max_iterations} iteration(s)"

        outcome = ImprovementOutcome(
            history=tuple(history),
            stop_reason=stop_reason,
            detail=detail,
            final_health=final,
        )
        self._emit(
            {"event": "improvement_stop", "reason": stop_reason.value, "detail": detail}
        )
        return stats.with_improvement(outcome)

    async def _iterate(
        self, index: int, previous: HealthSnapshot | None, stats: RunStats
    ) -> tuple[IterationRecord, HealthSnapshot | None, RunStats]:
        review = await self.watchdog.run(
            self.commands.review,
            self.timeouts.review_minutes,
            label=f"review-{index:02d}",
        )
        if review.timed_out:
            return (
                IterationRecord(index, stop_reason=StopReason.REVIEW_TIMEOUT, detail=review.reason),
                None,
                stats,
            )
        if not review.success:
            return (
                IterationRecord(index, stop_reason=StopReason.REVIEW_FAILED, detail=review.reason),
                None,
                stats,
            )

        if self.settings.settle_seconds > 0:
            await asyncio.sleep(self.settings.settle_seconds)

        health = parse_health(review.output) or parse_health(
            self._read(self.settings.review_file)
        )
        if health is None:
            return IterationRecord(index, stop_reason=StopReason.UNPARSABLE_SCORE), None, stats
        self._emit({"event": "review_health", "iteration": index, **health.to_dict()})

        def _stop(reason: StopReason, detail: str = "", created: Sequence[int] = ()) -> tuple:
            record = IterationRecord(
                index,
                score=health.score,
                grade=health.grade,
                phases_created=tuple(created),
                stop_reason=reason,
                detail=detail,
            )
            return record, health, stats

        if health.score >= self.settings.target_score and health.blockers == 0:
            return _stop(
                StopReason.TARGET_REACHED, f"{health.score}/100 >= {self.settings.target_score}"
            )
        if (
            self.settings.stop_on_no_improvement
            and previous is not None
            and health.score <= previous.score
        ):
            return _stop(StopReason.STAGNATION, f"{health.score}/100 after {previous.score}/100")

        findings_text = self._read(self.settings.findings_file)
        if findings_text is None:
            return _stop(StopReason.MISSING_FINDINGS, self.settings.findings_file)
        findings = extract_findings(findings_text)
        if not findings:
            return _stop(StopReason.NO_CRITICAL_FINDINGS)

        created = synthesize_remediation(self.project, findings, index)
        self._emit({"event": "remediation_created", "iteration": index, "phases": created})
        pending = incomplete_phases(self.project, created)
        if not pending:
            return _stop(StopReason.NO_NEW_PHASES, created=created)

        preparation = await self.preparer.prepare_all(pending, self.timeouts.prep_minutes)
        execution = await self.driver.execute_all(pending, self.timeouts.execute_minutes)
        stats = stats.with_preparation(preparation).with_execution(execution)
        record = IterationRecord(
            index,
            score=health.score,
            grade=health.grade,
            phases_created=tuple(created),
            phases_executed=tuple(execution.executed),
        )
        return record, health, stats
