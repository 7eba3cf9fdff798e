from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from phasepilot.scheduler import ExecutionReport, PreparationReport

if TYPE_CHECKING:
    from phasepilot.improvement import ImprovementOutcome


@dataclass(frozen=True, slots=True)
class RunStats:
    """Run-wide counters. Each stage returns a new value instead of mutating this one."""

    prepared: tuple[int, ...] = ()
    already_prepared: tuple[int, ...] = ()
    prep_failures: dict[int, str] = field(default_factory=dict)
    executed: tuple[int, ...] = ()
    skipped: tuple[int, ...] = ()
    exec_failures: dict[int, str] = field(default_factory=dict)
    incomplete: tuple[int, ...] = ()
    improvement: ImprovementOutcome | None = None

    def with_preparation(self, report: PreparationReport) -> RunStats:
        prepared = [number for number, result in report.results.items() if result.success]
        return replace(
            self,
            prepared=self.prepared + tuple(prepared),
            already_prepared=self.already_prepared + tuple(report.already_prepared),
            prep_failures={**self.prep_failures, **report.failures},
        )

    def with_execution(self, report: ExecutionReport) -> RunStats:
        return replace(
            self,
            executed=self.executed + tuple(report.executed),
            skipped=self.skipped + tuple(report.skipped),
            exec_failures={**self.exec_failures, **report.failures},
            incomplete=self.incomplete + tuple(report.incomplete),
        )

    def with_improvement(self, outcome: ImprovementOutcome) -> RunStats:
        return replace(self, improvement=outcome)

    @property
    def failure_count(self) -> int:
        return len(self.prep_failures) + len(self.exec_failures)


def _phase_list(numbers: tuple[int, ...]) -> str:
    return ", ".join(str(number) for number in numbers) if numbers else "none"


def format_summary(stats: RunStats) -> list[str]:
    lines = [
        f"Prepared: {_phase_list(stats.prepared)}",
        f"Already prepared: {_phase_list(stats.already_prepared)}",
        f"Executed: {_phase_list(stats.executed)}",
        f"Skipped (complete): {_phase_list(stats.skipped)}",
    ]
    for number, reason in sorted(stats.prep_failures.items()):
        lines.append(f"Preparation failed for phase {number}: {reason}")
    for number, reason in sorted(stats.exec_failures.items()):
        lines.append(f"Execution failed for phase {number}: {reason}")
    for number in stats.incomplete:
        lines.append(f"Phase {number} ran but summaries are still missing")

    outcome = stats.improvement
    if outcome is not None:
        lines.append(f"Improvement iterations: {len(outcome.history)}")
        for record in outcome.history:
            score = "n/a" if record.score is None else f"{record.score}/100 ({record.grade})"
            created = _phase_list(record.phases_created)
            lines.append(
                f"  #{record.index}: score {score}, created {created}, "
                f"executed {_phase_list(record.phases_executed)}"
            )
        lines.append(f"Stopped: {outcome.describe()}")

    if stats.failure_count:
        lines.append(f"Failures: {stats.failure_count}")
    return lines
