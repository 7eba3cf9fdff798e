from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field

from phasepilot.config import CommandsConfig
from phasepilot.phases import PhaseStatus, Step, build_steps, inspect_phase
from phasepilot.project import Project
from phasepilot.watchdog import ChainStep, EventHook, ExecutionResult, Watchdog


@dataclass(slots=True)
class PreparationReport:
    results: dict[int, ExecutionResult] = field(default_factory=dict)
    steps: dict[int, list[Step]] = field(default_factory=dict)
    already_prepared: list[int] = field(default_factory=list)

    @property
    def failures(self) -> dict[int, str]:
        return {
            number: result.reason for number, result in self.results.items() if not result.success
        }


@dataclass(slots=True)
class ExecutionReport:
    results: dict[int, ExecutionResult] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)
    incomplete: list[int] = field(default_factory=list)

    @property
    def executed(self) -> list[int]:
        return [number for number, result in self.results.items() if result.success]


def _instruction(template: str, number: int) -> str:
    return template.format(phase=number)


def _phase_label(number: int, action: str) -> str:
    return f"phase-{number:02d}-{action}"


class PreparationScheduler:
    """Research and plan phases concurrently, one chained pipeline per phase."""

    def __init__(
        self,
        project: Project,
        watchdog: Watchdog,
        commands: CommandsConfig,
        *,
        skip_research: bool = False,
        skip_planning: bool = False,
        event_hook: EventHook | None = None,
    ) -> None:
        self.project = project
        self.watchdog = watchdog
        self.commands = commands
        self.skip_research = skip_research
        self.skip_planning = skip_planning
        self.event_hook = event_hook

    def _emit(self, event: dict) -> None:
        if self.event_hook:
            self.event_hook(event)

    def plan(self, numbers: Iterable[int]) -> dict[int, list[Step]]:
        planned: dict[int, list[Step]] = {}
        for number in sorted(set(numbers)):
            status = inspect_phase(self.project, number).status
            planned[number] = build_steps(
                status, skip_research=self.skip_research, skip_planning=self.skip_planning
            )
        return planned

    def _chain(self, number: int, steps: list[Step]) -> list[ChainStep]:
        templates = {Step.RESEARCH: self.commands.research, Step.PLAN: self.commands.plan}
        return [
            ChainStep(
                label=_phase_label(number, step.value),
                instruction=_instruction(templates[step], number),
            )
            for step in steps
        ]

    async def prepare_all(
        self, numbers: Iterable[int], prep_timeout_minutes: float
    ) -> PreparationReport:
        report = PreparationReport()
        for number, steps in self.plan(numbers).items():
            if steps:
                report.steps[number] = steps
            else:
                report.already_prepared.append(number)
                self._emit({"event": "prep_skip", "phase": number})

        if not report.steps:
            return report

        loop = asyncio.get_running_loop()
        # One deadline for the whole batch; chains still running when it passes are killed.
        deadline = loop.time() + max(0.0, float(prep_timeout_minutes)) * 60.0
        attempted = list(report.steps)
        for number in attempted:
            self._emit(
                {
                    "event": "prep_start",
                    "phase": number,
                    "steps": [step.value for step in report.steps[number]],
                }
            )
        results = await asyncio.gather(
            *(
                self.watchdog.run_chain(
                    self._chain(number, report.steps[number]), deadline=deadline
                )
                for number in attempted
            )
        )
        for number, result in zip(attempted, results):
            report.results[number] = result
            self._emit(
                {
                    "event": "prep_done",
                    "phase": number,
                    "success": result.success,
                    "timed_out": result.timed_out,
                    "reason": result.reason,
                }
            )
        return report


class ExecutionDriver:
    """Execute planned phases strictly one at a time, in ascending order."""

    def __init__(
        self,
        project: Project,
        watchdog: Watchdog,
        commands: CommandsConfig,
        *,
        event_hook: EventHook | None = None,
    ) -> None:
        self.project = project
        self.watchdog = watchdog
        self.commands = commands
        self.event_hook = event_hook

    def _emit(self, event: dict) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def execute_all(
        self, numbers: Iterable[int], execute_timeout_minutes: float
    ) -> ExecutionReport:
        report = ExecutionReport()
        for number in sorted(set(numbers)):
            state = inspect_phase(self.project, number)
            if state.status == PhaseStatus.COMPLETE:
                report.skipped.append(number)
                continue
            if state.status != PhaseStatus.PLANNED:
                report.failures[number] = f"no plans to execute (status: {state.status.value})"
                self._emit(
                    {"event": "exec_ineligible", "phase": number, "status": state.status.value}
                )
                continue

            self._emit({"event": "exec_start", "phase": number, "plans": state.plan_count})
            result = await self.watchdog.run(
                _instruction(self.commands.execute, number),
                execute_timeout_minutes,
                label=_phase_label(number, "execute"),
            )
            report.results[number] = result
            if not result.success:
                report.failures[number] = result.reason
            else:
                after = inspect_phase(self.project, number)
                if after.status != PhaseStatus.COMPLETE:
                    report.incomplete.append(number)
            self._emit(
                {
                    "event": "exec_done",
                    "phase": number,
                    "success": result.success,
                    "reason": result.reason,
                }
            )
        return report
