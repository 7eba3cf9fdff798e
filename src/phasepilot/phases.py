from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from phasepilot.project import PHASE_DIR_PATTERN, Project

PLAN_SUFFIX = "-PLAN.md"
SUMMARY_SUFFIX = "-SUMMARY.md"
RESEARCH_SUFFIX = "-RESEARCH.md"


class PhaseStatus(str, Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    RESEARCHED = "researched"
    PLANNED = "planned"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = list(PhaseStatus)
_NEEDS_RESEARCH = {PhaseStatus.UNKNOWN, PhaseStatus.PENDING}
_NEEDS_PLAN = {PhaseStatus.UNKNOWN, PhaseStatus.PENDING, PhaseStatus.RESEARCHED}


class Step(str, Enum):
    RESEARCH = "research"
    PLAN = "plan"


@dataclass(frozen=True, slots=True)
class PhaseState:
    number: int
    status: PhaseStatus
    slug: str = ""
    plan_count: int = 0
    summary_count: int = 0
    directory: Path | None = None

    def to_dict(self) -> dict:
        return {
            "phase": self.number,
            "slug": self.slug,
            "status": self.status.value,
            "plans": self.plan_count,
            "summaries": self.summary_count,
            "directory": str(self.directory) if self.directory else None,
        }


def _count(directory: Path, suffix: str) -> int:
    return sum(
        1 for child in directory.iterdir() if child.is_file() and child.name.endswith(suffix)
    )


def inspect_phase(project: Project, number: int) -> PhaseState:
    """Derive a phase's state from its directory contents.

    Nothing is cached: the result only changes between calls when the agent
    wrote files in the meantime.
    """
    directory = project.phase_dir(number)
    if directory is None:
        return PhaseState(number=number, status=PhaseStatus.UNKNOWN)

    match = PHASE_DIR_PATTERN.match(directory.name)
    slug = match.group("slug") if match else directory.name
    plan_count = _count(directory, PLAN_SUFFIX)
    summary_count = _count(directory, SUMMARY_SUFFIX)

    if plan_count == 0:
        if _count(directory, RESEARCH_SUFFIX) > 0:
            status = PhaseStatus.RESEARCHED
        else:
            status = PhaseStatus.PENDING
    elif summary_count >= plan_count:
        status = PhaseStatus.COMPLETE
    else:
        status = PhaseStatus.PLANNED

    return PhaseState(
        number=number,
        status=status,
        slug=slug,
        plan_count=plan_count,
        summary_count=summary_count,
        directory=directory,
    )


def classify(project: Project, number: int) -> PhaseStatus:
    return inspect_phase(project, number).status


def build_steps(
    status: PhaseStatus, *, skip_research: bool = False, skip_planning: bool = False
) -> list[Step]:
    # A roadmap phase without a directory yet is prepared like a pending one.
    steps: list[Step] = []
    if not skip_research and status in _NEEDS_RESEARCH:
        steps.append(Step.RESEARCH)
    if not skip_planning and status in _NEEDS_PLAN:
        steps.append(Step.PLAN)
    return steps


def incomplete_phases(project: Project, numbers: Iterable[int] | None = None) -> list[int]:
    """Roadmap phases (optionally restricted to ``numbers``) not yet complete."""
    roadmap_numbers = {entry.number for entry in project.roadmap()}
    if numbers is not None:
        roadmap_numbers &= set(numbers)
    return [
        number
        for number in sorted(roadmap_numbers)
        if classify(project, number) != PhaseStatus.COMPLETE
    ]


def resolve_targets(project: Project, start: int = 0, end: int = 0) -> list[int]:
    known = project.known_phases()
    if not known:
        return []
    if start <= 0:
        start = next(
            (number for number in known if classify(project, number) != PhaseStatus.COMPLETE),
            known[-1] + 1,
        )
    if end <= 0:
        end = known[-1]
    return [number for number in known if start <= number <= end]
