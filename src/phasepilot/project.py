from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from phasepilot.roadmap import RoadmapEntry, read_roadmap

PLANNING_DIR = ".planning"
ROADMAP_FILE = "ROADMAP.md"
PHASES_DIR = "phases"
LOGS_DIR = "logs"

PHASE_DIR_PATTERN = re.compile(r"^(?P<number>\d+)-(?P<slug>.+)$")


class ProjectNotFoundError(RuntimeError):
    """Raised when no directory up the tree carries the roadmap marker."""


def find_project_root(start: Path) -> Path:
    current = start.resolve()
    for candidate in (current, *current.parents):
        if (candidate / PLANNING_DIR / ROADMAP_FILE).is_file():
            return candidate
    raise ProjectNotFoundError(
        f"No {PLANNING_DIR}/{ROADMAP_FILE} found in {current} or any parent directory."
    )


def phase_dir_name(number: int, slug: str) -> str:
    return f"{number:02d}-{slug}"


@dataclass(frozen=True, slots=True)
class Project:
    root: Path

    @property
    def planning_dir(self) -> Path:
        return self.root / PLANNING_DIR

    @property
    def roadmap_path(self) -> Path:
        return self.planning_dir / ROADMAP_FILE

    @property
    def phases_dir(self) -> Path:
        return self.planning_dir / PHASES_DIR

    @property
    def logs_dir(self) -> Path:
        return self.planning_dir / LOGS_DIR

    def roadmap(self) -> list[RoadmapEntry]:
        return read_roadmap(self.roadmap_path)

    def phase_directories(self) -> dict[int, Path]:
        if not self.phases_dir.is_dir():
            return {}
        found: dict[int, Path] = {}
        for child in sorted(self.phases_dir.iterdir()):
            if not child.is_dir():
                continue
            match = PHASE_DIR_PATTERN.match(child.name)
            if match:
                found.setdefault(int(match.group("number")), child)
        return found

    def phase_dir(self, number: int) -> Path | None:
        return self.phase_directories().get(number)

    def known_phases(self) -> list[int]:
        numbers = {entry.number for entry in self.roadmap()}
        numbers.update(self.phase_directories())
        return sorted(numbers)

    def resolve(self, relative: str) -> Path:
        path = Path(relative)
        if not path.is_absolute():
            path = self.root / path
        return path
