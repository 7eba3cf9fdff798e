from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

ENTRY_PATTERN = re.compile(
    r"^\s*-\s*\[(?P<mark>[ xX])\]\s*\*\*Phase\s+(?P<number>\d+):\s*(?P<slug>[^*]+?)\s*\*\*"
    r"(?:\s*(?:—|–|-{1,2})\s*(?P<description>.*))?\s*$"
)


@dataclass(frozen=True, slots=True)
class RoadmapEntry:
    number: int
    slug: str
    description: str = ""
    done: bool = False

    def render(self) -> str:
        mark = "x" if self.done else " "
        line = f"- [{mark}] **Phase {self.number}: {self.slug}**"
        if self.description:
            line += f" — {self.description}"
        return line


def parse_roadmap(text: str) -> list[RoadmapEntry]:
    """Return roadmap entries in document order, one per phase number."""
    entries: list[RoadmapEntry] = []
    seen: set[int] = set()
    for raw_line in text.splitlines():
        match = ENTRY_PATTERN.match(raw_line)
        if not match:
            continue
        number = int(match.group("number"))
        if number in seen:
            continue
        seen.add(number)
        entries.append(
            RoadmapEntry(
                number=number,
                slug=match.group("slug").strip(),
                description=(match.group("description") or "").strip(),
                done=match.group("mark").lower() == "x",
            )
        )
    return entries


def read_roadmap(path: Path) -> list[RoadmapEntry]:
    if not path.exists():
        return []
    return parse_roadmap(path.read_text(encoding="utf-8"))


def next_phase_number(
    entries: Iterable[RoadmapEntry], directory_numbers: Iterable[int] = ()
) -> int:
    numbers = [entry.number for entry in entries]
    numbers.extend(directory_numbers)
    return max(numbers, default=0) + 1


def append_phase(
    path: Path,
    entry: RoadmapEntry,
    *,
    goal: str = "",
    plan_files: Iterable[str] = (),
) -> None:
    """Append ``entry`` to the roadmap; existing lines are left untouched."""
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    lines = [entry.render()]
    if goal:
        lines.append(f"  - Goal: {goal}")
    plans = list(plan_files)
    if plans:
        lines.append("  - Plans:")
        lines.extend(f"    - [ ] {name}" for name in plans)

    block = "\n".join(lines) + "\n"
    prefix = ""
    if existing and not existing.endswith("\n"):
        prefix = "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(prefix + block)
