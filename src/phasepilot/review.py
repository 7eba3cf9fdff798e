"""Extraction of health scores and findings from review documents.

Each field is read by an ordered tuple of named rules. The first rule that
matches wins, so the order below is part of the parser's behaviour:

Score (``SCORE_RULES``):
    1. ``health_with_grade``       ``Health: 85/100 (Grade: B)``
    2. ``health_with_grade_line``  ``Health: 85/100`` plus an optional ``Grade: B`` line
    3. ``bare_score``              ``85/100`` anywhere in the text

Severity counts (``SEVERITY_RULES``), tried per label:
    1. ``label_pipe_count``        ``BLOCKER | 2``
    2. ``table_row``               ``| Blocker | 2 |``

Nothing here raises on malformed input.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

SEVERITY_LABELS = ("blocker", "high", "medium", "low")
GRADE_THRESHOLDS = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))

ScoreMatch = tuple[int, str | None]


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    score: int
    grade: str
    blockers: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.blockers + self.high + self.medium + self.low

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "grade": self.grade,
            "blockers": self.blockers,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class Finding:
    severity: str
    title: str


@dataclass(frozen=True, slots=True)
class ScoreRule:
    name: str
    extract: Callable[[str], ScoreMatch | None]


@dataclass(frozen=True, slots=True)
class SeverityRule:
    name: str
    pattern: str

    def count(self, text: str, label: str) -> int | None:
        compiled = re.compile(self.pattern.format(label=re.escape(label)), re.IGNORECASE)
        match = compiled.search(text)
        if not match:
            return None
        return int(match.group(1))


HEALTH_WITH_GRADE = re.compile(
    r"Health:\s*(\d{1,3})\s*/\s*100\s*\(\s*Grade:\s*([A-F][+-]?)\s*\)", re.IGNORECASE
)
HEALTH_ONLY = re.compile(r"Health:\s*(\d{1,3})\s*/\s*100", re.IGNORECASE)
GRADE_LINE = re.compile(r"^\W*Grade\b\W*([A-F][+-]?)\b", re.IGNORECASE | re.MULTILINE)
BARE_SCORE = re.compile(r"(?<![\d.])(\d{1,3})\s*/\s*100\b")

FINDING_LINE = re.compile(r"^\s*\d+[.)]\s+(?P<body>.+)$")
SEVERITY_TAG = re.compile(r"\[(BLOCKER|HIGH)\]", re.IGNORECASE)
BOLD_SEGMENT = re.compile(r"\*\*(.+?)\*\*")


def _valid_score(raw: str) -> int | None:
    score = int(raw)
    if 0 <= score <= 100:
        return score
    return None


def _health_with_grade(text: str) -> ScoreMatch | None:
    for match in HEALTH_WITH_GRADE.finditer(text):
        score = _valid_score(match.group(1))
        if score is not None:
            return score, match.group(2).upper()
    return None


def _health_with_grade_line(text: str) -> ScoreMatch | None:
    for match in HEALTH_ONLY.finditer(text):
        score = _valid_score(match.group(1))
        if score is None:
            continue
        grade = GRADE_LINE.search(text)
        return score, grade.group(1).upper() if grade else None
    return None


def _bare_score(text: str) -> ScoreMatch | None:
    for match in BARE_SCORE.finditer(text):
        score = _valid_score(match.group(1))
        if score is not None:
            return score, None
    return None


SCORE_RULES: tuple[ScoreRule, ...] = (
    ScoreRule("health_with_grade", _health_with_grade),
    ScoreRule("health_with_grade_line", _health_with_grade_line),
    ScoreRule("bare_score", _bare_score),
)

SEVERITY_RULES: tuple[SeverityRule, ...] = (
    SeverityRule("label_pipe_count", r"\b{label}\b\s*\|\s*(\d+)"),
    SeverityRule("table_row", r"\|\s*{label}\s*\|\s*(\d+)\s*\|"),
)


def grade_for_score(score: int) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def extract_score(text: str) -> tuple[str, int, str | None] | None:
    """Return ``(rule_name, score, grade)`` from the first matching score rule."""
    for rule in SCORE_RULES:
        found = rule.extract(text)
        if found is not None:
            return rule.name, found[0], found[1]
    return None


def extract_severity_count(text: str, label: str) -> int:
    for rule in SEVERITY_RULES:
        count = rule.count(text, label)
        if count is not None:
            return count
    return 0


def parse_health(text: str | None) -> HealthSnapshot | None:
    if not isinstance(text, str) or not text.strip():
        return None
    extracted = extract_score(text)
    if extracted is None:
        return None
    _, score, grade = extracted
    counts = {label: extract_severity_count(text, label) for label in SEVERITY_LABELS}
    return HealthSnapshot(
        score=score,
        grade=grade or grade_for_score(score),
        blockers=counts["blocker"],
        high=counts["high"],
        medium=counts["medium"],
        low=counts["low"],
    )


def _clean_title(raw: str) -> str:
    title = SEVERITY_TAG.sub("", raw)
    return title.strip(" :-—–\t")


def extract_findings(text: str | None) -> list[Finding]:
    """Numbered list items carrying a ``[BLOCKER]``/``[HIGH]`` tag and a bold title."""
    if not isinstance(text, str):
        return []
    findings: list[Finding] = []
    seen: set[tuple[str, str]] = set()
    for raw_line in text.splitlines():
        line_match = FINDING_LINE.match(raw_line)
        if not line_match:
            continue
        body = line_match.group("body")
        tag = SEVERITY_TAG.search(body)
        if not tag:
            continue
        title = ""
        for bold in BOLD_SEGMENT.finditer(body):
            title = _clean_title(bold.group(1))
            if title:
                break
        if not title:
            continue
        severity = tag.group(1).upper()
        key = (severity, title.lower())
        if key in seen:
            continue
        seen.add(key)
        findings.append(Finding(severity=severity, title=title))
    return findings
