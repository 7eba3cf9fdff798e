from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex"]

CONFIG_FILENAME = "phasepilot.toml"
SECTION_ORDER = ("agent", "commands", "timeouts", "improvement")


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "claude"
    binary: str = ""
    max_turns: int = 100
    skip_permissions: bool = True
    poll_interval_seconds: float = 5.0


@dataclass(slots=True)
class CommandsConfig:
    research: str = "/gsd:research-phase {phase}"
    plan: str = "/gsd:plan-phase {phase}"
    execute: str = "/gsd:execute-phase {phase}"
    review: str = "/gsd:code-review"


@dataclass(slots=True)
class TimeoutsConfig:
    prep_minutes: float = 30.0
    execute_minutes: float = 60.0
    review_minutes: float = 30.0


@dataclass(slots=True)
class ImprovementConfig:
    enabled: bool = False
    target_score: int = 90
    max_iterations: int = 3
    stop_on_no_improvement: bool = False
    settle_seconds: float = 5.0
    review_file: str = ".planning/CODE-REVIEW.md"
    findings_file: str = ".planning/REVIEW-FINDINGS.md"


@dataclass(slots=True)
class PilotConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    improvement: ImprovementConfig = field(default_factory=ImprovementConfig)

    @classmethod
    def default(cls) -> PilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PilotConfig:
        return cls(
            agent=AgentConfig(**data.get("agent", {})),
            commands=CommandsConfig(**data.get("commands", {})),
            timeouts=TimeoutsConfig(**data.get("timeouts", {})),
            improvement=ImprovementConfig(**data.get("improvement", {})),
        )

    def to_dict(self) -> dict:
        return {
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "max_turns": self.agent.max_turns,
                "skip_permissions": self.agent.skip_permissions,
                "poll_interval_seconds": self.agent.poll_interval_seconds,
            },
            "commands": {
                "research": self.commands.research,
                "plan": self.commands.plan,
                "execute": self.commands.execute,
                "review": self.commands.review,
            },
            "timeouts": {
                "prep_minutes": self.timeouts.prep_minutes,
                "execute_minutes": self.timeouts.execute_minutes,
                "review_minutes": self.timeouts.review_minutes,
            },
            "improvement": {
                "enabled": self.improvement.enabled,
                "target_score": self.improvement.target_score,
                "max_iterations": self.improvement.max_iterations,
                "stop_on_no_improvement": self.improvement.stop_on_no_improvement,
                "settle_seconds": self.improvement.settle_seconds,
                "review_file": self.improvement.review_file,
                "findings_file": self.improvement.findings_file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PilotConfig:
    if not path.exists():
        return PilotConfig.default()
    return PilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
