from __future__ import annotations

from phasepilot.backends.base import AgentBackend


class CodexBackend(AgentBackend):
    """Codex CLI in non-interactive mode. It has no turn limit, so ``max_turns`` is ignored."""

    name = "codex"

    def build_command(
        self,
        instruction: str,
        *,
        max_turns: int | None = None,
        skip_permissions: bool = True,
    ) -> list[str]:
        _ = max_turns
        command = [self.binary, "exec"]
        if skip_permissions:
            command.append("--dangerously-bypass-approvals-and-sandbox")
        command.append(instruction)
        return command
