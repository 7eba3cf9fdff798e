from __future__ import annotations

from phasepilot.backends.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def build_command(
        self,
        instruction: str,
        *,
        max_turns: int | None = None,
        skip_permissions: bool = True,
    ) -> list[str]:
        command = [self.binary, "-p", instruction]
        if max_turns:
            command.extend(["--max-turns", str(max_turns)])
        if skip_permissions:
            command.append("--dangerously-skip-permissions")
        return command
