from __future__ import annotations

from abc import ABC, abstractmethod


class BackendExecutionError(RuntimeError):
    """Raised when an agent process cannot be run."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class BackendProcessError(BackendExecutionError):
    """Raised when the agent binary cannot be launched."""


class AgentBackend(ABC):
    name: str = "agent"

    def __init__(self, binary: str | None = None) -> None:
        self.binary = binary or self.name

    @abstractmethod
    def build_command(
        self,
        instruction: str,
        *,
        max_turns: int | None = None,
        skip_permissions: bool = True,
    ) -> list[str]:
        """Return the argv that runs ``instruction`` through the agent."""
