from phasepilot.backends.base import AgentBackend, BackendExecutionError, BackendProcessError
from phasepilot.backends.claude import ClaudeCodeBackend
from phasepilot.backends.codex import CodexBackend

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "build_backend",
]


def build_backend(name: str, binary: str | None = None) -> AgentBackend:
    if name == "codex":
        return CodexBackend(binary=binary or None)
    return ClaudeCodeBackend(binary=binary or None)
