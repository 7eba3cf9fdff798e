from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from phasepilot.backends.base import AgentBackend, BackendProcessError

EventHook = Callable[[dict[str, Any]], None]

TIMEOUT_EXIT_CODE = -1
LAUNCH_FAILURE_EXIT_CODE = 127


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    success: bool
    timed_out: bool = False
    exit_code: int | None = None
    duration_minutes: float = 0.0
    output: str = ""

    @property
    def reason(self) -> str:
        if self.timed_out:
            return f"timed out after {self.duration_minutes:.1f} min"
        if self.success:
            return "ok"
        return f"exit code {self.exit_code}"


@dataclass(frozen=True, slots=True)
class ChainStep:
    label: str
    instruction: str


class Watchdog:
    """Runs agent commands as child processes under a deadline.

    Combined stdout/stderr of each invocation goes to ``<log_dir>/<label>.log``
    so concurrent runs never share a sink. The log is read back into
    ``ExecutionResult.output`` whether the process exited or was killed.
    """

    def __init__(
        self,
        backend: AgentBackend,
        working_directory: Path,
        log_dir: Path,
        *,
        max_turns: int | None = None,
        skip_permissions: bool = True,
        poll_interval_seconds: float = 5.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.backend = backend
        self.working_directory = working_directory
        self.log_dir = log_dir
        self.max_turns = max_turns
        self.skip_permissions = skip_permissions
        self.poll_interval_seconds = max(0.01, float(poll_interval_seconds))
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def log_path(self, label: str) -> Path:
        return self.log_dir / f"{label}.log"

    async def run(
        self,
        instruction: str,
        timeout_minutes: float,
        *,
        label: str,
        max_turns: int | None = None,
    ) -> ExecutionResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, float(timeout_minutes)) * 60.0
        return await self.run_chain(
            [ChainStep(label=label, instruction=instruction)],
            deadline=deadline,
            max_turns=max_turns,
        )

    async def run_chain(
        self,
        steps: Sequence[ChainStep],
        *,
        deadline: float,
        max_turns: int | None = None,
    ) -> ExecutionResult:
        """Run ``steps`` one after another until one fails.

        ``deadline`` is absolute event-loop time, so several chains can share it.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        outputs: list[str] = []
        last = ExecutionResult(success=True, exit_code=0)
        for step in steps:
            if loop.time() >= deadline:
                self._emit({"event": "agent_skipped", "label": step.label, "reason": "deadline"})
                last = ExecutionResult(success=False, timed_out=True, exit_code=TIMEOUT_EXIT_CODE)
                break
            last = await self._supervise(step, deadline, max_turns)
            if last.output:
                outputs.append(last.output)
            if not last.success:
                break
        return ExecutionResult(
            success=last.success,
            timed_out=last.timed_out,
            exit_code=last.exit_code,
            duration_minutes=(loop.time() - started) / 60.0,
            output="\n".join(outputs),
        )

    async def _launch(
        self, step: ChainStep, log_path: Path, max_turns: int | None
    ) -> asyncio.subprocess.Process:
        command = self.backend.build_command(
            step.instruction,
            max_turns=max_turns if max_turns is not None else self.max_turns,
            skip_permissions=self.skip_permissions,
        )
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("wb") as sink:
                return await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.working_directory),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=sink,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
        except (OSError, ValueError) as exc:
            raise BackendProcessError(
                f"Could not launch {command[0]}: {exc}",
                backend=self.backend.name,
            ) from exc

    async def _supervise(
        self, step: ChainStep, deadline: float, max_turns: int | None
    ) -> ExecutionResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        log_path = self.log_path(step.label)
        try:
            process = await self._launch(step, log_path, max_turns)
        except BackendProcessError as exc:
            self._emit({"event": "agent_launch_failed", "label": step.label, "error": str(exc)})
            return ExecutionResult(
                success=False,
                exit_code=LAUNCH_FAILURE_EXIT_CODE,
                duration_minutes=(loop.time() - started) / 60.0,
                output=str(exc),
            )

        self._emit(
            {
                "event": "agent_start",
                "label": step.label,
                "pid": process.pid,
                "instruction": step.instruction,
            }
        )
        seen_bytes = 0
        timed_out = False
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    timed_out = True
                    await self._terminate(process)
                    break
                try:
                    await asyncio.wait_for(
                        process.wait(), timeout=min(self.poll_interval_seconds, remaining)
                    )
                    break
                except TimeoutError:
                    seen_bytes = self._report_progress(
                        step.label, log_path, seen_bytes, loop.time() - started
                    )
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        duration = (loop.time() - started) / 60.0
        output = self._read_output(log_path)
        if timed_out:
            self._emit(
                {"event": "agent_timeout", "label": step.label, "duration_minutes": duration}
            )
            return ExecutionResult(
                success=False,
                timed_out=True,
                exit_code=TIMEOUT_EXIT_CODE,
                duration_minutes=duration,
                output=output,
            )

        exit_code = process.returncode
        success = exit_code is None or exit_code == 0
        self._emit(
            {
                "event": "agent_exit",
                "label": step.label,
                "exit_code": exit_code,
                "duration_minutes": duration,
            }
        )
        return ExecutionResult(
            success=success,
            exit_code=exit_code,
            duration_minutes=duration,
            output=output,
        )

    def _report_progress(self, label: str, log_path: Path, seen_bytes: int, elapsed: float) -> int:
        try:
            size = log_path.stat().st_size
        except FileNotFoundError:
            return seen_bytes
        if size > seen_bytes:
            self._emit(
                {
                    "event": "agent_progress",
                    "label": label,
                    "bytes": size,
                    "elapsed_seconds": round(elapsed, 1),
                }
            )
        return size

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    @staticmethod
    def _read_output(log_path: Path) -> str:
        if not log_path.exists():
            return ""
        return log_path.read_text(encoding="utf-8", errors="replace")
