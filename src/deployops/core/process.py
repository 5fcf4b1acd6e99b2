"""Local process execution.

Platforms run docker, ssh, scp and rsync through an ``Executor``. The
executor never raises for a failing command: non-zero exits, timeouts and
missing binaries all come back as a failed ProcessResult so steps can
convert them into outcomes.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

from deployops.core.events import EventLogger, Severity
from deployops.core.pipeline import StepOutcome

ERR_TIMEOUT = "Command took too long to finish"


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a finished (or abandoned) process."""

    command: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part).strip()


class Executor(Protocol):
    """Interface for running a command to completion."""

    def run(
        self,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        ...


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class ProcessRunner:
    """Executor backed by ``subprocess.run``."""

    def __init__(self, default_timeout: float | None = None):
        self.default_timeout = default_timeout

    def run(
        self,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        args = tuple(str(c) for c in command)
        full_env = {**os.environ, **{k: str(v) for k, v in env.items()}} if env else None

        try:
            completed = subprocess.run(
                args,
                env=full_env,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=timeout or self.default_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return ProcessResult(
                command=args,
                exit_code=-1,
                stdout=_text(exc.stdout),
                stderr=_text(exc.stderr),
                timed_out=True,
            )
        except OSError as exc:
            return ProcessResult(command=args, exit_code=127, stderr=str(exc))

        return ProcessResult(
            command=args,
            exit_code=completed.returncode,
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
        )


def run_command(
    executor: Executor,
    command: Sequence[str],
    logger: EventLogger,
    message: str,
    *,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    timeout: float | None = None,
    display: str | None = None,
) -> StepOutcome:
    """
    Run one command and turn its result into a step outcome.

    Successful commands are logged as a success event with their output.
    ``display`` replaces the command line in events (for sanitized commands).
    """
    result = executor.run(command, env=env, cwd=cwd, timeout=timeout)
    context = {
        "command": display or " ".join(result.command),
        "exitCode": result.exit_code,
        "output": result.output,
    }

    if result.timed_out:
        return StepOutcome.failed(ERR_TIMEOUT, context)
    if not result.ok:
        return StepOutcome.failed(message, context)

    logger.event(Severity.SUCCESS, message, context)
    return StepOutcome.succeeded(result)
