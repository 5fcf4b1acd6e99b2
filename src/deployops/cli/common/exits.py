"""Exit handling utilities for the CLI.

Exit codes: 0 when a job succeeded or was cancelled, 1 when a pipeline stage
failed, 2 when the job file or its application configuration cannot be used.
"""

from typing import NoReturn

import typer

from deployops.cli.common.output import out
from deployops.core.runner import PipelineResult

EXIT_OK = 0
EXIT_PIPELINE_FAILED = 1
EXIT_BAD_JOB = 2


def ok_exit(msg: str | None = None) -> NoReturn:
    """Exit successfully with an optional informational message."""
    if msg:
        out.info(msg)
    raise typer.Exit(EXIT_OK)


def die(msg: str, code: int = EXIT_PIPELINE_FAILED) -> NoReturn:
    out.error(msg)
    raise typer.Exit(code)


def bad_job(msg: str) -> NoReturn:
    """Reject a job file that cannot be run."""
    die(msg, code=EXIT_BAD_JOB)


def warn_exit(msg: str, code: int = EXIT_OK) -> NoReturn:
    out.warn(msg)
    raise typer.Exit(code)


def exit_for_result(result: PipelineResult, success: str) -> None:
    """Report a pipeline result, exiting with EXIT_PIPELINE_FAILED when it failed."""
    if not result:
        die(f"{result.message} (stage: {result.failed_stage})")
    out.success(success)


def exit_from_exc(exc: Exception, *, message: str, code: int = EXIT_BAD_JOB) -> NoReturn:
    """Print ``message`` with its cause and exit, keeping the exception chained."""
    out.error(f"{message}: {exc}")
    raise typer.Exit(code) from exc
