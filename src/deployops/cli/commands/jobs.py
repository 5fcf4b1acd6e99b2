"""Commands for running builds and releases."""

from pathlib import Path

import typer

from deployops.cli.common.context import AppContext, build_context
from deployops.cli.common.exits import (
    bad_job,
    exit_for_result,
    exit_from_exc,
    ok_exit,
    warn_exit,
)
from deployops.cli.common.jobfile import JobFile, JobFileError, load_job_file
from deployops.cli.common.options import ConfirmOpt, DryRunOpt, JobFileArg, WorkspaceOpt
from deployops.cli.common.output import out
from deployops.core.configuration import ConfigurationError
from deployops.core.jobs import Build, Release
from deployops.core.runner import BuildPipeline, DeployPipeline

VerboseOpt = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Print event details for every event, not only failures",
)


def _load(job_file: Path, workspace: Path | None, expected: type) -> JobFile:
    try:
        loaded = load_job_file(job_file, workspace)
    except JobFileError as exc:
        bad_job(str(exc))
    except ConfigurationError as exc:
        exit_from_exc(exc, message=".hal.yml configuration is invalid and cannot be read")

    if not isinstance(loaded.job, expected):
        bad_job(f"Job file describes a {loaded.job.type}, not a {expected.__name__.lower()}")
    return loaded


def _show(loaded: JobFile, dry_run: bool) -> None:
    out.header("Job")
    out.kv(loaded.summary())
    if dry_run:
        out.header("Application configuration")
        out.kv(dict(loaded.config))
        warn_exit("Dry-run enabled: nothing was run", code=0)


def _finish(appctx: AppContext, result, success: str) -> None:
    out.events_table(appctx.events.events, title="Events")
    if appctx.logger.dropped:
        out.warn(f"{appctx.logger.dropped} event(s) could not be logged")
    exit_for_result(result, success)


def deploy(
    job_file: Path = JobFileArg,
    workspace: Path | None = WorkspaceOpt,
    confirm: bool = ConfirmOpt,
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
):
    """
    Deploy a release described by a job file.
    """
    loaded = _load(job_file, workspace, Release)
    _show(loaded, dry_run)

    if confirm and not out.confirm("Deploy this release?"):
        ok_exit("Cancelled")

    appctx = build_context(verbose=verbose)
    pipeline = DeployPipeline(appctx.logger, appctx.runner, appctx.reporter)
    with out.status("Deploying release..."):
        result = pipeline(loaded.job, loaded.config, loaded.workspace)

    _finish(appctx, result, "Release was deployed successfully.")


def build(
    job_file: Path = JobFileArg,
    workspace: Path | None = WorkspaceOpt,
    confirm: bool = ConfirmOpt,
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
):
    """
    Build an application described by a job file.
    """
    loaded = _load(job_file, workspace, Build)
    _show(loaded, dry_run)

    if confirm and not out.confirm("Start this build?"):
        ok_exit("Cancelled")

    appctx = build_context(verbose=verbose)
    pipeline = BuildPipeline(appctx.logger, appctx.runner, appctx.reporter)
    with out.status("Building..."):
        result = pipeline(loaded.job, loaded.config, loaded.workspace)

    _finish(appctx, result, "Build was completed successfully.")
