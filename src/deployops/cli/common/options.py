"""Common CLI options for the CLI."""

import typer

JobFileArg = typer.Argument(
    ...,
    exists=True,
    dir_okay=False,
    readable=True,
    help="YAML job file describing the build or release",
)

WorkspaceOpt = typer.Option(
    None,
    "--workspace",
    "-w",
    help="Workspace directory (overrides the job file). Must contain job/",
)

ConfirmOpt = typer.Option(
    True,
    "--confirm/--no-confirm",
    help="Ask for confirmation before starting",
)

DryRunOpt = typer.Option(
    False,
    "--dry-run",
    help="Show the job and its configuration, but don't run anything",
)
