"""CLI application for build and deployment pipelines."""

import typer

from deployops.cli.commands.jobs import build, deploy
from deployops.cli.commands.platforms import platforms

app = typer.Typer(
    help="deployops - staged build and deployment pipelines",
    no_args_is_help=True,
)

app.command(help="Deploy a release described by a job file.")(deploy)
app.command(help="Build an application described by a job file.")(build)
app.command(help="List the available build and deploy platforms.")(platforms)


if __name__ == "__main__":
    app()
