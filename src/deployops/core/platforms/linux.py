"""Run build commands inside a Docker container on a remote Linux builder.

The job directory is packed and copied to the builder over scp. A
container is started from the configured image, the archive is extracted
into its working directory and each command runs with ``docker exec``.
The working directory is then packed back into the remote archive, copied
home and unpacked over the job directory.

The remote archive and the container are registered for cleanup as soon as
they exist, so they are removed however the run ends.
"""

from __future__ import annotations

import random
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from deployops.core.configuration import stage_environment
from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Build, Job, JobExecution, Release
from deployops.core.packing import TarPacker
from deployops.core.pipeline import (
    CleanupStack,
    JobPlatform,
    PipelineContext,
    Reporter,
    Stage,
    StepOutcome,
)
from deployops.core.process import Executor, ProcessRunner, run_command
from deployops.core.remoting import scp_from, scp_to, ssh
from deployops.core.settings import Settings

SECTION = "Linux Platform"
STEP_1_CONFIGURING = f"{SECTION} - Validating Linux configuration"
STEP_2_EXPORTING = f"{SECTION} - Exporting files to build server"
STEP_3_BUILDING = f"{SECTION} - Running build steps"
STEP_4_IMPORTING = f"{SECTION} - Importing files from build server"

ERR_CONFIGURATOR = "Linux build platform is not configured correctly"
ERR_EXPORTER = "Files could not be exported to the build server"
ERR_BUILDER = "Build steps could not be ran successfully"
ERR_IMPORTER = "Files could not be imported from the build server"

ERR_NO_BUILDER = "No Linux build server defined"
ERR_NO_COMMANDS = 'No commands configured for stage "{stage}"'
ERR_PACK = "Build files could not be packed"
ERR_UNPACK = "Build files could not be unpacked"

EVENT_PREPARE = "Prepare build server"
EVENT_TRANSFER = "Transfer build files"
EVENT_START_CONTAINER = "Starting Docker container"
EVENT_COPY_IN = "Copy build files into Docker container"
EVENT_COPY_OUT = "Copy build files out of Docker container"
EVENT_STEP = "Build step {count}"
EVENT_STEP_CUSTOM = 'Build step {count} "{command}"'
INFO_SKIPPING = "Skipping {remaining} remaining build steps"

CONTAINER_WORKDIR = "/build"
DEFAULT_IMAGE = "default"
EXPORT_FILE = "build_export.tgz"
IMPORT_FILE = "build_import.tgz"

_SHORT_COMMAND = re.compile(r"^[^\n\r]{1,80}$")


def container_name(job_id: str) -> str:
    """Return a Docker-safe container name for a job."""
    return "deployops-" + re.sub(r"[^a-z0-9_.-]", "-", job_id.lower())


def step_message(command: str, current: int, total: int) -> str:
    count = f"[{current}/{total}]"
    if _SHORT_COMMAND.match(command):
        return EVENT_STEP_CUSTOM.format(count=count, command=command.replace("\t", " "))
    return EVENT_STEP.format(count=count)


@dataclass(frozen=True)
class LinuxConfig:
    """Resolved configuration for one Linux build."""

    user: str
    host: str
    remote_dir: str
    remote_file: str
    image: str
    container: str
    commands: list[str]
    environment: Mapping[str, str] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "Builder": f"{self.user}@{self.host}",
            "Remote file": self.remote_file,
            "Image": self.image,
            "Container": self.container,
        }


class LinuxConfigurator:
    """Pick a builder and resolve the image, commands and environment."""

    def __init__(
        self,
        logger: EventLogger,
        settings: Settings,
        choose: Callable[[Sequence[str]], str] = random.choice,
    ):
        self.logger = logger
        self.settings = settings
        self.choose = choose

    def __call__(self, job: Job, execution: JobExecution) -> LinuxConfig | None:
        builders = [b.strip() for b in self.settings.linux_builder.split(",") if b.strip()]
        if not builders:
            self.logger.event(Severity.INFO, ERR_NO_BUILDER)
            return None

        commands = execution.steps()
        if not commands:
            self.logger.event(Severity.INFO, ERR_NO_COMMANDS.format(stage=execution.stage))
            return None

        image = str(execution.parameter("image") or DEFAULT_IMAGE)
        if image == DEFAULT_IMAGE:
            image = self.settings.linux_image

        remote_dir = self.settings.linux_remote_dir.rstrip("/")
        return LinuxConfig(
            user=self.settings.ssh_user,
            host=self.choose(builders),
            remote_dir=remote_dir,
            remote_file=f"{remote_dir}/hal-job-{job.id}.tgz",
            image=image,
            container=container_name(job.id),
            commands=commands,
            environment=stage_environment(job, execution.config),
        )


class DockerBuilder:
    """Run build commands in a container on the builder, over ssh."""

    def __init__(self, logger: EventLogger, executor: Executor, timeout: float | None = None):
        self.logger = logger
        self.executor = executor
        self.timeout = timeout

    def _remote(
        self,
        config: LinuxConfig,
        command: str,
        message: str,
        display: str | None = None,
    ) -> StepOutcome:
        return run_command(
            self.executor,
            ssh(config.user, config.host, command),
            self.logger,
            message,
            timeout=self.timeout,
            display=display,
        )

    def start(self, config: LinuxConfig) -> StepOutcome:
        env_flags = " ".join(
            f"--env {shlex.quote(f'{k}={v}')}" for k, v in sorted(config.environment.items())
        )
        command = " ".join(
            part
            for part in (
                "docker run --detach",
                f"--name {shlex.quote(config.container)}",
                f"--workdir {CONTAINER_WORKDIR}",
                env_flags,
                shlex.quote(config.image),
                "sleep infinity",
            )
            if part
        )
        return self._remote(
            config, command, EVENT_START_CONTAINER, display=f"docker run {config.image}"
        )

    def copy_in(self, config: LinuxConfig) -> StepOutcome:
        command = (
            f"gunzip -c {shlex.quote(config.remote_file)} | "
            f"docker exec -i {shlex.quote(config.container)} tar -xf - -C {CONTAINER_WORKDIR}"
        )
        return self._remote(config, command, EVENT_COPY_IN)

    def run_steps(self, config: LinuxConfig) -> StepOutcome:
        total = len(config.commands)
        for current, step in enumerate(config.commands, start=1):
            command = f"docker exec {shlex.quote(config.container)} sh -c {shlex.quote(step)}"
            message = step_message(step, current, total)
            outcome = self._remote(config, command, message, display=step)
            if not outcome:
                remaining = total - current
                if remaining > 0:
                    self.logger.event(Severity.INFO, INFO_SKIPPING.format(remaining=remaining))
                return outcome
        return StepOutcome.succeeded()

    def copy_out(self, config: LinuxConfig) -> StepOutcome:
        command = (
            f"docker exec {shlex.quote(config.container)} tar -czf - -C {CONTAINER_WORKDIR} . "
            f"> {shlex.quote(config.remote_file)}"
        )
        return self._remote(config, command, EVENT_COPY_OUT)

    def remove(self, config: LinuxConfig) -> None:
        self.executor.run(
            ssh(config.user, config.host, f"docker rm --force {shlex.quote(config.container)}"),
            timeout=self.timeout,
        )


@dataclass
class LinuxContext(PipelineContext):
    config: LinuxConfig | None = None
    exported: str | None = None
    built: bool | None = None


class LinuxBuildPlatform(JobPlatform):
    """Build in Docker on a remote Linux host."""

    job_types = (Build, Release)

    def __init__(
        self,
        logger: EventLogger,
        settings: Settings | None = None,
        reporter: Reporter | None = None,
        *,
        executor: Executor | None = None,
        configurator: Callable[[Job, JobExecution], LinuxConfig | None] | None = None,
    ):
        super().__init__(logger, reporter)
        settings = settings or Settings()
        self.timeout = settings.command_timeout
        self.executor = executor or ProcessRunner(settings.command_timeout)
        self.configurator = configurator or LinuxConfigurator(logger, settings)
        self.builder = DockerBuilder(logger, self.executor, self.timeout)
        self.packer = TarPacker()

    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> LinuxContext:
        return LinuxContext(job=job, execution=execution, workspace=workspace, cleanup=cleanup)

    def stages(self) -> list[Stage]:
        return [
            Stage(STEP_1_CONFIGURING, ERR_CONFIGURATOR, self._configure, writes="config"),
            Stage(
                STEP_2_EXPORTING, ERR_EXPORTER, self._export, reads=("config",), writes="exported"
            ),
            Stage(
                STEP_3_BUILDING,
                ERR_BUILDER,
                self._build,
                reads=("config", "exported"),
                writes="built",
            ),
            Stage(STEP_4_IMPORTING, ERR_IMPORTER, self._import, reads=("config", "built")),
        ]

    def _configure(self, ctx: LinuxContext) -> StepOutcome:
        config = self.configurator(ctx.job, ctx.execution)
        if config is None:
            return StepOutcome.failed()
        self.reporter.listing("Platform configuration:", config.summary())
        return StepOutcome.succeeded(config)

    def _export(self, ctx: LinuxContext) -> StepOutcome:
        config = ctx.config
        source = ctx.workspace / "job"
        local_file = ctx.workspace / EXPORT_FILE
        self.reporter.listing(
            "Export:",
            {
                "Workspace": str(source),
                "Local file": str(local_file),
                "Remote file": config.remote_file,
            },
        )

        try:
            self.packer.pack(source, local_file)
        except OSError as exc:
            return StepOutcome.failed(ERR_PACK, {"error": str(exc)})

        outcome = run_command(
            self.executor,
            ssh(config.user, config.host, f"mkdir -p {shlex.quote(config.remote_dir)}"),
            self.logger,
            EVENT_PREPARE,
            timeout=self.timeout,
        )
        if not outcome:
            return outcome

        # A partial transfer can leave a file behind
        ctx.cleanup.push(
            f"remove {config.remote_file} from {config.host}",
            self.executor.run,
            ssh(config.user, config.host, f"rm -f {shlex.quote(config.remote_file)}"),
        )

        outcome = run_command(
            self.executor,
            scp_to(config.user, config.host, str(local_file), config.remote_file),
            self.logger,
            EVENT_TRANSFER,
            timeout=self.timeout,
        )
        if not outcome:
            return outcome
        return StepOutcome.succeeded(config.remote_file)

    def _build(self, ctx: LinuxContext) -> StepOutcome:
        config = ctx.config
        self.reporter.listing("Commands:", config.commands)

        # docker run may create the container and still fail to start it
        ctx.cleanup.push(f"remove container {config.container}", self.builder.remove, config)
        outcome = self.builder.start(config)
        if not outcome:
            return outcome
        self.reporter.note(f'Docker container "{config.container}" started')

        for step in (self.builder.copy_in, self.builder.run_steps, self.builder.copy_out):
            outcome = step(config)
            if not outcome:
                return outcome
        return StepOutcome.succeeded(True)

    def _import(self, ctx: LinuxContext) -> StepOutcome:
        config = ctx.config
        target = ctx.workspace / "job"
        local_file = ctx.workspace / IMPORT_FILE

        outcome = run_command(
            self.executor,
            scp_from(config.user, config.host, config.remote_file, str(local_file)),
            self.logger,
            EVENT_TRANSFER,
            timeout=self.timeout,
        )
        if not outcome:
            return outcome

        try:
            replace_directory(target)
            self.packer.unpack(local_file, target)
        except OSError as exc:
            return StepOutcome.failed(ERR_UNPACK, {"error": str(exc)})
        return StepOutcome.succeeded()


def replace_directory(path: Path) -> None:
    """Empty ``path`` (creating it if needed) before build output is unpacked."""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)
