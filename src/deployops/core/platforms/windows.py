"""Run build commands on a Windows EC2 builder through SSM.

Files travel through an S3 bucket: the job directory is packed, uploaded
and pulled onto the builder by an SSM PowerShell command. Each build
command runs as its own SSM command, natively or in a Docker container
when an image is configured. The result is packed on the builder, pushed
back to S3, downloaded and unpacked over the job directory.

The S3 objects and the builder directories are released through the
run's cleanup stack once the export has started.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence

from deployops.core.adapters.ec2 import EC2Adapter
from deployops.core.adapters.s3 import S3Adapter
from deployops.core.adapters.ssm import SSMAdapter
from deployops.core.auth import AWSClientFactory, AuthError, REMOTE_ERRORS
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
from deployops.core.platforms import powershell as ps
from deployops.core.platforms.aws import INFO_AUTH_FAILED, ClientsFactory
from deployops.core.platforms.elb import InstanceFinder, parse_tag_filters
from deployops.core.platforms.linux import (
    DEFAULT_IMAGE,
    EXPORT_FILE,
    IMPORT_FILE,
    INFO_SKIPPING,
    replace_directory,
    step_message,
)
from deployops.core.platforms.powershell import PowershellScript
from deployops.core.settings import Settings
from deployops.core.ssm import TYPE_POWERSHELL, SSMCommandRunner, SSMCommands
from deployops.core.waiter import Waiter

SECTION = "Windows Platform"
STEP_1_CONFIGURING = f"{SECTION} - Validating Windows configuration"
STEP_2_EXPORTING = f"{SECTION} - Exporting files to AWS environment"
STEP_3_BUILDING = f"{SECTION} - Running build steps"
STEP_4_IMPORTING = f"{SECTION} - Importing artifacts from AWS environment"

ERR_CONFIGURATOR = "Windows build platform is not configured correctly"
ERR_EXPORTER = "Files could not be exported to the build server"
ERR_BUILDER = "Build steps could not be ran successfully"
ERR_IMPORTER = "Files could not be imported from the build server"

ERR_NO_BUCKET = "No Windows build bucket defined"
ERR_NO_FILTERS = "No valid Windows builder tag filters found"
ERR_NO_BUILDER = "No running Windows build server found"
ERR_NO_COMMANDS = 'No commands configured for stage "{stage}"'
ERR_PACK = "Build files could not be packed"
ERR_UNPACK = "Build files could not be unpacked"

EVENT_PREPARE = "Prepare AWS build server"
EVENT_EXPORT = "Export to AWS build server"
EVENT_TRANSFER = "Transfer build output"
EVENT_IMPORT = "Import from AWS build server"
EVENT_CLEAN = "Clean remote AWS artifacts"

TIMEOUT_INTERNAL_COMMAND = 120


class BuildFileStore(Protocol):
    """Interface for the S3 operations used to move build files."""

    def upload_file(
        self,
        path: Path,
        bucket: str,
        key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        ...

    def download_file(self, bucket: str, key: str, path: Path) -> None:
        ...

    def delete_object(self, bucket: str, key: str) -> None:
        ...


class BuilderFinder:
    """Pick one running instance carrying the builder tag."""

    def __init__(
        self,
        logger: EventLogger,
        choose: Callable[[Sequence[str]], str] = random.choice,
    ):
        self.logger = logger
        self.choose = choose

    def __call__(self, ec2: InstanceFinder, tag_filters: str) -> str | None:
        filters = parse_tag_filters(tag_filters)
        if not filters:
            self.logger.event(Severity.INFO, ERR_NO_FILTERS, {"tags": tag_filters})
            return None
        filters.append({"Name": "instance-state-name", "Values": ["running"]})

        try:
            instances = ec2.find_instances(filters)
        except REMOTE_ERRORS as exc:
            self.logger.event(Severity.INFO, ERR_NO_BUILDER, {"error": str(exc)})
            return None

        if not instances:
            self.logger.event(Severity.INFO, ERR_NO_BUILDER, {"tags": tag_filters})
            return None
        return self.choose([i.id for i in instances])


@dataclass(frozen=True)
class WindowsConfig:
    """Resolved configuration for one Windows build."""

    s3: BuildFileStore
    ssm: SSMCommands
    instance_id: str
    region: str
    bucket: str
    input_object: str
    output_object: str
    image: str
    commands: list[str]
    environment: Mapping[str, str] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "Builder": self.instance_id,
            "Region": self.region,
            "Bucket": self.bucket,
            "Input object": self.input_object,
            "Output object": self.output_object,
            "Image": self.image,
        }


class WindowsConfigurator:
    """Locate the builder and resolve the transfer objects and environment."""

    def __init__(
        self,
        logger: EventLogger,
        settings: Settings,
        clients: ClientsFactory = AWSClientFactory,
        finder: BuilderFinder | None = None,
    ):
        self.logger = logger
        self.settings = settings
        self.clients = clients
        self.finder = finder or BuilderFinder(logger)

    def __call__(self, job: Job, execution: JobExecution) -> WindowsConfig | None:
        bucket = self.settings.windows_bucket
        if not bucket:
            self.logger.event(Severity.INFO, ERR_NO_BUCKET)
            return None

        commands = execution.steps()
        if not commands:
            self.logger.event(Severity.INFO, ERR_NO_COMMANDS.format(stage=execution.stage))
            return None

        region = self.settings.windows_region
        try:
            factory = self.clients(region, None)
            ec2, s3, ssm = factory("ec2"), factory("s3"), factory("ssm")
        except AuthError as exc:
            self.logger.event(
                Severity.INFO, INFO_AUTH_FAILED, {"region": region, "error": str(exc)}
            )
            return None

        instance_id = self.finder(EC2Adapter(ec2), self.settings.windows_tag)
        if instance_id is None:
            return None

        return WindowsConfig(
            s3=S3Adapter(s3),
            ssm=SSMAdapter(ssm),
            instance_id=instance_id,
            region=region,
            bucket=bucket,
            input_object=f"hal-job-{job.id}-input.tgz",
            output_object=f"hal-job-{job.id}-output.tgz",
            image=str(execution.parameter("image") or DEFAULT_IMAGE),
            commands=commands,
            environment=stage_environment(job, execution.config),
        )


@dataclass
class WindowsContext(PipelineContext):
    config: WindowsConfig | None = None
    exported: str | None = None
    built: bool | None = None


class WindowsBuildPlatform(JobPlatform):
    """Build on a Windows EC2 instance driven through SSM."""

    job_types = (Build, Release)

    def __init__(
        self,
        logger: EventLogger,
        waiter: Waiter,
        settings: Settings | None = None,
        reporter: Reporter | None = None,
        *,
        configurator: Callable[[Job, JobExecution], WindowsConfig | None] | None = None,
        runner: SSMCommandRunner | None = None,
    ):
        super().__init__(logger, reporter)
        settings = settings or Settings()
        self.configurator = configurator or WindowsConfigurator(logger, settings)
        self.runner = runner or SSMCommandRunner(logger, waiter, settings.ssm_start_delay)
        self.command_timeout = int(settings.command_timeout)
        self.packer = TarPacker()

    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> WindowsContext:
        return WindowsContext(job=job, execution=execution, workspace=workspace, cleanup=cleanup)

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

    def _ssm(
        self,
        config: WindowsConfig,
        scripts: Sequence[str],
        message: str,
        timeout: int = TIMEOUT_INTERNAL_COMMAND,
        always_log: bool = False,
    ) -> StepOutcome:
        parameters = {
            "commands": ps.commands(*scripts),
            "workingDirectory": [ps.BASE_BUILD_PATH],
            "executionTimeout": [str(timeout)],
        }
        return self.runner(
            config.ssm, config.instance_id, TYPE_POWERSHELL, parameters, message, always_log
        )

    def _configure(self, ctx: WindowsContext) -> StepOutcome:
        config = self.configurator(ctx.job, ctx.execution)
        if config is None:
            return StepOutcome.failed()
        self.reporter.listing("Platform configuration:", config.summary())
        return StepOutcome.succeeded(config)

    def _export(self, ctx: WindowsContext) -> StepOutcome:
        config = ctx.config
        job_id = ctx.job.id
        local_file = ctx.workspace / EXPORT_FILE
        self.reporter.listing(
            "Export:",
            {
                "Workspace": str(ctx.workspace / "job"),
                "Local file": str(local_file),
                "S3 object": f"{config.bucket}/{config.input_object}",
            },
        )

        outcome = self._ssm(config, [ps.render(PowershellScript.PREPARE_BUILDER)], EVENT_PREPARE)
        if not outcome:
            return outcome

        try:
            self.packer.pack(ctx.workspace / "job", local_file)
        except OSError as exc:
            return StepOutcome.failed(ERR_PACK, {"error": str(exc)})

        # LIFO: the S3 objects are deleted first, then the builder is cleaned
        ctx.cleanup.push(
            f"clean builder {config.instance_id}", self._clean_builder, config, job_id
        )
        for key in (config.output_object, config.input_object):
            ctx.cleanup.push(
                f"delete s3://{config.bucket}/{key}", config.s3.delete_object, config.bucket, key
            )

        try:
            config.s3.upload_file(local_file, config.bucket, config.input_object, {"Build": job_id})
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(
                str(exc), {"bucket": config.bucket, "object": config.input_object}
            )

        archive = ps.archive_file(job_id)
        outcome = self._ssm(
            config,
            [
                ps.render(
                    PowershellScript.DOWNLOAD_BUILD, archive, config.bucket, config.input_object
                ),
                ps.render(PowershellScript.UNTAR_BUILD, archive, ps.input_dir(job_id)),
            ],
            EVENT_EXPORT,
            always_log=True,
        )
        if not outcome:
            return outcome
        return StepOutcome.succeeded(config.input_object)

    def _build(self, ctx: WindowsContext) -> StepOutcome:
        config = ctx.config
        job_id = ctx.job.id
        workdir = ps.input_dir(job_id)
        self.reporter.listing("Commands:", config.commands)

        total = len(config.commands)
        for current, command in enumerate(config.commands, start=1):
            if config.image == DEFAULT_IMAGE:
                scripts = [
                    ps.render(PowershellScript.SET_ENVIRONMENT, config.environment),
                    ps.render(PowershellScript.RUN_NATIVE, command, workdir),
                ]
            else:
                scripts = [
                    ps.render(
                        PowershellScript.RUN_DOCKER,
                        command,
                        workdir,
                        config.image,
                        config.environment,
                    )
                ]

            outcome = self._ssm(
                config,
                scripts,
                step_message(command, current, total),
                timeout=self.command_timeout,
                always_log=True,
            )
            if not outcome:
                remaining = total - current
                if remaining > 0:
                    self.logger.event(Severity.INFO, INFO_SKIPPING.format(remaining=remaining))
                return outcome

        outcome = self._ssm(
            config,
            [ps.render(PowershellScript.TRANSFER_TO_OUTPUT, workdir, ps.output_dir(job_id))],
            EVENT_TRANSFER,
        )
        if not outcome:
            return outcome
        return StepOutcome.succeeded(True)

    def _import(self, ctx: WindowsContext) -> StepOutcome:
        config = ctx.config
        job_id = ctx.job.id
        archive = ps.archive_file(job_id)

        outcome = self._ssm(
            config,
            [
                ps.render(PowershellScript.TAR_BUILD, archive, ps.output_dir(job_id)),
                ps.render(
                    PowershellScript.UPLOAD_BUILD, archive, config.bucket, config.output_object
                ),
            ],
            EVENT_IMPORT,
            always_log=True,
        )
        if not outcome:
            return outcome

        local_file = ctx.workspace / IMPORT_FILE
        try:
            config.s3.download_file(config.bucket, config.output_object, local_file)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(
                str(exc), {"bucket": config.bucket, "object": config.output_object}
            )

        target = ctx.workspace / "job"
        try:
            replace_directory(target)
            self.packer.unpack(local_file, target)
        except OSError as exc:
            return StepOutcome.failed(ERR_UNPACK, {"error": str(exc)})
        return StepOutcome.succeeded()

    def _clean_builder(self, config: WindowsConfig, job_id: str) -> None:
        outcome = self._ssm(
            config,
            [
                ps.render(
                    PowershellScript.CLEANUP,
                    ps.output_dir(job_id),
                    ps.input_dir(job_id),
                    ps.archive_file(job_id),
                )
            ],
            EVENT_CLEAN,
        )
        if not outcome:
            self.logger.event(
                Severity.INFO,
                f"Cleanup failed: {EVENT_CLEAN}",
                {"reason": outcome.error, **outcome.context},
            )
