"""Platform dispatch and the build and deploy pipelines.

``JobRunner`` maps a platform name onto a registered ``JobPlatform``. The
pipelines sequence platform runs: a build runs its ``build`` commands on the
build platform, a release runs ``build_transform`` and ``before_deploy`` on
the build platform, then ``deploy`` on the target's platform and finally
``after_deploy`` on the build platform again.

``after_deploy`` runs whether or not ``deploy`` succeeded so that user hooks
can clean up or notify. Its commands see the deploy outcome through
``HAL_DEPLOY_STATUS``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Build, DeployStatus, Job, JobExecution, Release
from deployops.core.pipeline import JobPlatform, NullReporter, Reporter
from deployops.core.platforms.beanstalk import BeanstalkDeployPlatform
from deployops.core.platforms.codedeploy import CodeDeployDeployPlatform
from deployops.core.platforms.elb import ELBDeployPlatform
from deployops.core.platforms.linux import LinuxBuildPlatform
from deployops.core.platforms.rsync import RsyncDeployPlatform
from deployops.core.platforms.s3 import S3DeployPlatform
from deployops.core.platforms.script import ScriptPlatform
from deployops.core.platforms.windows import WindowsBuildPlatform
from deployops.core.settings import Settings
from deployops.core.waiter import Waiter

ERR_INVALID_PLATFORM = "Invalid job platform specified"
ERR_NO_TARGET = "Release has no deployment target"

ERR_BUILD = "Build process failed"
ERR_TRANSFORM = "Build transform process failed"
ERR_BEFORE_DEPLOYMENT = "Before deployment stage failed"
ERR_DEPLOY = "Deployment process failed"
ERR_AFTER_DEPLOYMENT = "After deployment stage failed"

DOCKER_PREFIX = "docker:"

STAGE_BUILD = "build"
STAGE_TRANSFORM = "build_transform"
STAGE_BEFORE_DEPLOY = "before_deploy"
STAGE_DEPLOY = "deploy"
STAGE_AFTER_DEPLOY = "after_deploy"


class PlatformType(str, Enum):
    LINUX = "linux"
    WINDOWS = "windows"
    SCRIPT = "script"
    RSYNC = "rsync"
    S3 = "s3"
    CODEDEPLOY = "codedeploy"
    EB = "eb"
    ELB = "elb"

    @classmethod
    def parse(cls, name: str | None) -> PlatformType | None:
        """Return the platform for ``name``, or None when it is not known.

        ``docker:<image>`` names run on the Linux platform.
        """
        value = (name or "").strip().lower()
        if value.startswith(DOCKER_PREFIX):
            return cls.LINUX
        try:
            return cls(value)
        except ValueError:
            return None


class JobRunner:
    """Delegate a job execution to the platform it names."""

    def __init__(self, logger: EventLogger, platforms: Mapping[PlatformType, JobPlatform]):
        self.logger = logger
        self.platforms = dict(platforms)

    @property
    def valid_platforms(self) -> list[str]:
        return sorted(p.value for p in self.platforms)

    def __call__(self, job: Job, execution: JobExecution, workspace: Path) -> bool:
        platform_type = PlatformType.parse(execution.platform)
        platform = self.platforms.get(platform_type) if platform_type else None
        if platform is None:
            self.logger.event(
                Severity.FAILURE,
                ERR_INVALID_PLATFORM,
                {"platform": execution.platform, "validPlatforms": self.valid_platforms},
            )
            return False

        return platform(job, execution, workspace)


def run_stage(
    logger: EventLogger, runner: JobRunner, job: Job, execution: JobExecution, workspace: Path
) -> bool:
    """Run one pipeline stage with its events tagged "<job type>.<stage>"."""
    logger.stage = f"{job.type}.{execution.stage}"
    return runner(job, execution, workspace)


@dataclass(frozen=True)
class PipelineResult:
    """
    Result of a build or deploy pipeline.

    Attributes:
        ok: True when every stage succeeded.
        failed_stage: Name of the stage reported as failed.
        message: Failure summary for the reported stage.
    """

    ok: bool
    failed_stage: str | None = None
    message: str | None = None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls) -> PipelineResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, stage: str, message: str) -> PipelineResult:
        return cls(ok=False, failed_stage=stage, message=message)


class BuildPipeline:
    """Run the ``build`` stage of a build on its configured platform."""

    def __init__(self, logger: EventLogger, runner: JobRunner, reporter: Reporter | None = None):
        self.logger = logger
        self.runner = runner
        self.reporter = reporter or NullReporter()

    def __call__(self, build: Build, config: Mapping[str, Any], workspace: Path) -> PipelineResult:
        platform = str(config.get("platform") or "")
        execution = JobExecution(platform=platform, stage=STAGE_BUILD, config=config)
        if not execution.steps():
            self.reporter.note("No build commands found. Skipping build process.")
            return PipelineResult.success()

        if not run_stage(self.logger, self.runner, build, execution, workspace):
            return PipelineResult.failure(STAGE_BUILD, ERR_BUILD)
        return PipelineResult.success()


class DeployPipeline:
    """
    Run a release through build_transform, before_deploy, deploy and after_deploy.

    Stages without commands are skipped. Failures of build_transform or
    before_deploy stop the pipeline. after_deploy always follows deploy and
    its own failure takes precedence over a deploy failure in the result.
    """

    def __init__(self, logger: EventLogger, runner: JobRunner, reporter: Reporter | None = None):
        self.logger = logger
        self.runner = runner
        self.reporter = reporter or NullReporter()

    def __call__(
        self,
        release: Release,
        config: Mapping[str, Any],
        workspace: Path,
    ) -> PipelineResult:
        if release.target is None:
            self.logger.stage = f"{release.type}.{STAGE_DEPLOY}"
            self.logger.event(Severity.FAILURE, ERR_NO_TARGET, {"release": release.id})
            return PipelineResult.failure(STAGE_DEPLOY, ERR_NO_TARGET)

        build_platform = str(config.get("platform") or "")
        base = JobExecution(platform=build_platform, stage=STAGE_TRANSFORM, config=config)

        transform = base.with_deploy_status(DeployStatus.PENDING)
        if not self._run_hook(release, transform, workspace):
            return PipelineResult.failure(STAGE_TRANSFORM, ERR_TRANSFORM)

        before = base.for_stage(build_platform, STAGE_BEFORE_DEPLOY)
        before = before.with_deploy_status(DeployStatus.RUNNING)
        if not self._run_hook(release, before, workspace):
            return PipelineResult.failure(STAGE_BEFORE_DEPLOY, ERR_BEFORE_DEPLOYMENT)

        deploy = base.for_stage(release.target.platform, STAGE_DEPLOY)
        deploy = deploy.with_deploy_status(DeployStatus.RUNNING)
        deployed = run_stage(self.logger, self.runner, release, deploy, workspace)

        status = DeployStatus.SUCCESS if deployed else DeployStatus.FAILURE
        after = base.for_stage(build_platform, STAGE_AFTER_DEPLOY).with_deploy_status(status)
        if not self._run_hook(release, after, workspace):
            return PipelineResult.failure(STAGE_AFTER_DEPLOY, ERR_AFTER_DEPLOYMENT)

        if not deployed:
            return PipelineResult.failure(STAGE_DEPLOY, ERR_DEPLOY)
        return PipelineResult.success()

    def _run_hook(self, release: Release, execution: JobExecution, workspace: Path) -> bool:
        if not execution.steps():
            self.reporter.note(f"Skipping {execution.stage} commands: none found")
            return True
        return run_stage(self.logger, self.runner, release, execution, workspace)


def build_platforms(
    settings: Settings,
    logger: EventLogger,
    reporter: Reporter | None = None,
    waiter: Waiter | None = None,
) -> dict[PlatformType, JobPlatform]:
    """Create every platform wired to the given settings."""
    waiter = waiter or Waiter(settings.wait_interval, settings.wait_attempts)
    return {
        PlatformType.LINUX: LinuxBuildPlatform(logger, settings, reporter),
        PlatformType.WINDOWS: WindowsBuildPlatform(logger, waiter, settings, reporter),
        PlatformType.SCRIPT: ScriptPlatform(logger, settings, reporter),
        PlatformType.RSYNC: RsyncDeployPlatform(logger, settings, reporter),
        PlatformType.S3: S3DeployPlatform(logger, reporter),
        PlatformType.CODEDEPLOY: CodeDeployDeployPlatform(logger, waiter, settings, reporter),
        PlatformType.EB: BeanstalkDeployPlatform(logger, waiter, settings, reporter),
        PlatformType.ELB: ELBDeployPlatform(logger, waiter, reporter),
    }
