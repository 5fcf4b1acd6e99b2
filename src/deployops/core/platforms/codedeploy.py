"""Release an application revision through AWS CodeDeploy.

The revision is packed, uploaded to S3 and handed to CodeDeploy. The
deployment is then polled until it leaves the in-flight states. Finishing
the wait only means CodeDeploy stopped working on it; the final status is
fetched and checked separately, and only "Succeeded" or "Ready" count as a
successful release. A timed out wait leaves the deployment outcome unknown.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from deployops.core.adapters.codedeploy import CodeDeployAdapter
from deployops.core.adapters.s3 import S3Adapter
from deployops.core.auth import AWSClientFactory, REMOTE_ERRORS
from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Job, JobExecution, Release
from deployops.core.models import DeploymentHealth
from deployops.core.packing import archive_format
from deployops.core.pipeline import (
    CleanupStack,
    JobPlatform,
    PipelineContext,
    Reporter,
    Stage,
    StepOutcome,
)
from deployops.core.platforms.artifact import (
    DEFAULT_ARCHIVE_FILE,
    DEFAULT_SOURCE,
    PARAM_BUCKET,
    PARAM_REMOTE_PATH,
    PARAM_SOURCE,
    ArtifactStore,
    ArtifactUploader,
    Clock,
    Compressor,
    deployment_description,
    release_metadata,
    render_remote_path,
    utc_now,
)
from deployops.core.platforms.aws import ClientsFactory, connect, required_parameters
from deployops.core.settings import Settings
from deployops.core.waiter import PollState, Waiter, WaitTimeout

PARAM_APPLICATION = "application"
PARAM_GROUP = "group"
PARAM_CONFIGURATION = "configuration"

DEFAULT_CONFIGURATION = "CodeDeployDefault.OneAtATime"

IN_FLIGHT = frozenset({"Created", "Queued", "InProgress"})
GROUP_READY = ("Succeeded", "Failed", "Stopped", "None", "Ready")
DEPLOYMENT_SUCCEEDED = ("Succeeded", "Ready")

STEP_1_CONFIGURING = "CodeDeploy Platform - Validating CodeDeploy configuration"
STEP_2_GROUP_HEALTH = "CodeDeploy Platform - Checking CodeDeploy deployment group health"
STEP_3_COMPRESSING = "CodeDeploy Platform - Compressing source"
STEP_4_UPLOADING = "CodeDeploy Platform - Uploading artifact to S3 bucket"
STEP_5_DEPLOYING = "CodeDeploy Platform - Deploying artifact with CodeDeploy"
STEP_6_WAITING = "CodeDeploy Platform - Waiting for deployment to finish"
STEP_7_VERIFYING = "CodeDeploy Platform - Checking CodeDeploy deployment health"

ERR_CONFIGURATOR = "CodeDeploy deploy platform is not configured correctly"
ERR_GROUP_HEALTH = "CodeDeploy deployment group is not ready"
ERR_COMPRESSOR = "The source directory could not be compressed"
ERR_UPLOADER = "The artifact could not be uploaded to the S3 Bucket"
ERR_DEPLOYER = "The artifact could not be deployed with CodeDeploy"
ERR_WAITER = "CodeDeploy deployment did not finish"
ERR_VERIFIER = "CodeDeploy deployment was not successful"

EVENT_DEPLOY = "Deploy new application version with AWS CodeDeploy"
INFO_STILL_DEPLOYING = "Still deploying. Completed {succeeded} of {total}"
ERR_HEALTH = 'Deployment health has invalid status "{status}"'
ERR_TIMEOUT = "Timeout waiting for deployment to finish"


class CodeDeployClient(Protocol):
    """Interface for the CodeDeploy operations used by the platform."""

    def deployment(self, deployment_id: str) -> DeploymentHealth:
        ...

    def last_deployment(self, application: str, group: str) -> DeploymentHealth:
        ...

    def create_deployment(self, request: Mapping[str, Any]) -> str:
        ...


def detect_bundle_type(key: str) -> str:
    """Return the CodeDeploy bundle type for an object key (tgz by default)."""
    return archive_format(key) or "tgz"


class DeploymentCheck:
    """
    Waiter predicate polling one deployment.

    The first ``settle_polls`` polls never report completion, so a status
    left over from before the deployment registered is not mistaken for the
    final one. Progress is reported every ``log_every`` polls.
    """

    def __init__(
        self,
        logger: EventLogger,
        cd: CodeDeployClient,
        deployment_id: str,
        settle_polls: int = 3,
        log_every: int = 9,
    ):
        self.logger = logger
        self.cd = cd
        self.deployment_id = deployment_id
        self.settle_polls = settle_polls
        self.poll = PollState(log_every=log_every)
        self.last: DeploymentHealth | None = None

    def __call__(self) -> bool:
        health = self.cd.deployment(self.deployment_id)
        self.last = health

        if self.poll.iteration >= self.settle_polls and health.status not in IN_FLIGHT:
            return True

        if self.poll.tick():
            self.logger.event(
                Severity.INFO,
                INFO_STILL_DEPLOYING.format(
                    succeeded=health.succeeded_count, total=health.total_count
                ),
                {"status": health.status, "overview": dict(health.overview)},
            )
        return False


class CodeDeployVerifier:
    """Deployment group readiness, deployment convergence and outcome checks."""

    def __init__(
        self,
        logger: EventLogger,
        waiter: Waiter,
        settle_polls: int = 3,
        log_every: int = 9,
    ):
        self.logger = logger
        self.waiter = waiter
        self.settle_polls = settle_polls
        self.log_every = log_every

    def is_group_healthy(self, cd: CodeDeployClient, application: str, group: str) -> StepOutcome:
        """A group is ready when its last deployment is not still running."""
        try:
            health = cd.last_deployment(application, group)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc))
        return self._status_in(health, GROUP_READY)

    def wait_for_deployment(self, cd: CodeDeployClient, deployment_id: str) -> StepOutcome:
        """Wait until the deployment leaves the in-flight states."""
        check = DeploymentCheck(
            self.logger, cd, deployment_id, self.settle_polls, self.log_every
        )
        try:
            self.waiter.wait(check)
        except WaitTimeout:
            return StepOutcome.failed(ERR_TIMEOUT, {"deploymentId": deployment_id})
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), {"deploymentId": deployment_id})
        return StepOutcome.succeeded(check.last)

    def check_deployment(self, cd: CodeDeployClient, deployment_id: str) -> StepOutcome:
        """Fetch the final status; only Succeeded and Ready are successes."""
        try:
            health = cd.deployment(deployment_id)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), {"deploymentId": deployment_id})

        outcome = self._status_in(health, DEPLOYMENT_SUCCEEDED)
        if outcome:
            self.logger.event(
                Severity.SUCCESS,
                EVENT_DEPLOY,
                {"deploymentId": deployment_id, "status": health.status},
            )
        return outcome

    @staticmethod
    def _status_in(health: DeploymentHealth, valid: tuple[str, ...]) -> StepOutcome:
        if health.status in valid:
            return StepOutcome.succeeded(health)
        context = {"status": health.status, "validStatuses": list(valid)}
        if health.error:
            context["error"] = health.error
        return StepOutcome.failed(ERR_HEALTH.format(status=health.status), context)


class CodeDeployDeployer:
    """Start a CodeDeploy deployment from an S3 revision."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(
        self,
        cd: CodeDeployClient,
        bucket: str,
        key: str,
        application: str,
        group: str,
        configuration: str,
        description: str,
    ) -> StepOutcome:
        context = {
            "codeDeployApplication": application,
            "codeDeployConfiguration": configuration,
            "codeDeployGroup": group,
            "bucket": bucket,
            "object": key,
        }
        request = {
            "applicationName": application,
            "deploymentGroupName": group,
            "deploymentConfigName": configuration,
            "description": description,
            "ignoreApplicationStopFailures": False,
            "fileExistsBehavior": "OVERWRITE",
            "revision": {
                "revisionType": "S3",
                "s3Location": {
                    "bucket": bucket,
                    "key": key,
                    "bundleType": detect_bundle_type(key),
                },
            },
        }

        try:
            deployment_id = cd.create_deployment(request)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), context)

        context["codeDeployID"] = deployment_id
        self.logger.event(Severity.INFO, EVENT_DEPLOY, context)
        return StepOutcome.succeeded(deployment_id)


@dataclass(frozen=True)
class CodeDeployConfig:
    """Resolved configuration for one CodeDeploy release."""

    codedeploy: CodeDeployClient
    s3: ArtifactStore
    region: str | None
    application: str
    group: str
    configuration: str
    bucket: str
    source: str
    remote_path: str
    description: str

    def summary(self) -> dict[str, Any]:
        return {
            "Region": self.region,
            "Application": self.application,
            "Deployment group": self.group,
            "Deployment configuration": self.configuration,
            "Bucket": self.bucket,
            "Source": self.source,
            "Remote path": self.remote_path,
        }


class CodeDeployConfigurator:
    """Resolve the CodeDeploy configuration from a release target."""

    def __init__(
        self,
        logger: EventLogger,
        base_url: str,
        clients: ClientsFactory = AWSClientFactory,
        clock: Clock = utc_now,
    ):
        self.logger = logger
        self.base_url = base_url
        self.clients = clients
        self.clock = clock

    def __call__(self, release: Release) -> CodeDeployConfig | None:
        params = required_parameters(
            release, [PARAM_APPLICATION, PARAM_GROUP, PARAM_BUCKET], self.logger
        )
        if params is None:
            return None

        sdk = connect(release, ["codedeploy", "s3"], self.logger, self.clients)
        if sdk is None:
            return None

        target = release.target
        template = target.parameter(PARAM_REMOTE_PATH) or DEFAULT_ARCHIVE_FILE
        return CodeDeployConfig(
            codedeploy=CodeDeployAdapter(sdk["codedeploy"]),
            s3=S3Adapter(sdk["s3"]),
            region=target.region,
            application=params[PARAM_APPLICATION],
            group=params[PARAM_GROUP],
            configuration=target.parameter(PARAM_CONFIGURATION) or DEFAULT_CONFIGURATION,
            bucket=params[PARAM_BUCKET],
            source=target.parameter(PARAM_SOURCE) or DEFAULT_SOURCE,
            remote_path=render_remote_path(template, release, self.clock()),
            description=deployment_description(release, self.base_url),
        )


@dataclass
class CodeDeployContext(PipelineContext):
    config: CodeDeployConfig | None = None
    artifact: Path | None = None
    uploaded_key: str | None = None
    deployment_id: str | None = None


class CodeDeployDeployPlatform(JobPlatform):
    """Release through CodeDeploy with an S3 revision."""

    job_types = (Release,)

    def __init__(
        self,
        logger: EventLogger,
        waiter: Waiter,
        settings: Settings | None = None,
        reporter: Reporter | None = None,
        *,
        configurator: Callable[[Release], CodeDeployConfig | None] | None = None,
    ):
        super().__init__(logger, reporter)
        settings = settings or Settings()
        self.configurator = configurator or CodeDeployConfigurator(logger, settings.base_url)
        self.compressor = Compressor(logger)
        self.uploader = ArtifactUploader(logger)
        self.deployer = CodeDeployDeployer(logger)
        self.verifier = CodeDeployVerifier(
            logger, waiter, settings.settle_polls, settings.log_every
        )

    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> CodeDeployContext:
        return CodeDeployContext(
            job=job, execution=execution, workspace=workspace, cleanup=cleanup
        )

    def stages(self) -> list[Stage]:
        return [
            Stage(STEP_1_CONFIGURING, ERR_CONFIGURATOR, self._configure, writes="config"),
            Stage(
                STEP_2_GROUP_HEALTH,
                ERR_GROUP_HEALTH,
                lambda ctx: self.verifier.is_group_healthy(
                    ctx.config.codedeploy, ctx.config.application, ctx.config.group
                ),
                reads=("config",),
            ),
            Stage(
                STEP_3_COMPRESSING,
                ERR_COMPRESSOR,
                lambda ctx: self.compressor(
                    ctx.workspace, ctx.config.source, ctx.config.remote_path
                ),
                reads=("config",),
                writes="artifact",
            ),
            Stage(
                STEP_4_UPLOADING,
                ERR_UPLOADER,
                lambda ctx: self.uploader(
                    ctx.config.s3,
                    ctx.artifact,
                    ctx.config.bucket,
                    ctx.config.remote_path,
                    release_metadata(ctx.job),
                ),
                reads=("config", "artifact"),
                writes="uploaded_key",
            ),
            Stage(
                STEP_5_DEPLOYING,
                ERR_DEPLOYER,
                lambda ctx: self.deployer(
                    ctx.config.codedeploy,
                    ctx.config.bucket,
                    ctx.uploaded_key,
                    ctx.config.application,
                    ctx.config.group,
                    ctx.config.configuration,
                    ctx.config.description,
                ),
                reads=("config", "uploaded_key"),
                writes="deployment_id",
            ),
            Stage(
                STEP_6_WAITING,
                ERR_WAITER,
                lambda ctx: self.verifier.wait_for_deployment(
                    ctx.config.codedeploy, ctx.deployment_id
                ),
                reads=("config", "deployment_id"),
            ),
            Stage(
                STEP_7_VERIFYING,
                ERR_VERIFIER,
                lambda ctx: self.verifier.check_deployment(
                    ctx.config.codedeploy, ctx.deployment_id
                ),
                reads=("config", "deployment_id"),
            ),
        ]

    def _configure(self, ctx: CodeDeployContext) -> StepOutcome:
        config = self.configurator(ctx.job)
        if config is None:
            return StepOutcome.failed()
        self.reporter.listing("Platform configuration:", config.summary())
        return StepOutcome.succeeded(config)
