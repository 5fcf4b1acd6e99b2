"""Release an application version to an Elastic Beanstalk environment.

The environment must be Ready before anything is uploaded. The release is
registered as an application version labelled with the release id; an
existing label is never overwritten. After the update is requested the
environment is polled while it reports "Updating", then given time for its
health checks to settle. Only a Ready environment with Green health counts
as a successful release.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Protocol

from deployops.core.adapters.beanstalk import BeanstalkAdapter
from deployops.core.adapters.s3 import S3Adapter
from deployops.core.auth import AWSClientFactory, REMOTE_ERRORS
from deployops.core.events import EventLogger, Severity
from deployops.core.formatting import render_rows
from deployops.core.jobs import Job, JobExecution, Release
from deployops.core.models import BeanstalkEvent, EnvironmentHealth
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
PARAM_ENVIRONMENT = "environment"

STATUS_READY = "Ready"
STATUS_UPDATING = "Updating"
STATUS_INVALID = "Invalid"
HEALTH_GREEN = "Green"

STEP_1_CONFIGURING = "EB Platform - Validating EB configuration"
STEP_2_HEALTH_CHECK = "EB Platform - Checking EB Environment health"
STEP_3_COMPRESSING = "EB Platform - Compressing source"
STEP_4_UPLOADING = "EB Platform - Uploading artifacts to S3 bucket"
STEP_5_PUSHING = "EB Platform - Deploying artifact to ElasticBeanstalk"
STEP_6_DEPLOYMENT_VERIFY = "EB Platform - Checking EB Environment health after deployment"

ERR_CONFIGURATOR = "ElasticBeanstalk deploy platform is not configured correctly"
ERR_ENVIRONMENT_HEALTH = "Elastic Beanstalk environment is not ready"
ERR_COMPRESSOR = "The source directory could not be compressed"
ERR_UPLOADER = "The artifact(s) could not be uploaded to the S3 Bucket"
ERR_DEPLOYER = "The artifact(s) could not be pushed to the ElasticBeanstalk"
ERR_VERIFIER = "Elastic Beanstalk deployment was not successful"

EVENT_MESSAGE = "Code Deployment"
EVENT_HEALTH = "Elastic Beanstalk environment health"
ERR_ALREADY_EXISTS = "Application version already exists"
ERR_WAITING = "Waited for deployment to finish, but the operation timed out."
ERR_UNHEALTHY = 'Environment finished with status "{status}" and health "{health}"'
ERR_NOT_READY = 'Environment has invalid status "{status}"'
INFO_STILL_DEPLOYING = "Still deploying. Latest status: {status}"
INFO_WAITING_HEALTH_CHECK = "Deployment finished. Waiting for health check"

NUM_RECENT_EVENTS = 25


class BeanstalkClient(Protocol):
    """Interface for the Elastic Beanstalk operations used by the platform."""

    def environment_health(self, application: str, environment: str) -> EnvironmentHealth:
        ...

    def recent_events(
        self, application: str, environment: str, max_records: int = NUM_RECENT_EVENTS
    ) -> list[BeanstalkEvent]:
        ...

    def version_exists(self, application: str, version_label: str) -> bool:
        ...

    def create_application_version(
        self,
        application: str,
        version_label: str,
        description: str,
        bucket: str,
        key: str,
    ) -> None:
        ...

    def update_environment(self, environment: str, version_label: str) -> None:
        ...


def render_events(events: list[BeanstalkEvent]) -> str:
    return render_rows(
        ["Time", "Severity", "Message"],
        [(e.date, e.severity, e.message) for e in events],
        [30, 10, 60],
    )


class EnvironmentHealthChecker:
    """Read environment status and health, with the recent event history."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(
        self,
        eb: BeanstalkClient,
        application: str,
        environment: str,
    ) -> EnvironmentHealth:
        """
        Return the environment health.

        API errors are reported as status "Invalid" instead of raising.
        """
        try:
            return eb.environment_health(application, environment)
        except REMOTE_ERRORS:
            return EnvironmentHealth(environment=environment, status=STATUS_INVALID, health="")

    def history(self, eb: BeanstalkClient, application: str, environment: str) -> str:
        """Return the recent environment events as a text table."""
        try:
            events = eb.recent_events(application, environment, NUM_RECENT_EVENTS)
        except REMOTE_ERRORS as exc:
            return f"Could not load event history: {exc}"
        return render_events(events)

    def is_ready(self, eb: BeanstalkClient, application: str, environment: str) -> StepOutcome:
        health = self(eb, application, environment)
        context = {**asdict(health), "eventHistory": self.history(eb, application, environment)}
        if health.status != STATUS_READY:
            return StepOutcome.failed(ERR_NOT_READY.format(status=health.status), context)

        self.logger.event(Severity.INFO, EVENT_HEALTH, context)
        return StepOutcome.succeeded(health)


class BeanstalkDeployer:
    """Register an application version and deploy it to an environment."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(
        self,
        eb: BeanstalkClient,
        application: str,
        environment: str,
        bucket: str,
        key: str,
        version_label: str,
        description: str,
    ) -> StepOutcome:
        context = {
            "elasticBeanstalkApplication": application,
            "elasticBeanstalkEnvironment": environment,
            "version": version_label,
            "bucket": bucket,
            "object": key,
        }

        try:
            if eb.version_exists(application, version_label):
                return StepOutcome.failed(ERR_ALREADY_EXISTS, context)
            eb.create_application_version(application, version_label, description, bucket, key)
            eb.update_environment(environment, version_label)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), context)

        self.logger.event(Severity.INFO, EVENT_MESSAGE, context)
        return StepOutcome.succeeded(version_label)


class UpdateCheck:
    """
    Waiter predicate polling an environment while it is updating.

    The first ``settle_polls`` polls never report completion, since an
    environment may still report its previous state right after the update
    request.
    """

    def __init__(
        self,
        logger: EventLogger,
        health: EnvironmentHealthChecker,
        eb: BeanstalkClient,
        application: str,
        environment: str,
        settle_polls: int = 3,
        log_every: int = 9,
    ):
        self.logger = logger
        self.health = health
        self.eb = eb
        self.application = application
        self.environment = environment
        self.settle_polls = settle_polls
        self.poll = PollState(log_every=log_every)

    def __call__(self) -> bool:
        health = self.health(self.eb, self.application, self.environment)

        if self.poll.iteration >= self.settle_polls and health.status != STATUS_UPDATING:
            return True

        if self.poll.tick():
            self.logger.event(
                Severity.INFO,
                INFO_STILL_DEPLOYING.format(status=health.status),
                asdict(health),
            )
        return False


class DeploymentVerifier:
    """Wait for an environment update to finish and check the result."""

    def __init__(
        self,
        logger: EventLogger,
        health: EnvironmentHealthChecker,
        waiter: Waiter,
        settle_seconds: float = 30.0,
        settle_polls: int = 3,
        log_every: int = 9,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger
        self.health = health
        self.waiter = waiter
        self.settle_seconds = settle_seconds
        self.settle_polls = settle_polls
        self.log_every = log_every
        self.sleep = sleep

    def __call__(self, eb: BeanstalkClient, application: str, environment: str) -> StepOutcome:
        check = UpdateCheck(
            self.logger,
            self.health,
            eb,
            application,
            environment,
            self.settle_polls,
            self.log_every,
        )
        try:
            self.waiter.wait(check)
        except WaitTimeout:
            # The update may still succeed; its outcome is unknown.
            return StepOutcome.failed(ERR_WAITING, {"elasticBeanstalkEnvironment": environment})

        self.logger.event(Severity.INFO, INFO_WAITING_HEALTH_CHECK)
        if self.settle_seconds > 0:
            self.sleep(self.settle_seconds)

        health = self.health(eb, application, environment)
        context = asdict(health)
        if health.status == STATUS_READY and health.health == HEALTH_GREEN:
            self.logger.event(Severity.SUCCESS, EVENT_MESSAGE, context)
            return StepOutcome.succeeded(health)

        context["eventHistory"] = self.health.history(eb, application, environment)
        return StepOutcome.failed(
            ERR_UNHEALTHY.format(status=health.status, health=health.health), context
        )


@dataclass(frozen=True)
class BeanstalkConfig:
    """Resolved configuration for one Elastic Beanstalk release."""

    eb: BeanstalkClient
    s3: ArtifactStore
    region: str | None
    application: str
    environment: str
    bucket: str
    source: str
    remote_path: str
    description: str

    def summary(self) -> dict[str, Any]:
        return {
            "Region": self.region,
            "Application": self.application,
            "Environment": self.environment,
            "Bucket": self.bucket,
            "Source": self.source,
            "Remote path": self.remote_path,
        }


class BeanstalkConfigurator:
    """Resolve the Elastic Beanstalk configuration from a release target."""

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

    def __call__(self, release: Release) -> BeanstalkConfig | None:
        params = required_parameters(
            release, [PARAM_APPLICATION, PARAM_ENVIRONMENT, PARAM_BUCKET], self.logger
        )
        if params is None:
            return None

        sdk = connect(release, ["elasticbeanstalk", "s3"], self.logger, self.clients)
        if sdk is None:
            return None

        target = release.target
        template = target.parameter(PARAM_REMOTE_PATH) or DEFAULT_ARCHIVE_FILE
        return BeanstalkConfig(
            eb=BeanstalkAdapter(sdk["elasticbeanstalk"]),
            s3=S3Adapter(sdk["s3"]),
            region=target.region,
            application=params[PARAM_APPLICATION],
            environment=params[PARAM_ENVIRONMENT],
            bucket=params[PARAM_BUCKET],
            source=target.parameter(PARAM_SOURCE) or DEFAULT_SOURCE,
            remote_path=render_remote_path(template, release, self.clock()),
            description=deployment_description(release, self.base_url),
        )


@dataclass
class BeanstalkContext(PipelineContext):
    config: BeanstalkConfig | None = None
    artifact: Path | None = None
    uploaded_key: str | None = None
    version_label: str | None = None


class BeanstalkDeployPlatform(JobPlatform):
    """Release through Elastic Beanstalk with an S3 source bundle."""

    job_types = (Release,)

    def __init__(
        self,
        logger: EventLogger,
        waiter: Waiter,
        settings: Settings | None = None,
        reporter: Reporter | None = None,
        *,
        configurator: Callable[[Release], BeanstalkConfig | None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(logger, reporter)
        settings = settings or Settings()
        self.configurator = configurator or BeanstalkConfigurator(logger, settings.base_url)
        self.health = EnvironmentHealthChecker(logger)
        self.compressor = Compressor(logger)
        self.uploader = ArtifactUploader(logger)
        self.deployer = BeanstalkDeployer(logger)
        self.verifier = DeploymentVerifier(
            logger,
            self.health,
            waiter,
            settle_seconds=settings.eb_settle_seconds,
            settle_polls=settings.settle_polls,
            log_every=settings.log_every,
            sleep=sleep,
        )

    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> BeanstalkContext:
        return BeanstalkContext(
            job=job, execution=execution, workspace=workspace, cleanup=cleanup
        )

    def stages(self) -> list[Stage]:
        return [
            Stage(STEP_1_CONFIGURING, ERR_CONFIGURATOR, self._configure, writes="config"),
            Stage(
                STEP_2_HEALTH_CHECK,
                ERR_ENVIRONMENT_HEALTH,
                lambda ctx: self.health.is_ready(
                    ctx.config.eb, ctx.config.application, ctx.config.environment
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
                STEP_5_PUSHING,
                ERR_DEPLOYER,
                lambda ctx: self.deployer(
                    ctx.config.eb,
                    ctx.config.application,
                    ctx.config.environment,
                    ctx.config.bucket,
                    ctx.uploaded_key,
                    ctx.job.id,
                    ctx.config.description,
                ),
                reads=("config", "uploaded_key"),
                writes="version_label",
            ),
            Stage(
                STEP_6_DEPLOYMENT_VERIFY,
                ERR_VERIFIER,
                lambda ctx: self.verifier(
                    ctx.config.eb, ctx.config.application, ctx.config.environment
                ),
                reads=("config", "version_label"),
            ),
        ]

    def _configure(self, ctx: BeanstalkContext) -> StepOutcome:
        config = self.configurator(ctx.job)
        if config is None:
            return StepOutcome.failed()
        self.reporter.listing("Platform configuration:", config.summary())
        return StepOutcome.succeeded(config)
