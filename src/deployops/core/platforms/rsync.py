"""Release a build to a single server with rsync over ssh.

The job directory is mirrored into the target path. Optional
``rsync_before`` and ``rsync_after`` commands from the application
configuration run on the server, inside the target path, around the sync.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from deployops.core.configuration import stage_environment
from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Job, JobExecution, Release
from deployops.core.pipeline import (
    CleanupStack,
    JobPlatform,
    PipelineContext,
    Reporter,
    Stage,
    StepOutcome,
)
from deployops.core.process import Executor, ProcessRunner, run_command
from deployops.core.remoting import rsync_to, ssh
from deployops.core.settings import Settings

PARAM_SERVERS = "servers"
PARAM_REMOTE_PATH = "remote_path"

STEP_1_CONFIGURING = "Rsync Platform - Validating configuration"
STEP_2_VERIFYING = "Rsync Platform - Verifying target directory is writeable"
STEP_3_PRE_RUNNING = "Rsync Platform - Running before deploy commands"
STEP_4_DEPLOYING = "Rsync Platform - Deploying code to server"
STEP_5_POST_RUNNING = "Rsync Platform - Running after deploy commands"

ERR_CONFIGURATOR = "Rsync deploy platform is not configured correctly"
ERR_VERIFIER = "Could not verify target directory is writeable"
ERR_PRE_RUNNER = "Before deploy commands could not be ran successfully"
ERR_DEPLOYER = "Code could not be deployed to server"
ERR_POST_RUNNER = "After deploy commands could not be ran successfully"

NOTE_NO_BEFORE_COMMANDS = "Skipping before deploy commands: none found"
NOTE_NO_AFTER_COMMANDS = "Skipping after deploy commands: none found"

ERR_NO_SERVERS = "No Rsync servers defined"
ERR_TOO_MANY_SERVERS = "Too many Rsync servers defined"
ERR_NO_REMOTE_PATH = "No Rsync remote path defined"

EVENT_VERIFY = "Verify target directory"
EVENT_DEPLOY = "Code Deployment"
EVENT_COMMAND = "Run remote command"
EVENT_COMMAND_CUSTOM = 'Run remote command "{command}"'

_SHORT_COMMAND = re.compile(r"^[^\n\r]{1,25}$")


def command_message(
    command: str,
    generic: str = EVENT_COMMAND,
    custom: str = EVENT_COMMAND_CUSTOM,
) -> str:
    """Name short commands in their event message."""
    if _SHORT_COMMAND.match(command):
        return custom.format(command=command)
    return generic


@dataclass(frozen=True)
class RsyncConfig:
    """Resolved configuration for one rsync release."""

    user: str
    server: str
    remote_path: str
    environment: Mapping[str, str] = field(default_factory=dict)

    @property
    def sync_path(self) -> str:
        return f"{self.user}@{self.server}:{self.remote_path}"

    def summary(self) -> dict[str, Any]:
        return {
            "Remote user": self.user,
            "Remote server": self.server,
            "Remote path": self.remote_path,
            "Sync path": self.sync_path,
        }


class RsyncConfigurator:
    """Resolve the single target server and its command environment."""

    def __init__(self, logger: EventLogger, ssh_user: str):
        self.logger = logger
        self.ssh_user = ssh_user

    def __call__(self, release: Release, execution: JobExecution) -> RsyncConfig | None:
        target = release.target
        servers = (target.parameter(PARAM_SERVERS) if target else None) or ""
        server_list = [s.strip() for s in servers.split(",") if s.strip()]

        if not server_list:
            self.logger.event(Severity.INFO, ERR_NO_SERVERS)
            return None

        # Multiple servers per target are not supported.
        if len(server_list) > 1:
            self.logger.event(Severity.INFO, ERR_TOO_MANY_SERVERS, {"servers": server_list})
            return None

        remote_path = target.parameter(PARAM_REMOTE_PATH)
        if remote_path is None:
            self.logger.event(Severity.INFO, ERR_NO_REMOTE_PATH)
            return None

        hostname = server_list[0]
        env = stage_environment(release, execution.config)
        env.update(HAL_HOSTNAME=hostname, HAL_PATH=remote_path)
        return RsyncConfig(
            user=self.ssh_user,
            server=hostname,
            remote_path=remote_path,
            environment=env,
        )


class RemoteCommandRunner:
    """Run configured commands on the target server, inside the target path."""

    def __init__(self, logger: EventLogger, executor: Executor, timeout: float | None = None):
        self.logger = logger
        self.executor = executor
        self.timeout = timeout

    def __call__(self, config: RsyncConfig, commands: Sequence[str]) -> StepOutcome:
        chdir = f"cd {shlex.quote(config.remote_path)} && "
        for command in commands:
            outcome = run_command(
                self.executor,
                ssh(config.user, config.server, chdir + command, config.environment),
                self.logger,
                command_message(command),
                timeout=self.timeout,
                display=command,
            )
            if not outcome:
                return outcome
        return StepOutcome.succeeded()


@dataclass
class RsyncContext(PipelineContext):
    config: RsyncConfig | None = None


class RsyncDeployPlatform(JobPlatform):
    """Release by mirroring the job directory onto one server."""

    job_types = (Release,)

    def __init__(
        self,
        logger: EventLogger,
        settings: Settings | None = None,
        reporter: Reporter | None = None,
        *,
        executor: Executor | None = None,
        configurator: Callable[[Release, JobExecution], RsyncConfig | None] | None = None,
    ):
        super().__init__(logger, reporter)
        settings = settings or Settings()
        self.timeout = settings.command_timeout
        self.executor = executor or ProcessRunner(settings.command_timeout)
        self.configurator = configurator or RsyncConfigurator(logger, settings.ssh_user)
        self.commands = RemoteCommandRunner(logger, self.executor, self.timeout)

    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> RsyncContext:
        return RsyncContext(job=job, execution=execution, workspace=workspace, cleanup=cleanup)

    def stages(self) -> list[Stage]:
        return [
            Stage(STEP_1_CONFIGURING, ERR_CONFIGURATOR, self._configure, writes="config"),
            Stage(STEP_2_VERIFYING, ERR_VERIFIER, self._verify, reads=("config",)),
            Stage(
                STEP_3_PRE_RUNNING,
                ERR_PRE_RUNNER,
                lambda ctx: self._run_commands(ctx, "rsync_before", NOTE_NO_BEFORE_COMMANDS),
                reads=("config",),
            ),
            Stage(STEP_4_DEPLOYING, ERR_DEPLOYER, self._deploy, reads=("config",)),
            Stage(
                STEP_5_POST_RUNNING,
                ERR_POST_RUNNER,
                lambda ctx: self._run_commands(ctx, "rsync_after", NOTE_NO_AFTER_COMMANDS),
                reads=("config",),
            ),
        ]

    def _configure(self, ctx: RsyncContext) -> StepOutcome:
        config = self.configurator(ctx.job, ctx.execution)
        if config is None:
            return StepOutcome.failed()
        self.reporter.listing("Platform configuration:", config.summary())
        return StepOutcome.succeeded(config)

    def _verify(self, ctx: RsyncContext) -> StepOutcome:
        config = ctx.config
        return run_command(
            self.executor,
            ssh(config.user, config.server, f"test -w {shlex.quote(config.remote_path)}"),
            self.logger,
            EVENT_VERIFY,
            timeout=self.timeout,
        )

    def _run_commands(self, ctx: RsyncContext, key: str, skip_note: str) -> StepOutcome:
        commands = list(ctx.execution.parameter(key) or [])
        if not commands:
            self.reporter.note(skip_note)
            return StepOutcome.succeeded()

        self.reporter.listing("Commands:", commands)
        return self.commands(ctx.config, commands)

    def _deploy(self, ctx: RsyncContext) -> StepOutcome:
        config = ctx.config
        excludes = list(ctx.execution.parameter("rsync_exclude") or [])
        command = rsync_to(
            str(ctx.workspace / "job"),
            config.user,
            config.server,
            config.remote_path,
            excludes,
        )
        return run_command(
            self.executor,
            command,
            self.logger,
            EVENT_DEPLOY,
            timeout=self.timeout,
        )
