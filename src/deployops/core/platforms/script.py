"""Run a stage's configured commands on the agent itself.

Used as the deploy target for applications that ship their own deployment
scripts, and for local builds. Commands run one at a time through the
shell, from the job directory, and the first failing command stops the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from deployops.core.configuration import stage_environment
from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Build, Job, JobExecution, Release
from deployops.core.pipeline import (
    CleanupStack,
    JobPlatform,
    PipelineContext,
    Reporter,
    Stage,
    StepOutcome,
)
from deployops.core.platforms.rsync import command_message
from deployops.core.process import Executor, ProcessRunner, run_command
from deployops.core.settings import Settings

STEP_1_CONFIGURING = "Script Platform - Validating script configuration"
STEP_2_EXECUTING = "Script Platform - Executing script"

ERR_CONFIGURATOR = "Script deploy platform is not configured correctly"
ERR_EXECUTOR = "There was an error executing the script"

ERR_NO_COMMANDS = 'No commands configured for stage "{stage}"'
ERR_NO_JOB_DIR = "Job directory not found"

EVENT_COMMAND = "Run command"
EVENT_COMMAND_CUSTOM = 'Run command "{command}"'


@dataclass(frozen=True)
class ScriptConfig:
    commands: list[str]
    cwd: Path
    environment: Mapping[str, str] = field(default_factory=dict)


@dataclass
class ScriptContext(PipelineContext):
    config: ScriptConfig | None = None


class ScriptPlatform(JobPlatform):
    """Run stage commands locally in ``workspace/job``."""

    job_types = (Build, Release)

    def __init__(
        self,
        logger: EventLogger,
        settings: Settings | None = None,
        reporter: Reporter | None = None,
        *,
        executor: Executor | None = None,
        shell: str = "/bin/sh",
    ):
        super().__init__(logger, reporter)
        settings = settings or Settings()
        self.timeout = settings.command_timeout
        self.executor = executor or ProcessRunner(settings.command_timeout)
        self.shell = shell

    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> ScriptContext:
        return ScriptContext(job=job, execution=execution, workspace=workspace, cleanup=cleanup)

    def stages(self) -> list[Stage]:
        return [
            Stage(STEP_1_CONFIGURING, ERR_CONFIGURATOR, self._configure, writes="config"),
            Stage(STEP_2_EXECUTING, ERR_EXECUTOR, self._execute, reads=("config",)),
        ]

    def _configure(self, ctx: ScriptContext) -> StepOutcome:
        commands = ctx.execution.steps()
        if not commands:
            return StepOutcome.failed(ERR_NO_COMMANDS.format(stage=ctx.execution.stage))

        cwd = ctx.workspace / "job"
        if not cwd.is_dir():
            return StepOutcome.failed(ERR_NO_JOB_DIR, {"path": str(cwd)})

        self.reporter.listing("Platform configuration:", {"Platform": ctx.execution.platform})
        return StepOutcome.succeeded(
            ScriptConfig(
                commands=commands,
                cwd=cwd,
                environment=stage_environment(ctx.job, ctx.execution.config),
            )
        )

    def _execute(self, ctx: ScriptContext) -> StepOutcome:
        config = ctx.config
        self.reporter.listing("Commands:", config.commands)
        for command in config.commands:
            outcome = run_command(
                self.executor,
                [self.shell, "-c", command],
                self.logger,
                command_message(command, EVENT_COMMAND, EVENT_COMMAND_CUSTOM),
                env=config.environment,
                cwd=config.cwd,
                timeout=self.timeout,
                display=command,
            )
            if not outcome:
                return outcome

        self.logger.event(
            Severity.INFO,
            "Script finished",
            {"stage": ctx.execution.stage, "commands": len(config.commands)},
        )
        return StepOutcome.succeeded()
