"""Run commands on EC2 instances through AWS Systems Manager.

A command is sent, polled through the Waiter until it leaves the in-flight
states, then its invocation is fetched once more to classify the result.
A timeout means the outcome on the instance is unknown; it is reported as
a failure without assuming the command stopped.
"""

from __future__ import annotations

import time
from typing import Callable, Mapping, Protocol, Sequence

from deployops.core.auth import REMOTE_ERRORS
from deployops.core.events import EventLogger, Severity
from deployops.core.models import CommandInvocation
from deployops.core.pipeline import StepOutcome
from deployops.core.waiter import Waiter, WaitTimeout

EVENT_MESSAGE = "Run SSM Command"
ERR_WAITING = "Waited for command to finish, but the operation timed out."
ERR_NO_INVOCATION = "Command invocation could not be found"

TYPE_POWERSHELL = "AWS-RunPowerShellScript"
TYPE_SHELL = "AWS-RunShellScript"

IN_FLIGHT = frozenset({"Pending", "InProgress", "Delayed"})


class SSMCommands(Protocol):
    """Interface for sending commands and reading invocations."""

    def send_command(
        self,
        instance_id: str,
        document: str,
        parameters: Mapping[str, Sequence[str]],
        timeout_seconds: int = 30,
    ) -> str:
        ...

    def invocation(self, command_id: str, instance_id: str) -> CommandInvocation | None:
        ...


class SSMCommandRunner:
    """
    Send an SSM command and wait for it to finish.

    The last invocation's output, error output and exit code are kept on the
    runner so callers can read results of commands like "download file".
    """

    def __init__(
        self,
        logger: EventLogger,
        waiter: Waiter,
        start_delay: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger
        self.waiter = waiter
        self.start_delay = start_delay
        self._sleep = sleep
        self.last: CommandInvocation | None = None

    @property
    def last_status(self) -> dict:
        last = self.last
        return {
            "output": last.output if last else "",
            "errorOutput": last.error_output if last else "",
            "exitCode": last.exit_code if last else None,
        }

    def __call__(
        self,
        ssm: SSMCommands,
        instance_id: str,
        document: str,
        parameters: Mapping[str, Sequence[str]],
        message: str = EVENT_MESSAGE,
        always_log: bool = False,
    ) -> StepOutcome:
        self.last = None
        context = {
            "instance": instance_id,
            "document": document,
            "parameters": {k: "\n".join(v) for k, v in parameters.items()},
        }

        try:
            command_id = ssm.send_command(instance_id, document, parameters)

            # GetCommandInvocation fails when called right after SendCommand
            if self.start_delay > 0:
                self._sleep(self.start_delay)

            try:
                self.waiter.wait(lambda: self._finished(ssm, command_id, instance_id))
            except WaitTimeout:
                return StepOutcome.failed(ERR_WAITING, context)

            invocation = ssm.invocation(command_id, instance_id)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), context)

        if invocation is None:
            return StepOutcome.failed(ERR_NO_INVOCATION, context)

        self.last = invocation
        context.update(
            {
                "status": invocation.status,
                "exitCode": invocation.exit_code,
                "output": invocation.output,
                "errorOutput": invocation.error_output,
            }
        )

        if not invocation.succeeded:
            return StepOutcome.failed(f"{message}: {invocation.status}", context)

        if always_log:
            self.logger.event(Severity.SUCCESS, message, context)
        return StepOutcome.succeeded(invocation)

    @staticmethod
    def _finished(ssm: SSMCommands, command_id: str, instance_id: str) -> bool:
        invocation = ssm.invocation(command_id, instance_id)
        if invocation is None:
            return False
        return invocation.status not in IN_FLIGHT
