from __future__ import annotations

from typing import Mapping, Sequence

from botocore.exceptions import ClientError

from deployops.core.models import CommandInvocation


class SSMAdapter:
    """Adapter around the boto3 Systems Manager client."""

    def __init__(self, client):
        """Create an SSM adapter for an authenticated boto3 client."""
        self.client = client

    def send_command(
        self,
        instance_id: str,
        document: str,
        parameters: Mapping[str, Sequence[str]],
        timeout_seconds: int = 30,
    ) -> str:
        """Send a command document to one instance and return the command id."""
        response = self.client.send_command(
            InstanceIds=[instance_id],
            DocumentName=document,
            TimeoutSeconds=timeout_seconds,
            Parameters={k: list(v) for k, v in parameters.items()},
        )
        return response["Command"]["CommandId"]

    def invocation(self, command_id: str, instance_id: str) -> CommandInvocation | None:
        """
        Return the invocation of a command on an instance.

        Returns None while SSM has not registered the invocation yet.
        """
        try:
            raw = self.client.get_command_invocation(
                CommandId=command_id,
                InstanceId=instance_id,
            )
        except ClientError as exc:
            code = (exc.response.get("Error") or {}).get("Code")
            if code == "InvocationDoesNotExist":
                return None
            raise
        return CommandInvocation(
            command_id=command_id,
            instance_id=instance_id,
            status=str(raw.get("Status") or ""),
            output=str(raw.get("StandardOutputContent") or ""),
            error_output=str(raw.get("StandardErrorContent") or ""),
            exit_code=raw.get("ResponseCode"),
        )
