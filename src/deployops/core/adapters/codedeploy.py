from __future__ import annotations

from typing import Any, Mapping

from deployops.core.models import DeploymentHealth


class CodeDeployAdapter:
    """Adapter around the boto3 CodeDeploy client."""

    def __init__(self, client):
        """Create a CodeDeploy adapter for an authenticated boto3 client."""
        self.client = client

    def deployment(self, deployment_id: str) -> DeploymentHealth:
        """Return the current status of a deployment."""
        response = self.client.get_deployment(deploymentId=deployment_id)
        info = response.get("deploymentInfo") or {}
        return DeploymentHealth(
            deployment_id=info.get("deploymentId", deployment_id),
            status=str(info.get("status") or "Unknown"),
            overview=dict(info.get("deploymentOverview") or {}),
            error=str((info.get("errorInformation") or {}).get("message") or ""),
        )

    def last_deployment(self, application: str, group: str) -> DeploymentHealth:
        """
        Return the last attempted deployment of a deployment group.

        Groups that never deployed report status "None".
        """
        response = self.client.get_deployment_group(
            applicationName=application,
            deploymentGroupName=group,
        )
        info = response.get("deploymentGroupInfo") or {}
        last = info.get("lastAttemptedDeployment") or {}
        if not last:
            return DeploymentHealth(deployment_id="", status="None")
        return DeploymentHealth(
            deployment_id=str(last.get("deploymentId") or ""),
            status=str(last.get("status") or "None"),
        )

    def create_deployment(self, request: Mapping[str, Any]) -> str:
        """Start a deployment and return its id."""
        response = self.client.create_deployment(**request)
        return response["deploymentId"]
