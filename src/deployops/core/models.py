"""Domain models returned by the AWS adapters.

Adapters translate boto3 response dictionaries into these frozen dataclasses
so the steps never index into raw API payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

IN_SERVICE = "InService"
OUT_OF_SERVICE = "OutOfService"


@dataclass(frozen=True)
class Instance:
    """An EC2 instance matched by a tag filter."""

    id: str
    name: str = ""
    state: str = ""
    instance_type: str = ""
    private_ip: str = ""


@dataclass(frozen=True)
class InstanceHealth:
    """
    Health of one instance as seen by a classic load balancer.

    Attributes:
        instance_id: EC2 instance id.
        state: "InService", "OutOfService" or "Unknown".
        reason_code: "ELB", "Instance" or "N/A".
        description: Free text explanation from the load balancer.
    """

    instance_id: str
    state: str
    reason_code: str = ""
    description: str = ""

    @property
    def in_service(self) -> bool:
        return self.state == IN_SERVICE

    @property
    def neutral_reason(self) -> bool:
        """True when the reason code carries no information."""
        return self.reason_code in ("", "N/A")


@dataclass(frozen=True)
class LoadBalancer:
    """A classic load balancer and its registered instances."""

    name: str
    dns_name: str = ""
    instance_ids: tuple[str, ...] = ()
    health_check_target: str = ""


@dataclass(frozen=True)
class DeploymentHealth:
    """
    Status of a CodeDeploy deployment.

    Attributes:
        deployment_id: Deployment id, empty when the group never deployed.
        status: Deployment status ("Created", "InProgress", "Succeeded"...).
            "None" when the group has no previous deployment.
        overview: Instance counts per state (Pending, InProgress, Succeeded...).
        error: Error message reported by CodeDeploy, if any.
    """

    deployment_id: str
    status: str
    overview: Mapping[str, int] = field(default_factory=dict)
    error: str = ""

    @property
    def succeeded_count(self) -> int:
        return int(self.overview.get("Succeeded", 0))

    @property
    def total_count(self) -> int:
        return sum(int(v) for v in self.overview.values())


@dataclass(frozen=True)
class EnvironmentHealth:
    """
    Status of an Elastic Beanstalk environment.

    Missing environments are reported with status "Missing" and health "Grey".
    """

    environment: str
    status: str
    health: str
    health_status: str = ""
    version_label: str = ""

    @classmethod
    def missing(cls, environment: str) -> EnvironmentHealth:
        return cls(environment=environment, status="Missing", health="Grey")


@dataclass(frozen=True)
class BeanstalkEvent:
    """A recent Elastic Beanstalk environment event."""

    date: str
    severity: str
    message: str


@dataclass(frozen=True)
class CommandInvocation:
    """Result of an SSM command on one instance."""

    command_id: str
    instance_id: str
    status: str
    output: str = ""
    error_output: str = ""
    exit_code: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "Success"


@dataclass(frozen=True)
class SyncResult:
    """Keys touched by a directory sync, each list in sorted order."""

    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
