"""Core job domain models.

This module defines the jobs the pipelines operate on (Build, Release), the
deployment target and credential a release points at, and the JobExecution
that parameterizes a single platform run. Jobs are resolved elsewhere and
consumed read-only by the pipelines.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping


@dataclass(frozen=True)
class Credential:
    """
    AWS credential attached to a deployment target.

    Attributes:
        profile: Named profile from the shared AWS config files.
        access_key_id: Static access key id.
        secret_access_key: Static secret access key.
        session_token: Optional session token for temporary credentials.
    """

    profile: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    session_token: str | None = None


@dataclass(frozen=True)
class Target:
    """
    Where a release is deployed.

    Attributes:
        platform: Deployment platform name (e.g. "elb", "codedeploy").
        region: AWS region for AWS platforms.
        parameters: Platform specific parameters (bucket, group, remote path...).
        credential: Optional AWS credential. None uses the default chain.
    """

    platform: str
    region: str | None = None
    parameters: Mapping[str, str] = field(default_factory=dict)
    credential: Credential | None = None

    def parameter(self, name: str) -> str | None:
        """Return a target parameter, or None when unset or empty."""
        value = self.parameters.get(name)
        if value is None or value == "":
            return None
        return str(value)


@dataclass(frozen=True)
class Job:
    """
    A unit of work driven through a pipeline.

    Attributes:
        id: Unique job identifier.
        application: Application identifier.
        environment: Environment name (e.g. "staging", "prod").
        reference: Git reference the job was created from.
        commit: Resolved commit SHA.
    """

    id: str
    application: str
    environment: str = ""
    reference: str = ""
    commit: str = ""

    @property
    def type(self) -> str:
        return "job"


@dataclass(frozen=True)
class Build(Job):
    """A build of an application at a specific commit."""

    @property
    def type(self) -> str:
        return "build"


@dataclass(frozen=True)
class Release(Job):
    """
    A deployment of a build to a target.

    Attributes:
        build_id: Identifier of the build being released.
        target: Deployment target.
    """

    build_id: str = ""
    target: Target | None = None

    @property
    def type(self) -> str:
        return "release"


class DeployStatus(str, Enum):
    """Value of HAL_DEPLOY_STATUS exposed to user supplied stage commands."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


DEPLOY_STATUS_VAR = "HAL_DEPLOY_STATUS"


@dataclass(frozen=True)
class JobExecution:
    """
    Parameters for one platform run.

    Attributes:
        platform: Name of the platform that executes the stage.
        stage: Stage name (e.g. "build", "deploy", "after_deploy").
        config: Application configuration (image, env, stage commands...).
    """

    platform: str
    stage: str
    config: Mapping[str, Any] = field(default_factory=dict)

    def steps(self) -> list[str]:
        """Return the commands configured for this stage."""
        return list(self.config.get(self.stage) or [])

    def parameter(self, name: str) -> Any:
        """Return a configuration value, or None when absent."""
        return self.config.get(name)

    @property
    def deploy_status(self) -> str | None:
        env = self.config.get("env") or {}
        return (env.get("global") or {}).get(DEPLOY_STATUS_VAR)

    def with_deploy_status(self, status: DeployStatus) -> JobExecution:
        """Return a copy with HAL_DEPLOY_STATUS set in the global environment."""
        config = copy.deepcopy(dict(self.config))
        env = dict(config.get("env") or {})
        global_env = dict(env.get("global") or {})
        global_env[DEPLOY_STATUS_VAR] = DeployStatus(status).value
        env["global"] = global_env
        config["env"] = env
        return replace(self, config=config)

    def for_stage(self, platform: str, stage: str) -> JobExecution:
        """Return a copy targeting another platform and stage."""
        return replace(self, platform=platform, stage=stage)
