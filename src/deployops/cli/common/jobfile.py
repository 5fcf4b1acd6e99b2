"""Load build and release descriptions from YAML job files.

A job file holds exactly one of ``build`` or ``release`` and the workspace
the job runs in::

    workspace: /var/deployops/workspaces/r-1234
    release:
      id: r-1234
      application: storefront
      environment: prod
      build_id: b-5678
      target:
        platform: codedeploy
        region: us-east-1
        parameters:
          application: storefront
          group: storefront-prod
          bucket: storefront-artifacts

The application's ``.hal.yml`` is read from ``<workspace>/job``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from deployops.core.configuration import read_configuration
from deployops.core.jobs import Build, Credential, Job, Release, Target

JOB_KEYS = ("id", "application", "environment", "reference", "commit")
CREDENTIAL_KEYS = ("profile", "access_key_id", "secret_access_key", "session_token")


class JobFileError(ValueError):
    """Raised when a job file is missing, unreadable or malformed."""


@dataclass(frozen=True)
class JobFile:
    """A loaded job file."""

    job: Build | Release
    workspace: Path
    config: Mapping[str, Any]

    def summary(self) -> dict[str, Any]:
        job = self.job
        items: dict[str, Any] = {
            "Job": f"{job.type} {job.id}",
            "Application": job.application,
            "Environment": job.environment or "-",
            "Workspace": str(self.workspace),
            "Build platform": self.config.get("platform"),
        }
        if isinstance(job, Release) and job.target is not None:
            items["Build"] = job.build_id or "-"
            items["Deploy platform"] = job.target.platform
            items["Region"] = job.target.region or "-"
        return items


def _mapping(doc: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = doc.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise JobFileError(f'Job file key "{key}" must be a mapping')
    return value


def _job_fields(raw: Mapping[str, Any]) -> dict[str, str]:
    fields = {k: str(raw[k]) for k in JOB_KEYS if raw.get(k) is not None}
    missing = [k for k in ("id", "application") if not fields.get(k)]
    if missing:
        raise JobFileError(f"Job file is missing: {', '.join(missing)}")
    return fields


def _target(raw: Mapping[str, Any]) -> Target | None:
    if not raw:
        return None
    if not raw.get("platform"):
        raise JobFileError("Release target is missing: platform")

    credential = {
        k: str(v) for k, v in _mapping(raw, "credential").items() if k in CREDENTIAL_KEYS and v
    }
    parameters = _mapping(raw, "parameters")
    return Target(
        platform=str(raw["platform"]),
        region=str(raw["region"]) if raw.get("region") else None,
        parameters={str(k): "" if v is None else str(v) for k, v in parameters.items()},
        credential=Credential(**credential) if credential else None,
    )


def parse_job(doc: Mapping[str, Any]) -> Job:
    """Build the Build or Release described by a parsed job file."""
    has_build = "build" in doc
    has_release = "release" in doc
    if has_build == has_release:
        raise JobFileError('Job file must define exactly one of "build" or "release"')

    if has_build:
        return Build(**_job_fields(_mapping(doc, "build")))

    raw = _mapping(doc, "release")
    return Release(
        **_job_fields(raw),
        build_id=str(raw.get("build_id") or ""),
        target=_target(_mapping(raw, "target")),
    )


def load_job_file(path: Path, workspace: Path | None = None) -> JobFile:
    """
    Read a job file and the application configuration from its workspace.

    Args:
        path: YAML job file.
        workspace: Overrides the workspace named in the file.

    Raises:
        JobFileError: If the file or its workspace is invalid.
        ConfigurationError: If the application's .hal.yml is invalid.
    """
    try:
        doc = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise JobFileError(f"Job file could not be read: {exc}") from exc
    except yaml.YAMLError as exc:
        raise JobFileError("Job file is not valid YAML") from exc

    if not isinstance(doc, dict):
        raise JobFileError("Job file must be a YAML mapping")

    job = parse_job(doc)

    root = workspace or (Path(str(doc["workspace"])) if doc.get("workspace") else None)
    if root is None:
        raise JobFileError("Job file is missing: workspace")
    root = root.expanduser()
    if not (root / "job").is_dir():
        raise JobFileError(f"Workspace has no job directory: {root / 'job'}")

    return JobFile(job=job, workspace=root, config=read_configuration(root / "job"))
