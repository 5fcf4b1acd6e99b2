"""Artifact steps shared by the S3, CodeDeploy and Elastic Beanstalk platforms.

These platforms deploy the same way up to the provider specific call: pack
a directory of the release workspace, upload the archive to S3 under a
templated key, then hand the object to the provider.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping, Protocol

from deployops.core.auth import REMOTE_ERRORS
from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Release
from deployops.core.packing import archive_format, packer_for
from deployops.core.pipeline import StepOutcome

Clock = Callable[[], datetime]

PARAM_BUCKET = "bucket"
PARAM_SOURCE = "source"
PARAM_REMOTE_PATH = "path"

DEFAULT_SOURCE = "."
DEFAULT_ARCHIVE_FILE = "$JOBID.tar.gz"
EXPORT_FILE = "build_export"

EVENT_PACK = "Pack deployment into revision archive"
EVENT_UPLOAD = "Upload artifact to S3"

ERR_SOURCE_NOT_VALID = "Invalid release directory specified"
ERR_SOURCE_NOT_FOUND = "Release directory not found"
ERR_ALREADY_EXISTS = "Artifact already exists in the S3 bucket"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactStore(Protocol):
    """Interface for the S3 operations used by artifact uploads."""

    def object_exists(self, bucket: str, key: str) -> bool:
        ...

    def upload_file(
        self,
        path: Path,
        bucket: str,
        key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        ...


def render_remote_path(template: str, release: Release, now: datetime | None = None) -> str:
    """
    Expand $JOBID, $APPID, $APP, $ENV, $DATE and $TIME in an object key template.

    Dates and times are rendered in UTC as YYYYMMDD and HHMMSS.
    """
    now = (now or utc_now()).astimezone(timezone.utc)
    replacements = {
        "JOBID": release.id,
        "APPID": release.application,
        "APP": release.application,
        "ENV": release.environment,
        "DATE": now.strftime("%Y%m%d"),
        "TIME": now.strftime("%H%M%S"),
    }
    # Longest names first so $APPID is not consumed by $APP
    for name in sorted(replacements, key=len, reverse=True):
        template = template.replace(f"${name}", replacements[name])
    return template


def deployment_description(release: Release, base_url: str) -> str:
    """Return "[env]base_url/release/id", used to trace deployments back to a job."""
    return f"[{release.environment}]{base_url.rstrip('/')}/{release.type}/{release.id}"


def resolve_source(workspace: Path, source: str) -> Path | None:
    """Return ``source`` below ``workspace/job``, or None if it escapes it."""
    job_dir = (workspace / "job").resolve()
    path = (job_dir / source.strip("/")).resolve()
    if path != job_dir and job_dir not in path.parents:
        return None
    return path


class Compressor:
    """Pack a release directory into a local archive."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(self, workspace: Path, source: str, remote_path: str) -> StepOutcome:
        """
        Pack ``workspace/job/<source>`` into an archive matching ``remote_path``.

        A source that is already a supported archive file is used as is.

        Returns:
            An outcome carrying the local archive path.
        """
        path = resolve_source(workspace, source)
        if path is None:
            return StepOutcome.failed(ERR_SOURCE_NOT_VALID, {"path": source})
        if not path.exists():
            return StepOutcome.failed(ERR_SOURCE_NOT_FOUND, {"path": source})

        if path.is_file():
            return StepOutcome.succeeded(path)

        suffix = ".zip" if archive_format(remote_path) == "zip" else ".tar.gz"
        archive = workspace / f"{EXPORT_FILE}{suffix}"
        try:
            packer_for(archive.name).pack(path, archive)
        except OSError as exc:
            return StepOutcome.failed(str(exc), {"path": source})

        self.logger.event(
            Severity.SUCCESS,
            EVENT_PACK,
            {"source": str(path), "archive": str(archive), "size": archive.stat().st_size},
        )
        return StepOutcome.succeeded(archive)


class ArtifactUploader:
    """Upload an archive to S3 without overwriting an existing object."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(
        self,
        s3: ArtifactStore,
        artifact: Path,
        bucket: str,
        key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> StepOutcome:
        context = {"bucket": bucket, "object": key, "artifact": str(artifact)}
        try:
            if s3.object_exists(bucket, key):
                return StepOutcome.failed(ERR_ALREADY_EXISTS, context)
            s3.upload_file(artifact, bucket, key, metadata)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), context)
        except OSError as exc:
            return StepOutcome.failed(str(exc), context)

        self.logger.event(Severity.SUCCESS, EVENT_UPLOAD, context)
        return StepOutcome.succeeded(key)


def release_metadata(release: Release) -> dict[str, str]:
    """Object metadata linking an uploaded artifact to its release."""
    return {"Job": release.id, "Environment": release.environment}
