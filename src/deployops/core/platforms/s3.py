"""Release a build to an S3 bucket, as one artifact or as a synced directory.

In "artifact" mode the source is packed (unless it already is a file) and
uploaded under a templated key, then the object is checked for. In "sync"
mode the source directory is mirrored under a prefix: changed files are
uploaded and remote files with no local counterpart are removed.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from deployops.core.adapters.s3 import S3Adapter
from deployops.core.auth import AWSClientFactory, REMOTE_ERRORS
from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Job, JobExecution, Release
from deployops.core.models import SyncResult
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
    ArtifactUploader,
    Clock,
    Compressor,
    render_remote_path,
    resolve_source,
    utc_now,
)
from deployops.core.platforms.aws import ClientsFactory, connect, required_parameters

PARAM_METHOD = "method"

METHOD_ARTIFACT = "artifact"
METHOD_SYNC = "sync"
METHODS = (METHOD_ARTIFACT, METHOD_SYNC)

DEFAULT_SYNC_PATH = "."

STEP_1_CONFIGURING = "S3 Platform - Validating S3 configuration"
STEP_2_VALIDATING = "S3 Platform - Validating source and target bucket"
STEP_3_COMPRESSING = "S3 Platform - Compressing source"
STEP_4_UPLOADING = "S3 Platform - Uploading file(s) to S3 bucket"
STEP_5_VERIFYING = "S3 Platform - Verifying successful artifact upload"

NOTE_SKIP_COMPRESSION = "Skipping compression step: in sync mode"
NOTE_ALREADY_COMPRESSED = "Skipping compression step: source is not a directory"
NOTE_SKIP_VERIFICATION = "Skipping artifact verification step: in sync mode"
NOTE_ARTIFACT_VERIFIED = "Artifact upload successfully verified"

ERR_CONFIGURATOR = "S3 deploy platform is not configured correctly"
ERR_VALIDATOR = "Either the source or target bucket could not be validated"
ERR_COMPRESSOR = "The source directory could not be compressed"
ERR_UPLOADER = "The file(s) could not be uploaded to the S3 Bucket"
ERR_VERIFIER = "The artifact could not be verified as uploaded"

ERR_INVALID_METHOD = 'Invalid S3 upload method "{method}"'
ERR_VALIDATOR_SOURCE = "The source could not be validated"
ERR_VALIDATOR_TARGET = "The target bucket could not be validated"
ERR_SYNC_SOURCE = "Sync mode requires a source directory"
ERR_NOT_FOUND = "Uploaded artifact was not found in the S3 bucket"

EVENT_SYNC = "Sync directory to S3"


class BucketStore(Protocol):
    """Interface for the S3 operations used by the platform."""

    def bucket_exists(self, bucket: str) -> bool:
        ...

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

    def sync_directory(
        self,
        source: Path,
        bucket: str,
        prefix: str,
        metadata: Mapping[str, str] | None = None,
    ) -> SyncResult:
        ...


def sync_prefix(remote_path: str) -> str:
    """Normalize a sync destination: "." is the bucket root, leading "./" and "/" are dropped."""
    if remote_path == ".":
        return ""
    if remote_path.startswith("./"):
        return remote_path[2:]
    return remote_path.lstrip("/")


class SourceValidator:
    """Check the release source exists and the target bucket is reachable."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(self, s3: BucketStore, workspace: Path, source: str, bucket: str) -> StepOutcome:
        path = resolve_source(workspace, source)
        if path is None or not path.exists():
            return StepOutcome.failed(ERR_VALIDATOR_SOURCE, {"source": source})

        try:
            exists = s3.bucket_exists(bucket)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), {"bucket": bucket})
        if not exists:
            return StepOutcome.failed(ERR_VALIDATOR_TARGET, {"bucket": bucket})

        return StepOutcome.succeeded(path)


class SyncUploader:
    """Mirror a directory into a bucket prefix."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(
        self,
        s3: BucketStore,
        source: Path,
        bucket: str,
        remote_path: str,
        metadata: Mapping[str, str] | None = None,
    ) -> StepOutcome:
        prefix = sync_prefix(remote_path)
        context: dict[str, Any] = {"bucket": bucket, "object": prefix or "/"}
        if not source.is_dir():
            return StepOutcome.failed(ERR_SYNC_SOURCE, context)

        try:
            result = s3.sync_directory(source, bucket, prefix, metadata)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), context)
        except OSError as exc:
            return StepOutcome.failed(str(exc), context)

        context.update(
            uploaded=len(result.uploaded),
            unchanged=len(result.skipped),
            removed=len(result.removed),
        )
        self.logger.event(Severity.SUCCESS, EVENT_SYNC, context)
        return StepOutcome.succeeded(prefix)


@dataclass(frozen=True)
class S3Config:
    """Resolved configuration for one S3 release."""

    s3: BucketStore
    region: str | None
    bucket: str
    method: str
    source: str
    remote_path: str

    @property
    def is_sync(self) -> bool:
        return self.method == METHOD_SYNC

    def summary(self) -> dict[str, Any]:
        return {
            "Region": self.region,
            "Bucket": self.bucket,
            "Method": self.method,
            "Source": self.source,
            "Remote path": self.remote_path,
        }


class S3Configurator:
    """Resolve the S3 configuration from a release target."""

    def __init__(
        self,
        logger: EventLogger,
        clients: ClientsFactory = AWSClientFactory,
        clock: Clock = utc_now,
    ):
        self.logger = logger
        self.clients = clients
        self.clock = clock

    def __call__(self, release: Release) -> S3Config | None:
        params = required_parameters(release, [PARAM_BUCKET], self.logger)
        if params is None:
            return None

        target = release.target
        method = target.parameter(PARAM_METHOD) or METHOD_ARTIFACT
        if method not in METHODS:
            self.logger.event(
                Severity.INFO,
                ERR_INVALID_METHOD.format(method=method),
                {"validMethods": list(METHODS)},
            )
            return None

        sdk = connect(release, ["s3"], self.logger, self.clients)
        if sdk is None:
            return None

        default_path = DEFAULT_SYNC_PATH if method == METHOD_SYNC else DEFAULT_ARCHIVE_FILE
        template = target.parameter(PARAM_REMOTE_PATH) or default_path
        return S3Config(
            s3=S3Adapter(sdk["s3"]),
            region=target.region,
            bucket=params[PARAM_BUCKET],
            method=method,
            source=target.parameter(PARAM_SOURCE) or DEFAULT_SOURCE,
            remote_path=render_remote_path(template, release, self.clock()),
        )


def s3_metadata(release: Release) -> dict[str, str]:
    return {
        "Build": release.build_id,
        "Release": release.id,
        "Environment": release.environment,
    }


@dataclass
class S3Context(PipelineContext):
    config: S3Config | None = None
    source_path: Path | None = None
    upload: Path | None = None
    uploaded_key: str | None = None


class S3DeployPlatform(JobPlatform):
    """Release to S3 as an archive or a directory sync."""

    job_types = (Release,)

    def __init__(
        self,
        logger: EventLogger,
        reporter: Reporter | None = None,
        *,
        configurator: Callable[[Release], S3Config | None] | None = None,
    ):
        super().__init__(logger, reporter)
        self.configurator = configurator or S3Configurator(logger)
        self.validator = SourceValidator(logger)
        self.compressor = Compressor(logger)
        self.artifact_uploader = ArtifactUploader(logger)
        self.sync_uploader = SyncUploader(logger)

    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> S3Context:
        return S3Context(job=job, execution=execution, workspace=workspace, cleanup=cleanup)

    def stages(self) -> list[Stage]:
        return [
            Stage(STEP_1_CONFIGURING, ERR_CONFIGURATOR, self._configure, writes="config"),
            Stage(
                STEP_2_VALIDATING,
                ERR_VALIDATOR,
                lambda ctx: self.validator(
                    ctx.config.s3, ctx.workspace, ctx.config.source, ctx.config.bucket
                ),
                reads=("config",),
                writes="source_path",
            ),
            Stage(
                STEP_3_COMPRESSING,
                ERR_COMPRESSOR,
                self._compress,
                reads=("config", "source_path"),
                writes="upload",
            ),
            Stage(
                STEP_4_UPLOADING,
                ERR_UPLOADER,
                self._upload,
                reads=("config", "upload"),
                writes="uploaded_key",
            ),
            Stage(
                STEP_5_VERIFYING,
                ERR_VERIFIER,
                self._verify,
                reads=("config", "uploaded_key"),
            ),
        ]

    def _configure(self, ctx: S3Context) -> StepOutcome:
        config = self.configurator(ctx.job)
        if config is None:
            return StepOutcome.failed()
        self.reporter.listing("Platform configuration:", config.summary())
        return StepOutcome.succeeded(config)

    def _compress(self, ctx: S3Context) -> StepOutcome:
        if ctx.config.is_sync:
            self.reporter.note(NOTE_SKIP_COMPRESSION)
            return StepOutcome.succeeded(ctx.source_path)

        if not ctx.source_path.is_dir():
            self.reporter.note(NOTE_ALREADY_COMPRESSED)
            return StepOutcome.succeeded(ctx.source_path)

        outcome = self.compressor(ctx.workspace, ctx.config.source, ctx.config.remote_path)
        if outcome:
            self.reporter.listing(
                "Artifact:",
                {"Original": str(ctx.source_path), "Compressed": str(outcome.data)},
            )
        return outcome

    def _upload(self, ctx: S3Context) -> StepOutcome:
        config = ctx.config
        metadata = s3_metadata(ctx.job)
        if config.is_sync:
            outcome = self.sync_uploader(
                config.s3, ctx.upload, config.bucket, config.remote_path, metadata
            )
        else:
            outcome = self.artifact_uploader(
                config.s3, ctx.upload, config.bucket, config.remote_path, metadata
            )
        if outcome:
            self.reporter.listing("Metadata:", metadata)
        return outcome

    def _verify(self, ctx: S3Context) -> StepOutcome:
        if ctx.config.is_sync:
            self.reporter.note(NOTE_SKIP_VERIFICATION)
            return StepOutcome.succeeded()

        context = {"bucket": ctx.config.bucket, "object": ctx.uploaded_key}
        try:
            found = ctx.config.s3.object_exists(ctx.config.bucket, ctx.uploaded_key)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), context)
        if not found:
            return StepOutcome.failed(ERR_NOT_FOUND, context)

        self.reporter.note(NOTE_ARTIFACT_VERIFIED)
        return StepOutcome.succeeded()
