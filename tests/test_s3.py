import hashlib
from datetime import datetime, timezone
from pathlib import Path

import pytest

from deployops.core.adapters.s3 import S3Adapter
from deployops.core.events import MemoryEventLogger
from deployops.core.jobs import JobExecution, Release, Target
from deployops.core.models import SyncResult
from deployops.core.platforms.s3 import (
    ERR_UPLOADER,
    ERR_VALIDATOR,
    ERR_VERIFIER,
    METHOD_ARTIFACT,
    METHOD_SYNC,
    S3Config,
    S3Configurator,
    S3DeployPlatform,
    sync_prefix,
)


class _StoreStub:
    def __init__(self, bucket: bool = True, verify: bool = True):
        self.bucket = bucket
        self.verify = verify
        self.uploads: list[tuple[str, str, dict]] = []
        self.synced: list[tuple[Path, str, str]] = []
        self.checks = 0

    def bucket_exists(self, bucket):
        return self.bucket

    def object_exists(self, bucket, key):
        # First check guards against overwrites, later ones verify the upload.
        self.checks += 1
        return self.checks > 1 and self.verify

    def upload_file(self, path, bucket, key, metadata=None):
        self.uploads.append((path.name, key, dict(metadata or {})))

    def sync_directory(self, source, bucket, prefix, metadata=None):
        self.synced.append((source, bucket, prefix))
        return SyncResult(uploaded=["a"], skipped=["b"], removed=[])


def _release(**parameters) -> Release:
    return Release(
        id="r-1",
        application="app",
        environment="prod",
        build_id="b-1",
        target=Target(platform="s3", region="us-east-1", parameters=parameters),
    )


def _platform(logger, store, method=METHOD_ARTIFACT, source=".", remote_path="app/r-1.tgz"):
    config = S3Config(
        s3=store,
        region="us-east-1",
        bucket="bucket",
        method=method,
        source=source,
        remote_path=remote_path,
    )
    return S3DeployPlatform(logger, configurator=lambda release: config)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "job" / "dist").mkdir(parents=True)
    (tmp_path / "job" / "dist" / "index.html").write_text("<h1>hi</h1>\n")
    return tmp_path


@pytest.mark.parametrize(
    "remote_path, expected",
    [(".", ""), ("./site", "site"), ("/site/", "site/"), ("site/v2", "site/v2")],
)
def test_sync_prefix(remote_path, expected):
    assert sync_prefix(remote_path) == expected


def test_artifact_mode_packs_uploads_and_verifies(workspace: Path):
    logger = MemoryEventLogger()
    store = _StoreStub()

    platform = _platform(logger, store, source="dist")

    ok = platform(_release(), JobExecution("s3", "deploy"), workspace)

    assert ok is True
    assert store.uploads == [
        (
            "build_export.tar.gz",
            "app/r-1.tgz",
            {"Build": "b-1", "Release": "r-1", "Environment": "prod"},
        )
    ]


def test_artifact_mode_uploads_existing_archive_as_is(workspace: Path):
    (workspace / "job" / "site.zip").write_bytes(b"PK")
    store = _StoreStub()

    platform = _platform(MemoryEventLogger(), store, source="site.zip", remote_path="site.zip")

    assert platform(_release(), JobExecution("s3", "deploy"), workspace)
    assert store.uploads[0][0] == "site.zip"


def test_sync_mode_mirrors_directory_and_skips_verification(workspace: Path):
    logger = MemoryEventLogger()
    store = _StoreStub()

    platform = _platform(logger, store, METHOD_SYNC, source="dist", remote_path="./site")

    assert platform(_release(), JobExecution("s3", "deploy"), workspace) is True
    assert store.synced == [(workspace / "job" / "dist", "bucket", "site")]
    assert store.uploads == []
    assert store.checks == 0
    assert logger.events[-1].context["uploaded"] == 1


def test_sync_mode_requires_a_directory(workspace: Path):
    logger = MemoryEventLogger()
    platform = _platform(
        logger, _StoreStub(), METHOD_SYNC, source="dist/index.html", remote_path="."
    )

    assert platform(_release(), JobExecution("s3", "deploy"), workspace) is False
    assert logger.failures()[0].message == ERR_UPLOADER


@pytest.mark.parametrize("source", ["missing", "../../etc"])
def test_invalid_source_fails_validation(workspace: Path, source: str):
    logger = MemoryEventLogger()

    platform = _platform(logger, _StoreStub(), source=source)

    assert platform(_release(), JobExecution("s3", "deploy"), workspace) is False
    assert logger.failures()[0].message == ERR_VALIDATOR


def test_missing_object_after_upload_fails_verification(workspace: Path):
    logger = MemoryEventLogger()

    platform = _platform(logger, _StoreStub(verify=False), source="dist")

    assert platform(_release(), JobExecution("s3", "deploy"), workspace) is False
    assert logger.failures()[0].message == ERR_VERIFIER


def test_configurator_rejects_unknown_method():
    logger = MemoryEventLogger()

    config = S3Configurator(logger)(_release(bucket="bucket", method="ftp"))

    assert config is None
    assert logger.events[0].context == {"validMethods": ["artifact", "sync"]}


def test_configurator_renders_remote_path_template():
    def clients(region, credential):
        return lambda service: object()

    configurator = S3Configurator(
        MemoryEventLogger(),
        clients=clients,
        clock=lambda: datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc),
    )

    config = configurator(_release(bucket="bucket", path="$APPID/$ENV/$DATE-$TIME-$JOBID.zip"))

    assert config.remote_path == "app/prod/20240506-070809-r-1.zip"
    assert config.method == METHOD_ARTIFACT


class _BotoS3Stub:
    def __init__(self, objects: dict[str, str]):
        self.objects = objects
        self.uploaded: list[tuple[str, dict | None]] = []
        self.deleted: list[str] = []

    def get_paginator(self, name):
        objects = self.objects

        class _Paginator:
            def paginate(self, Bucket, Prefix):
                yield {
                    "Contents": [
                        {"Key": k, "ETag": f'"{v}"'}
                        for k, v in objects.items()
                        if k.startswith(Prefix)
                    ]
                }

        return _Paginator()

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        self.uploaded.append((key, ExtraArgs))

    def delete_object(self, Bucket, Key):
        self.deleted.append(Key)


def test_sync_directory_uploads_changes_and_removes_stale_objects(tmp_path: Path):
    (tmp_path / "same.txt").write_text("unchanged\n")
    (tmp_path / "css").mkdir()
    (tmp_path / "css" / "new.css").write_text("body {}\n")
    same = hashlib.md5(b"unchanged\n").hexdigest()
    client = _BotoS3Stub({"site/same.txt": same, "site/old.txt": "x", "other/keep.txt": "y"})

    result = S3Adapter(client).sync_directory(tmp_path, "bucket", "/site/", {"Release": "r-1"})

    assert result.uploaded == ["site/css/new.css"]
    assert result.skipped == ["site/same.txt"]
    assert result.removed == ["site/old.txt"]
    assert client.uploaded == [("site/css/new.css", {"Metadata": {"Release": "r-1"}})]
    assert client.deleted == ["site/old.txt"]
