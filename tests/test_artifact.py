import tarfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from deployops.core.events import MemoryEventLogger
from deployops.core.jobs import Release
from deployops.core.packing import archive_format
from deployops.core.platforms.artifact import (
    ERR_ALREADY_EXISTS,
    ERR_SOURCE_NOT_FOUND,
    ERR_SOURCE_NOT_VALID,
    ArtifactUploader,
    Compressor,
    deployment_description,
    render_remote_path,
    resolve_source,
)


def _release() -> Release:
    return Release(id="r-9", application="shop", environment="staging")


def test_render_remote_path_expands_every_variable_in_utc():
    eastern = timezone(timedelta(hours=-5))
    now = datetime(2024, 1, 31, 22, 15, 0, tzinfo=eastern)

    path = render_remote_path("$APP/$APPID/$ENV/$DATE/$TIME/$JOBID.zip", _release(), now)

    assert path == "shop/shop/staging/20240201/031500/r-9.zip"


def test_deployment_description_links_back_to_the_job():
    description = deployment_description(_release(), "https://hal.example.com/")

    assert description == "[staging]https://hal.example.com/release/r-9"


@pytest.mark.parametrize(
    "name, expected",
    [("a.zip", "zip"), ("a.tgz", "tgz"), ("a.tar.gz", "tgz"), ("a.tar", None)],
)
def test_archive_format(name, expected):
    assert archive_format(name) == expected


def test_resolve_source_stays_inside_the_job_directory(tmp_path: Path):
    assert resolve_source(tmp_path, ".") == (tmp_path / "job").resolve()
    assert resolve_source(tmp_path, "/dist/") == (tmp_path / "job" / "dist").resolve()
    assert resolve_source(tmp_path, "../secrets") is None


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "job" / "dist").mkdir(parents=True)
    (tmp_path / "job" / "dist" / "index.html").write_text("<h1>hi</h1>\n")
    return tmp_path


def test_compressor_packs_directory_contents(workspace: Path):
    outcome = Compressor(MemoryEventLogger())(workspace, "dist", "app/r-9.tar.gz")

    assert outcome.data == workspace / "build_export.tar.gz"
    with tarfile.open(outcome.data) as tar:
        assert tar.getnames() == ["index.html"]


def test_compressor_matches_zip_remote_path(workspace: Path):
    outcome = Compressor(MemoryEventLogger())(workspace, "dist", "app/r-9.zip")

    assert outcome.data.name == "build_export.zip"


@pytest.mark.parametrize(
    "source, error",
    [("missing", ERR_SOURCE_NOT_FOUND), ("../../etc", ERR_SOURCE_NOT_VALID)],
)
def test_compressor_rejects_bad_sources(workspace: Path, source: str, error: str):
    outcome = Compressor(MemoryEventLogger())(workspace, source, "r-9.tar.gz")

    assert not outcome
    assert outcome.error == error


class _Store:
    def __init__(self, exists=False, error=None):
        self.exists = exists
        self.error = error
        self.uploaded: list[str] = []

    def object_exists(self, bucket, key):
        return self.exists

    def upload_file(self, path, bucket, key, metadata=None):
        if self.error:
            raise self.error
        self.uploaded.append(key)


def test_uploader_refuses_to_overwrite(tmp_path: Path):
    store = _Store(exists=True)

    outcome = ArtifactUploader(MemoryEventLogger())(store, tmp_path / "a.zip", "b", "k.zip")

    assert outcome.error == ERR_ALREADY_EXISTS
    assert store.uploaded == []


def test_uploader_reports_remote_errors(tmp_path: Path):
    error = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")

    outcome = ArtifactUploader(MemoryEventLogger())(_Store(error=error), tmp_path, "b", "k")

    assert not outcome
    assert "denied" in outcome.error
    assert outcome.context["bucket"] == "b"
