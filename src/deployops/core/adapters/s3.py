from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Mapping

from botocore.exceptions import ClientError

from deployops.core.models import SyncResult

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


def _is_not_found(exc: ClientError) -> bool:
    code = str((exc.response.get("Error") or {}).get("Code") or "")
    return code in _NOT_FOUND_CODES


def _md5(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class S3Adapter:
    """Adapter around the boto3 S3 client."""

    def __init__(self, client):
        """Create an S3 adapter for an authenticated boto3 client."""
        self.client = client

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.client.head_bucket(Bucket=bucket)
        except ClientError as exc:
            if _is_not_found(exc):
                return False
            raise
        return True

    def object_exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _is_not_found(exc):
                return False
            raise
        return True

    def upload_file(
        self,
        path: Path,
        bucket: str,
        key: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        extra = {"Metadata": dict(metadata)} if metadata else None
        self.client.upload_file(str(path), bucket, key, ExtraArgs=extra)

    def download_file(self, bucket: str, key: str, path: Path) -> None:
        self.client.download_file(bucket, key, str(path))

    def delete_object(self, bucket: str, key: str) -> None:
        self.client.delete_object(Bucket=bucket, Key=key)

    def list_objects(self, bucket: str, prefix: str = "") -> dict[str, str]:
        """Return ``{key: etag}`` for every object under ``prefix``."""
        paginator = self.client.get_paginator("list_objects_v2")
        objects: dict[str, str] = {}
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents") or []:
                objects[obj["Key"]] = str(obj.get("ETag") or "").strip('"')
        return objects

    def sync_directory(
        self,
        source: Path,
        bucket: str,
        prefix: str,
        metadata: Mapping[str, str] | None = None,
    ) -> SyncResult:
        """
        Mirror ``source`` under ``prefix``.

        Files whose MD5 matches the remote ETag are skipped. Remote objects
        under ``prefix`` with no local counterpart are deleted.
        """
        prefix = prefix.strip("/")
        remote = self.list_objects(bucket, f"{prefix}/" if prefix else "")
        extra = {"Metadata": dict(metadata)} if metadata else None

        uploaded: list[str] = []
        skipped: list[str] = []
        local: set[str] = set()
        for path in sorted(p for p in source.rglob("*") if p.is_file()):
            relative = path.relative_to(source).as_posix()
            key = f"{prefix}/{relative}" if prefix else relative
            local.add(key)
            if remote.get(key) == _md5(path):
                skipped.append(key)
                continue
            self.client.upload_file(str(path), bucket, key, ExtraArgs=extra)
            uploaded.append(key)

        removed = sorted(set(remote) - local)
        for key in removed:
            self.client.delete_object(Bucket=bucket, Key=key)

        return SyncResult(uploaded=uploaded, skipped=skipped, removed=removed)
