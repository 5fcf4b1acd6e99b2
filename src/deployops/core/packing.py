"""Archive helpers used to move build workspaces between hosts."""

from __future__ import annotations

import tarfile
import zipfile
from pathlib import Path
from typing import Protocol

ARCHIVE_FORMATS = {
    ".zip": "zip",
    ".tgz": "tgz",
    ".tar.gz": "tgz",
}


def archive_format(name: str) -> str | None:
    """Return "zip" or "tgz" for a supported archive name, else None."""
    for extension, fmt in ARCHIVE_FORMATS.items():
        if name.endswith(extension):
            return fmt
    return None


class Packer(Protocol):
    """Interface for creating and extracting archives."""

    def pack(self, source_dir: Path, archive: Path) -> Path:
        ...

    def unpack(self, archive: Path, dest_dir: Path) -> Path:
        ...


class TarPacker:
    """Pack and unpack gzip compressed tarballs."""

    def pack(self, source_dir: Path, archive: Path) -> Path:
        """Archive the contents of ``source_dir`` (not the directory itself)."""
        archive.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "w:gz", dereference=True) as tar:
            for path in sorted(Path(source_dir).iterdir()):
                if path.resolve() == archive.resolve():
                    continue
                tar.add(path, arcname=path.name)
        return archive

    def unpack(self, archive: Path, dest_dir: Path) -> Path:
        """Extract ``archive`` into ``dest_dir``, creating it if needed."""
        dest_dir.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "r:*") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest_dir, filter="data")
            else:
                tar.extractall(dest_dir)
        return dest_dir


class ZipPacker:
    """Pack and unpack zip archives."""

    def pack(self, source_dir: Path, archive: Path) -> Path:
        archive.parent.mkdir(parents=True, exist_ok=True)
        source_dir = Path(source_dir)
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in sorted(source_dir.rglob("*")):
                if path.is_file() and path.resolve() != archive.resolve():
                    zf.write(path, arcname=path.relative_to(source_dir).as_posix())
        return archive

    def unpack(self, archive: Path, dest_dir: Path) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest_dir)
        return dest_dir


def packer_for(name: str) -> Packer:
    """Return the packer matching an archive name (tarball by default)."""
    if archive_format(name) == "zip":
        return ZipPacker()
    return TarPacker()
