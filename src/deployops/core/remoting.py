"""Command lines for reaching remote hosts over ssh, scp and rsync."""

from __future__ import annotations

import shlex
from typing import Iterable, Mapping

SSH_OPTIONS = (
    "-o",
    "BatchMode=yes",
    "-o",
    "StrictHostKeyChecking=accept-new",
)


def export_prefix(env: Mapping[str, str]) -> str:
    """Return "export K=V && " for a remote shell, or "" for an empty env."""
    if not env:
        return ""
    pairs = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in sorted(env.items()))
    return f"export {pairs} && "


def ssh(
    user: str,
    host: str,
    remote_command: str,
    env: Mapping[str, str] | None = None,
) -> list[str]:
    """Build an ssh invocation running ``remote_command`` on ``host``."""
    return ["ssh", *SSH_OPTIONS, f"{user}@{host}", export_prefix(env or {}) + remote_command]


def scp_to(user: str, host: str, local: str, remote: str) -> list[str]:
    return ["scp", *SSH_OPTIONS, local, f"{user}@{host}:{remote}"]


def scp_from(user: str, host: str, remote: str, local: str) -> list[str]:
    return ["scp", *SSH_OPTIONS, f"{user}@{host}:{remote}", local]


def rsync_to(
    source: str,
    user: str,
    host: str,
    remote_path: str,
    excludes: Iterable[str] = (),
) -> list[str]:
    """
    Build an outgoing rsync that mirrors ``source`` into ``remote_path``.

    Files removed from the source are deleted on the target, except for
    excluded paths.
    """
    command = [
        "rsync",
        "--recursive",
        "--links",
        "--perms",
        "--times",
        "--delete",
        "--compress",
        "-e",
        "ssh " + " ".join(SSH_OPTIONS),
    ]
    command.extend(f"--exclude={e}" for e in excludes if e)
    command.extend([source.rstrip("/") + "/", f"{user}@{host}:{remote_path}"])
    return command
