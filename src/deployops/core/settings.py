"""Runtime settings read from DEPLOYOPS_* environment variables.

Unparseable values fall back to the default instead of failing, so a typo in
a tuning knob never prevents a deployment from starting.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return max(int(raw), minimum)
    except ValueError:
        return default


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return default


def _str(env: Mapping[str, str], name: str, default: str) -> str:
    raw = (env.get(name) or "").strip()
    return raw or default


@dataclass(frozen=True)
class Settings:
    """
    Tuning and infrastructure settings.

    Attributes:
        wait_interval: Seconds between convergence polls.
        wait_attempts: Maximum number of convergence polls, at least
            settle_polls + 1 when loaded from the environment.
        settle_polls: Polls ignored before a terminal status is trusted.
        log_every: Emit a progress event every Nth poll.
        eb_settle_seconds: Extra wait after a Beanstalk update before the
            final health check.
        ssm_start_delay: Seconds to wait after sending an SSM command.
        command_timeout: Timeout in seconds for local and remote commands.
        ssh_user: User for ssh, scp and rsync connections.
        linux_builder: Host running Docker for Linux builds.
        linux_image: Default Docker image for Linux builds.
        linux_remote_dir: Scratch directory on the Linux builder.
        windows_tag: EC2 tag filter locating the Windows builder.
        windows_bucket: S3 bucket used to move files to the Windows builder.
        windows_region: AWS region of the Windows builder.
        base_url: Base URL used in deployment descriptions.
    """

    wait_interval: float = 10.0
    wait_attempts: int = 90
    settle_polls: int = 3
    log_every: int = 9
    eb_settle_seconds: float = 30.0
    ssm_start_delay: float = 5.0
    command_timeout: float = 1800.0
    ssh_user: str = "deploy"
    linux_builder: str = "localhost"
    linux_image: str = "ubuntu:22.04"
    linux_remote_dir: str = "/tmp/deployops"
    windows_tag: str = "deployops-builder=windows"
    windows_bucket: str = ""
    windows_region: str = "us-east-1"
    base_url: str = "http://localhost"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Load settings, honoring DEPLOYOPS_* overrides."""
        env = os.environ if env is None else env
        d = cls()
        settle_polls = _int(env, "DEPLOYOPS_SETTLE_POLLS", d.settle_polls)
        # Convergence checks report done no earlier than poll settle_polls + 1
        wait_attempts = max(
            _int(env, "DEPLOYOPS_WAIT_ATTEMPTS", d.wait_attempts, 1), settle_polls + 1
        )
        return cls(
            wait_interval=_float(env, "DEPLOYOPS_WAIT_INTERVAL", d.wait_interval),
            wait_attempts=wait_attempts,
            settle_polls=settle_polls,
            log_every=_int(env, "DEPLOYOPS_LOG_EVERY", d.log_every, 1),
            eb_settle_seconds=_float(env, "DEPLOYOPS_EB_SETTLE_SECONDS", d.eb_settle_seconds),
            ssm_start_delay=_float(env, "DEPLOYOPS_SSM_START_DELAY", d.ssm_start_delay),
            command_timeout=_float(env, "DEPLOYOPS_COMMAND_TIMEOUT", d.command_timeout),
            ssh_user=_str(env, "DEPLOYOPS_SSH_USER", d.ssh_user),
            linux_builder=_str(env, "DEPLOYOPS_LINUX_BUILDER", d.linux_builder),
            linux_image=_str(env, "DEPLOYOPS_LINUX_IMAGE", d.linux_image),
            linux_remote_dir=_str(env, "DEPLOYOPS_LINUX_REMOTE_DIR", d.linux_remote_dir),
            windows_tag=_str(env, "DEPLOYOPS_WINDOWS_TAG", d.windows_tag),
            windows_bucket=_str(env, "DEPLOYOPS_WINDOWS_BUCKET", d.windows_bucket),
            windows_region=_str(env, "DEPLOYOPS_WINDOWS_REGION", d.windows_region),
            base_url=_str(env, "DEPLOYOPS_BASE_URL", d.base_url).rstrip("/"),
        )
