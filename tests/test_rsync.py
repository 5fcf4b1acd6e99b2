from pathlib import Path

import pytest

from deployops.core.events import MemoryEventLogger, Severity
from deployops.core.jobs import JobExecution, Release, Target
from deployops.core.platforms.rsync import (
    ERR_NO_REMOTE_PATH,
    ERR_NO_SERVERS,
    ERR_POST_RUNNER,
    ERR_TOO_MANY_SERVERS,
    RsyncConfigurator,
    RsyncDeployPlatform,
    command_message,
)
from deployops.core.process import ProcessResult
from deployops.core.remoting import rsync_to
from deployops.core.settings import Settings


class _ExecutorStub:
    def __init__(self, failing: str | None = None):
        self.failing = failing
        self.commands: list[list[str]] = []

    def run(self, command, env=None, cwd=None, timeout=None):
        self.commands.append(list(command))
        failed = self.failing is not None and self.failing in command[-1]
        return ProcessResult(command=tuple(command), exit_code=1 if failed else 0)


def _release(**parameters) -> Release:
    return Release(
        id="r-1",
        application="app",
        environment="prod",
        target=Target(platform="rsync", parameters=parameters),
    )


def _execution(**config) -> JobExecution:
    return JobExecution("rsync", "deploy", config)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "job").mkdir()
    return tmp_path


@pytest.mark.parametrize(
    "command, expected",
    [
        ("make", 'Run remote command "make"'),
        ("x" * 26, "Run remote command"),
        ("one\ntwo", "Run remote command"),
    ],
)
def test_command_message(command, expected):
    assert command_message(command) == expected


@pytest.mark.parametrize(
    "parameters, message",
    [
        ({"remote_path": "/srv/app"}, ERR_NO_SERVERS),
        ({"servers": " , ", "remote_path": "/srv/app"}, ERR_NO_SERVERS),
        ({"servers": "a.example,b.example", "remote_path": "/srv/app"}, ERR_TOO_MANY_SERVERS),
        ({"servers": "a.example"}, ERR_NO_REMOTE_PATH),
    ],
)
def test_configurator_requires_exactly_one_server_and_a_path(parameters, message):
    logger = MemoryEventLogger()

    config = RsyncConfigurator(logger, "deploy")(_release(**parameters), _execution())

    assert config is None
    assert logger.messages(Severity.INFO) == [message]


def test_configurator_exposes_host_and_path_to_commands():
    config = RsyncConfigurator(MemoryEventLogger(), "deploy")(
        _release(servers=" web1.example ", remote_path="/srv/app"), _execution()
    )

    assert config.sync_path == "deploy@web1.example:/srv/app"
    assert config.environment["HAL_HOSTNAME"] == "web1.example"
    assert config.environment["HAL_PATH"] == "/srv/app"
    assert config.environment["HAL_RELEASEID"] == "r-1"


def test_rsync_command_mirrors_job_directory():
    command = rsync_to("/tmp/ws/job/", "deploy", "web1", "/srv/app", ["cache", ""])

    assert command[0] == "rsync"
    assert "--delete" in command
    assert "--exclude=cache" in command
    assert command[-2:] == ["/tmp/ws/job/", "deploy@web1:/srv/app"]


def test_release_verifies_runs_hooks_and_syncs(workspace: Path):
    logger = MemoryEventLogger()
    executor = _ExecutorStub()
    platform = RsyncDeployPlatform(logger, Settings(ssh_user="deploy"), executor=executor)

    ok = platform(
        _release(servers="web1", remote_path="/srv/app"),
        _execution(rsync_before=["stop"], rsync_after=["start"], rsync_exclude=["cache"]),
        workspace,
    )

    assert ok is True
    programs = [c[0] for c in executor.commands]
    assert programs == ["ssh", "ssh", "rsync", "ssh"]
    assert executor.commands[0][-1] == "test -w /srv/app"
    assert executor.commands[1][-1].endswith("cd /srv/app && stop")
    assert "HAL_HOSTNAME=web1" in executor.commands[1][-1]
    assert executor.commands[2][-1] == "deploy@web1:/srv/app"
    assert executor.commands[2][-2] == f"{workspace / 'job'}/"


def test_hooks_are_skipped_when_not_configured(workspace: Path):
    executor = _ExecutorStub()
    platform = RsyncDeployPlatform(MemoryEventLogger(), executor=executor)

    ok = platform(_release(servers="web1", remote_path="/srv/app"), _execution(), workspace)

    assert ok is True
    assert [c[0] for c in executor.commands] == ["ssh", "rsync"]


def test_failing_after_command_fails_the_release(workspace: Path):
    logger = MemoryEventLogger()
    platform = RsyncDeployPlatform(logger, executor=_ExecutorStub(failing="start"))

    ok = platform(
        _release(servers="web1", remote_path="/srv/app"),
        _execution(rsync_after=["start", "notify"]),
        workspace,
    )

    assert ok is False
    assert [f.message for f in logger.failures()] == [ERR_POST_RUNNER]
