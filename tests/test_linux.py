from pathlib import Path

import pytest

from deployops.core.events import MemoryEventLogger, Severity
from deployops.core.jobs import Build, JobExecution
from deployops.core.packing import TarPacker
from deployops.core.platforms.linux import (
    ERR_BUILDER,
    ERR_NO_BUILDER,
    IMPORT_FILE,
    LinuxBuildPlatform,
    LinuxConfigurator,
    container_name,
    step_message,
)
from deployops.core.process import ProcessResult
from deployops.core.settings import Settings


class _ExecutorStub:
    """Succeeds unless ``failing`` appears in the remote command; fakes scp downloads."""

    def __init__(self, build_output: Path, failing: str | None = None):
        self.build_output = build_output
        self.failing = failing
        self.commands: list[list[str]] = []

    def run(self, command, env=None, cwd=None, timeout=None):
        command = list(command)
        self.commands.append(command)
        if command[0] == "scp" and command[-1].endswith(IMPORT_FILE):
            TarPacker().pack(self.build_output, Path(command[-1]))
        failed = self.failing is not None and self.failing in command[-1]
        return ProcessResult(command=tuple(command), exit_code=1 if failed else 0)

    def remote(self) -> list[str]:
        return [c[-1] for c in self.commands if c[0] == "ssh"]


def _settings(**overrides) -> Settings:
    values = {
        "linux_builder": "builder1",
        "linux_image": "node:20",
        "linux_remote_dir": "/tmp/builds/",
        "ssh_user": "ci",
    }
    values.update(overrides)
    return Settings(**values)


def _execution(**config) -> JobExecution:
    return JobExecution("linux", "build", config)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "ws" / "job").mkdir(parents=True)
    (tmp_path / "ws" / "job" / "package.json").write_text("{}\n")
    return tmp_path / "ws"


@pytest.fixture
def build_output(tmp_path: Path) -> Path:
    (tmp_path / "out" / "dist").mkdir(parents=True)
    (tmp_path / "out" / "dist" / "app.js").write_text("console.log('built')\n")
    return tmp_path / "out"


@pytest.mark.parametrize(
    "job_id, expected",
    [("b-123", "deployops-b-123"), ("Job 7/A", "deployops-job-7-a")],
)
def test_container_name(job_id, expected):
    assert container_name(job_id) == expected


def test_step_message_names_short_commands_only():
    assert step_message("npm ci", 1, 3) == 'Build step [1/3] "npm ci"'
    assert step_message("x" * 81, 2, 3) == "Build step [2/3]"


def test_configurator_picks_a_builder_and_resolves_default_image():
    config = LinuxConfigurator(
        MemoryEventLogger(), _settings(linux_builder="a, b ,"), choose=lambda hosts: hosts[-1]
    )(Build(id="b-1", application="app"), _execution(build=["npm ci"], image="default"))

    assert config.host == "b"
    assert config.image == "node:20"
    assert config.remote_file == "/tmp/builds/hal-job-b-1.tgz"
    assert config.environment["HAL_BUILDID"] == "b-1"


def test_configurator_without_builder_fails():
    logger = MemoryEventLogger()

    config = LinuxConfigurator(logger, _settings(linux_builder=" , "))(
        Build(id="b-1", application="app"), _execution(build=["make"])
    )

    assert config is None
    assert logger.messages(Severity.INFO) == [ERR_NO_BUILDER]


def test_build_round_trip_replaces_job_directory(workspace: Path, build_output: Path):
    logger = MemoryEventLogger()
    executor = _ExecutorStub(build_output)
    platform = LinuxBuildPlatform(logger, _settings(), executor=executor)

    ok = platform(
        Build(id="b-1", application="app"),
        _execution(build=["npm ci", "npm run build"], image="node:18"),
        workspace,
    )

    assert ok is True
    assert logger.failures() == []
    assert (workspace / "job" / "dist" / "app.js").exists()
    assert not (workspace / "job" / "package.json").exists()

    remote = executor.remote()
    assert remote[0] == "mkdir -p /tmp/builds"
    assert remote[1].startswith("docker run --detach --name deployops-b-1")
    assert "node:18" in remote[1]
    assert remote[3] == "docker exec deployops-b-1 sh -c 'npm ci'"
    assert remote[4] == "docker exec deployops-b-1 sh -c 'npm run build'"
    # Cleanup runs last in, first out.
    assert remote[-2:] == [
        "docker rm --force deployops-b-1",
        "rm -f /tmp/builds/hal-job-b-1.tgz",
    ]


def test_failed_step_skips_the_rest_and_still_cleans_up(workspace: Path, build_output: Path):
    logger = MemoryEventLogger()
    executor = _ExecutorStub(build_output, failing="'npm test'")
    platform = LinuxBuildPlatform(logger, _settings(), executor=executor)

    ok = platform(
        Build(id="b-1", application="app"),
        _execution(build=["npm ci", "npm test", "npm run build", "npm pack"]),
        workspace,
    )

    assert ok is False
    failure = logger.failures()[0]
    assert failure.message == ERR_BUILDER
    assert failure.context["command"] == "npm test"
    assert "Skipping 2 remaining build steps" in logger.messages(Severity.INFO)
    assert not any("npm run build" in c for c in executor.remote())
    assert executor.remote()[-2:] == [
        "docker rm --force deployops-b-1",
        "rm -f /tmp/builds/hal-job-b-1.tgz",
    ]
    assert (workspace / "job" / "package.json").exists()


def test_container_is_removed_when_it_fails_to_start(workspace: Path, build_output: Path):
    logger = MemoryEventLogger()
    executor = _ExecutorStub(build_output, failing="docker run")
    platform = LinuxBuildPlatform(logger, _settings(), executor=executor)

    ok = platform(Build(id="b-1", application="app"), _execution(build=["npm ci"]), workspace)

    assert ok is False
    assert not any(c.startswith("docker exec") for c in executor.remote())
    assert executor.remote()[-2:] == [
        "docker rm --force deployops-b-1",
        "rm -f /tmp/builds/hal-job-b-1.tgz",
    ]


def test_remote_archive_is_removed_when_the_transfer_fails(workspace: Path, build_output: Path):
    logger = MemoryEventLogger()
    executor = _ExecutorStub(build_output, failing="/tmp/builds/hal-job-b-1.tgz")
    platform = LinuxBuildPlatform(logger, _settings(), executor=executor)

    ok = platform(Build(id="b-1", application="app"), _execution(build=["npm ci"]), workspace)

    assert ok is False
    assert not any(c.startswith("docker run") for c in executor.remote())
    assert executor.remote()[-1] == "rm -f /tmp/builds/hal-job-b-1.tgz"
