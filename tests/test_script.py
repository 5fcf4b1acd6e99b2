from pathlib import Path

import pytest

from deployops.core.events import MemoryEventLogger, Severity
from deployops.core.jobs import Build, JobExecution
from deployops.core.platforms.script import ERR_CONFIGURATOR, ERR_EXECUTOR, ScriptPlatform
from deployops.core.process import ERR_TIMEOUT, ProcessResult


class _ExecutorStub:
    def __init__(self, exit_codes: dict[str, int] | None = None, timeout: str | None = None):
        self.exit_codes = exit_codes or {}
        self.timeout = timeout
        self.calls: list[tuple[tuple[str, ...], dict, Path | None]] = []

    def run(self, command, env=None, cwd=None, timeout=None):
        command = tuple(command)
        self.calls.append((command, dict(env or {}), cwd))
        script = command[-1]
        return ProcessResult(
            command=command,
            exit_code=self.exit_codes.get(script, 0),
            stdout=f"ran {script}",
            timed_out=script == self.timeout,
        )


def _execution(**config) -> JobExecution:
    return JobExecution("script", "deploy", {"env": {"global": {"COLOR": "blue"}}, **config})


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "job").mkdir()
    return tmp_path


def test_commands_run_in_order_in_the_job_directory(workspace: Path):
    logger = MemoryEventLogger()
    executor = _ExecutorStub()
    platform = ScriptPlatform(logger, executor=executor)

    ok = platform(Build(id="b-1", application="app"), _execution(deploy=["one", "two"]), workspace)

    assert ok is True
    assert [c[0] for c in executor.calls] == [("/bin/sh", "-c", "one"), ("/bin/sh", "-c", "two")]
    assert executor.calls[0][2] == workspace / "job"
    assert executor.calls[0][1]["HAL_BUILDID"] == "b-1"
    assert executor.calls[0][1]["COLOR"] == "blue"
    assert logger.messages(Severity.SUCCESS) == ['Run command "one"', 'Run command "two"']


def test_first_failing_command_stops_the_run(workspace: Path):
    logger = MemoryEventLogger()
    executor = _ExecutorStub({"two": 3})

    ok = ScriptPlatform(logger, executor=executor)(
        Build(id="b-1", application="app"), _execution(deploy=["one", "two", "three"]), workspace
    )

    assert ok is False
    assert len(executor.calls) == 2
    failure = logger.failures()[0]
    assert failure.message == ERR_EXECUTOR
    assert failure.context["exitCode"] == 3
    assert failure.context["command"] == "two"


def test_timed_out_command_fails(workspace: Path):
    logger = MemoryEventLogger()

    ok = ScriptPlatform(logger, executor=_ExecutorStub(timeout="slow"))(
        Build(id="b-1", application="app"), _execution(deploy=["slow"]), workspace
    )

    assert ok is False
    assert logger.failures()[0].context["reason"] == ERR_TIMEOUT


def test_stage_without_commands_is_misconfigured(workspace: Path):
    logger = MemoryEventLogger()
    executor = _ExecutorStub()

    ok = ScriptPlatform(logger, executor=executor)(
        Build(id="b-1", application="app"), _execution(), workspace
    )

    assert ok is False
    assert logger.failures()[0].message == ERR_CONFIGURATOR
    assert executor.calls == []
