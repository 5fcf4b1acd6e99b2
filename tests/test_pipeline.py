from dataclasses import dataclass
from pathlib import Path

import pytest

from deployops.core.events import MemoryEventLogger, Severity
from deployops.core.jobs import Build, JobExecution, Release
from deployops.core.pipeline import (
    ERR_INVALID_JOB,
    ERR_MISSING_INPUT,
    CleanupStack,
    JobPlatform,
    PipelineContext,
    Stage,
    StepOutcome,
    run_stages,
)


@dataclass
class _Context(PipelineContext):
    first: str | None = None
    second: str | None = None


def _context(tmp_path: Path, logger) -> _Context:
    return _Context(
        job=Build(id="b-1", application="app"),
        execution=JobExecution(platform="script", stage="build"),
        workspace=tmp_path,
        cleanup=CleanupStack(logger),
    )


class _Reporter:
    def __init__(self):
        self.sections: list[str] = []

    def section(self, title):
        self.sections.append(title)

    def note(self, message):
        pass

    def listing(self, title, items):
        pass


def test_step_outcome_truthiness_and_constructors():
    assert StepOutcome.succeeded("x")
    assert StepOutcome.succeeded("x").data == "x"
    assert not StepOutcome.failed("boom", {"a": 1})
    assert StepOutcome.failed("boom", {"a": 1}).context == {"a": 1}
    assert StepOutcome.of(True)
    assert StepOutcome.of(False, "nope").error == "nope"


def test_run_stages_threads_writes_into_later_reads(tmp_path: Path):
    logger = MemoryEventLogger()
    ctx = _context(tmp_path, logger)
    seen: list[str | None] = []

    def _second(c: _Context) -> StepOutcome:
        seen.append(c.first)
        return StepOutcome.succeeded("two")

    stages = [
        Stage("One", "One failed", lambda c: StepOutcome.succeeded("one"), writes="first"),
        Stage("Two", "Two failed", _second, reads=("first",), writes="second"),
    ]

    assert run_stages(stages, ctx, logger) is True
    assert seen == ["one"]
    assert ctx.second == "two"
    assert logger.failures() == []


def test_run_stages_stops_at_first_failure_with_single_event(tmp_path: Path):
    logger = MemoryEventLogger()
    reporter = _Reporter()
    calls: list[str] = []

    def _step(name, ok):
        def run(_ctx):
            calls.append(name)
            if ok:
                return StepOutcome.succeeded()
            return StepOutcome.failed("remote said no", {"id": 7})

        return run

    stages = [
        Stage("One", "One failed", _step("one", True)),
        Stage("Two", "Two failed", _step("two", False)),
        Stage("Three", "Three failed", _step("three", True)),
    ]

    assert run_stages(stages, _context(tmp_path, logger), logger, reporter) is False
    assert calls == ["one", "two"]
    assert reporter.sections == ["One", "Two"]

    failures = logger.failures()
    assert len(failures) == 1
    assert failures[0].message == "Two failed"
    assert failures[0].context == {"stage": "Two", "reason": "remote said no", "id": 7}


def test_stage_with_missing_input_fails_without_running(tmp_path: Path):
    logger = MemoryEventLogger()
    calls: list[str] = []

    def _never(_ctx):
        calls.append("ran")
        return StepOutcome.succeeded()

    stages = [Stage("Needs input", "Input missing", _never, reads=("first",))]

    assert run_stages(stages, _context(tmp_path, logger), logger) is False
    assert calls == []
    assert logger.failures()[0].context["reason"] == ERR_MISSING_INPUT
    assert logger.failures()[0].context["missing"] == ["first"]


def test_cleanup_stack_runs_lifo_and_logs_failures():
    logger = MemoryEventLogger()
    order: list[str] = []

    def _fail():
        raise OSError("gone")

    with CleanupStack(logger) as cleanup:
        cleanup.push("first", order.append, "first")
        cleanup.push("broken", _fail)
        cleanup.push("last", order.append, "last")

    assert order == ["last", "first"]
    assert logger.messages(Severity.INFO) == ["Cleanup failed: broken"]
    assert logger.events[0].context == {"error": "gone"}


class _Platform(JobPlatform):
    job_types = (Build,)

    def __init__(self, logger, boom: bool = False):
        super().__init__(logger)
        self.boom = boom
        self.released: list[str] = []

    def context(self, job, execution, workspace, cleanup):
        return _Context(job=job, execution=execution, workspace=workspace, cleanup=cleanup)

    def stages(self):
        return [
            Stage("Acquire", "Acquire failed", self._acquire, writes="first"),
            Stage("Use", "Use failed", self._use, reads=("first",)),
        ]

    def _acquire(self, ctx):
        ctx.cleanup.push("release resource", self.released.append, "resource")
        return StepOutcome.succeeded("resource")

    def _use(self, ctx):
        if self.boom:
            raise RuntimeError("unexpected")
        return StepOutcome.succeeded()


def test_platform_releases_cleanup_on_success(tmp_path: Path):
    logger = MemoryEventLogger()
    platform = _Platform(logger)

    ok = platform(Build(id="b-1", application="app"), JobExecution("script", "build"), tmp_path)

    assert ok is True
    assert platform.released == ["resource"]


def test_platform_releases_cleanup_when_a_stage_raises(tmp_path: Path):
    logger = MemoryEventLogger()
    platform = _Platform(logger, boom=True)

    with pytest.raises(RuntimeError, match="unexpected"):
        platform(Build(id="b-1", application="app"), JobExecution("script", "build"), tmp_path)

    assert platform.released == ["resource"]


def test_platform_rejects_unsupported_job_type(tmp_path: Path):
    logger = MemoryEventLogger()
    platform = _Platform(logger)

    ok = platform(Release(id="r-1", application="app"), JobExecution("script", "deploy"), tmp_path)

    assert ok is False
    assert [e.message for e in logger.failures()] == [ERR_INVALID_JOB]
    assert platform.released == []
