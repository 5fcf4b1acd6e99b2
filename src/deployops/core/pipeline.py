"""Staged pipeline execution.

A platform run is an ordered list of stages. Each stage wraps one step,
declares which context fields it reads and which field it writes, and names
the failure message reported when it fails. The runner advances only on
success; the first failure emits a single failure event naming the stage and
stops the run. Resources created along the way are registered on a
CleanupStack that is released on every exit path.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Mapping, Protocol, TypeVar

from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Job, JobExecution

ERR_INVALID_JOB = "The provided job is an invalid type for this job platform"
ERR_MISSING_INPUT = "Required input was not produced by an earlier stage"


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of a single step.

    Attributes:
        ok: True when the step's remote work is confirmed complete.
        data: Optional output consumed by later stages.
        error: Proximate cause of a failure.
        context: Extra details attached to the failure event.
    """

    ok: bool
    data: Any = None
    error: str | None = None
    context: Mapping[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def succeeded(cls, data: Any = None) -> StepOutcome:
        return cls(ok=True, data=data)

    @classmethod
    def failed(
        cls, error: str | None = None, context: Mapping[str, Any] | None = None
    ) -> StepOutcome:
        return cls(ok=False, error=error, context=dict(context or {}))

    @classmethod
    def of(cls, ok: bool, error: str | None = None) -> StepOutcome:
        """Wrap a boolean step result."""
        return cls.succeeded() if ok else cls.failed(error)


class Reporter(Protocol):
    """Progress output for a running pipeline (sections, notes, tables)."""

    def section(self, title: str) -> None:
        ...

    def note(self, message: str) -> None:
        ...

    def listing(self, title: str, items: Mapping[str, Any] | Iterable[Any]) -> None:
        ...


class NullReporter:
    """Reporter that discards all output."""

    def section(self, title: str) -> None:
        return None

    def note(self, message: str) -> None:
        return None

    def listing(self, title: str, items: Mapping[str, Any] | Iterable[Any]) -> None:
        return None


class CleanupStack:
    """
    Scoped release of resources created during a platform run.

    Callbacks run in reverse registration order when the stack is closed,
    whether the run returned normally or raised. A failing callback is
    reported as an info event and never masks the run's own outcome.
    """

    def __init__(self, logger: EventLogger):
        self.logger = logger
        self._stack = ExitStack()
        self.descriptions: list[str] = []

    def push(self, description: str, callback: Callable[..., Any], *args: Any) -> None:
        """Register a best-effort release callback."""
        self.descriptions.append(description)
        self._stack.callback(self._release, description, callback, args)

    def _release(
        self, description: str, callback: Callable[..., Any], args: tuple[Any, ...]
    ) -> None:
        try:
            callback(*args)
        except Exception as exc:  # noqa: BLE001 - release is best effort
            self.logger.event(
                Severity.INFO,
                f"Cleanup failed: {description}",
                {"error": str(exc)},
            )

    def close(self) -> None:
        self._stack.close()

    def __enter__(self) -> CleanupStack:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


@dataclass
class PipelineContext:
    """
    State threaded through the stages of one platform run.

    Platforms subclass this and declare the fields their stages read and
    write. Fields start as None; a stage that reads a field which is still
    None fails before its step runs.
    """

    job: Job
    execution: JobExecution
    workspace: Path
    cleanup: CleanupStack


C = TypeVar("C", bound=PipelineContext)


@dataclass(frozen=True)
class Stage(Generic[C]):
    """
    One named phase of a pipeline.

    Attributes:
        title: Section title shown while the stage runs.
        error: Failure message reported when the stage fails.
        run: Step invoked with the pipeline context.
        reads: Context fields that must be set before the step runs.
        writes: Context field that receives the outcome's data on success.
    """

    title: str
    error: str
    run: Callable[[C], StepOutcome]
    reads: tuple[str, ...] = ()
    writes: str | None = None


def run_stages(
    stages: Iterable[Stage[C]],
    ctx: C,
    logger: EventLogger,
    reporter: Reporter | None = None,
) -> bool:
    """
    Run stages in order and stop at the first failure.

    Args:
        stages: Stages in declared order.
        ctx: Pipeline context shared by the stages.
        logger: Event logger receiving the failure event.
        reporter: Optional progress reporter.

    Returns:
        True when every stage succeeded.
    """
    reporter = reporter or NullReporter()

    for stage in stages:
        reporter.section(stage.title)

        missing = [name for name in stage.reads if getattr(ctx, name, None) is None]
        if missing:
            outcome = StepOutcome.failed(ERR_MISSING_INPUT, {"missing": missing})
        else:
            outcome = stage.run(ctx)

        if not outcome.ok:
            context: dict[str, Any] = {"stage": stage.title}
            if outcome.error:
                context["reason"] = outcome.error
            context.update(outcome.context)
            logger.event(Severity.FAILURE, stage.error, context)
            return False

        if stage.writes:
            setattr(ctx, stage.writes, outcome.data)

    return True


class JobPlatform(ABC):
    """
    Base class for build and deploy platforms.

    Subclasses declare the job types they accept, build their context and
    list their stages. Calling the platform runs the stages inside a
    CleanupStack scoped to the run.
    """

    job_types: tuple[type[Job], ...] = (Job,)

    def __init__(self, logger: EventLogger, reporter: Reporter | None = None):
        self.logger = logger
        self.reporter = reporter or NullReporter()

    def accepts(self, job: Job) -> bool:
        return isinstance(job, self.job_types)

    @abstractmethod
    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> PipelineContext:
        """Create the context for one run."""

    @abstractmethod
    def stages(self) -> list[Stage]:
        """Return the stages of this platform in execution order."""

    def __call__(self, job: Job, execution: JobExecution, workspace: Path) -> bool:
        if not self.accepts(job):
            self.logger.event(
                Severity.FAILURE,
                ERR_INVALID_JOB,
                {"job": job.id, "type": job.type},
            )
            return False

        with CleanupStack(self.logger) as cleanup:
            ctx = self.context(job, execution, Path(workspace), cleanup)
            return run_stages(self.stages(), ctx, self.logger, self.reporter)
