"""Structured event reporting for pipeline runs.

The core never prints. Steps and platforms report what happened through an
``EventLogger``; frontends decide how events are rendered (the CLI renders
them with rich, tests record them in memory).
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol


class Severity(str, Enum):
    """
    Severity of a pipeline event.

    Values:
        SUCCESS: A stage or step completed.
        FAILURE: A stage or step failed. One per failed run.
        INFO: Progress or diagnostic information.
    """

    SUCCESS = "success"
    FAILURE = "failure"
    INFO = "info"


@dataclass(frozen=True)
class Event:
    """
    A single logged pipeline event.

    Attributes:
        severity: Event severity.
        message: Short human readable message.
        context: Arbitrary structured details (ids, statuses, error text).
        stage: Pipeline stage active when the event was logged.
    """

    severity: Severity
    message: str
    context: Mapping[str, Any] = field(default_factory=dict)
    stage: str = ""


class EventLogger(Protocol):
    """Interface the core reports through."""

    stage: str

    def event(
        self,
        severity: Severity,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        """Record an event. The return value is never inspected."""
        ...


class MemoryEventLogger:
    """Event logger that keeps every event in order."""

    def __init__(self):
        self.stage = ""
        self.events: list[Event] = []

    def event(
        self,
        severity: Severity,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self.events.append(
            Event(
                severity=Severity(severity),
                message=message,
                context=dict(context or {}),
                stage=self.stage,
            )
        )

    def failures(self) -> list[Event]:
        """Return all failure events."""
        return [e for e in self.events if e.severity == Severity.FAILURE]

    def messages(self, severity: Severity | None = None) -> list[str]:
        """Return event messages, optionally filtered by severity."""
        return [
            e.message for e in self.events if severity is None or e.severity == severity
        ]


class GuardedEventLogger:
    """
    Forward events to another logger without ever raising.

    A broken sink (closed terminal, failing transport) must not abort a
    pipeline, so errors raised by the inner logger are written to stderr
    and counted in ``dropped``.
    """

    def __init__(self, inner: EventLogger):
        self.inner = inner
        self.dropped = 0

    @property
    def stage(self) -> str:
        return getattr(self.inner, "stage", "")

    @stage.setter
    def stage(self, value: str) -> None:
        try:
            self.inner.stage = value
        except AttributeError:
            pass

    def event(
        self,
        severity: Severity,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        try:
            self.inner.event(severity, message, context or {})
        except Exception as exc:  # noqa: BLE001 - sink errors never abort a run
            self.dropped += 1
            try:
                sys.stderr.write(f"deployops: event logger failed: {exc}\n")
            except OSError:
                pass
