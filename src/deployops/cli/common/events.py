"""Render pipeline events and progress on the console."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from deployops.cli.common.output import Out, out
from deployops.core.events import MemoryEventLogger, Severity


class ConsoleEventLogger(MemoryEventLogger):
    """
    Print every event as it is logged and keep it for the final summary.

    Context is printed for failures always, and for other events only when
    ``verbose`` is set.
    """

    def __init__(self, output: Out = out, verbose: bool = False):
        super().__init__()
        self.output = output
        self.verbose = verbose

    def event(
        self,
        severity: Severity,
        message: str,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().event(severity, message, context)
        severity = Severity(severity)

        if severity == Severity.SUCCESS:
            self.output.success(message)
        elif severity == Severity.FAILURE:
            self.output.error(message)
        else:
            self.output.info(message)

        if context and (self.verbose or severity == Severity.FAILURE):
            self.output.kv(context)


class ConsoleReporter:
    """Reporter that prints stage sections, notes and listings."""

    def __init__(self, output: Out = out):
        self.output = output

    def section(self, title: str) -> None:
        self.output.header(title)

    def note(self, message: str) -> None:
        self.output.info(message)

    def listing(self, title: str, items: Mapping[str, Any] | Iterable[Any]) -> None:
        self.output.print(title)
        if isinstance(items, Mapping):
            self.output.kv(items)
        else:
            self.output.bullets(items)
