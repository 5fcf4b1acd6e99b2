"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import questionary
from rich.console import Console
from rich.table import Table
from rich.theme import Theme

from deployops.cli.common.tui_style import QUESTIONARY_STYLE_CONFIRM

_THEME = Theme(
    {
        "ok": "bold green",
        "warn": "yellow",
        "err": "bold red",
        "title": "bold cyan",
        "meta": "dim",
    }
)

# Line prefix per theme style
_MARKS = {"ok": "✓", "warn": "⚠", "err": "✗", "title": "›"}

_SEVERITY_STYLES = {"success": "ok", "failure": "err", "info": "meta"}

console = Console(theme=_THEME)


def _value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, default=str)
    return str(value)


def _severity(event: Any) -> str:
    return getattr(event.severity, "value", str(event.severity))


@dataclass(frozen=True)
class Out:
    """Console writer for job progress, prompts and run summaries."""

    prompt_prefix: str = "deployops"

    def _mark(self, style: str, msg: str) -> None:
        console.print(f"[{style}]{_MARKS[style]}[/] {msg}")

    def info(self, msg: str) -> None:
        self._mark("title", msg)

    def success(self, msg: str) -> None:
        self._mark("ok", msg)

    def warn(self, msg: str) -> None:
        self._mark("warn", msg)

    def error(self, msg: str) -> None:
        self._mark("err", msg)

    @contextmanager
    def status(self, msg: str):
        """Spin while a pipeline runs. Events printed meanwhile scroll above it."""
        with console.status(msg, spinner="dots"):
            yield

    def header(self, title: str) -> None:
        console.rule(f"[title]{title}[/]", align="left")

    def print(self, msg: str) -> None:
        console.print(msg)

    def kv(self, items: Mapping[str, Any]) -> None:
        """Print a mapping one ``key: value`` line at a time; nested values as JSON."""
        for key, value in items.items():
            console.print(f"[meta]{key}[/]: {_value(value)}", highlight=False)

    def bullets(self, items: Iterable[Any]) -> None:
        for item in items:
            console.print(f"  [meta]•[/] {item}", highlight=False)

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """
        Ask a yes/no question before touching remote infrastructure.

        Args:
            message: Question shown to the user.
            default: Answer used when the user just presses enter.

        Returns:
            True only when the user answered yes. A cancelled prompt
            (Ctrl-C) counts as no.
        """
        answer = questionary.confirm(
            f"[{self.prompt_prefix}] {message}",
            default=default,
            style=QUESTIONARY_STYLE_CONFIRM,
            auto_enter=False,
        ).ask()
        return bool(answer)

    def events_table(self, events: Iterable[Any], title: str = "Events") -> None:
        """
        Summarize a run from objects with .stage .severity and .message
        (see deployops.core.events.Event).
        """
        table = Table(title=title, show_lines=False)
        table.add_column("Stage", style="meta", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        table.add_column("Message")

        for event in events:
            severity = _severity(event)
            style = _SEVERITY_STYLES.get(severity, "meta")
            table.add_row(str(event.stage or ""), f"[{style}]{severity}[/]", event.message)

        console.print(table)

    def platforms_table(
        self, platforms: Iterable[tuple[str, str, str]], title: str = "Platforms"
    ) -> None:
        """Render (name, implementation, job types) rows."""
        table = Table(title=title, show_lines=False)
        table.add_column("Platform", style="ok", no_wrap=True)
        table.add_column("Implementation")
        table.add_column("Jobs", style="meta")

        for row in platforms:
            table.add_row(*row)

        console.print(table)


out = Out()
