"""Plain text summaries attached to events.

Events travel to sinks that may not render rich markup, so step summaries
are fixed-width text blocks.
"""

from __future__ import annotations

from typing import Iterable, Sequence


def render_rows(
    header: Sequence[str],
    rows: Iterable[Sequence[object]],
    widths: Sequence[int],
) -> str:
    """
    Render a fixed-width table.

    A separator line follows the header. An empty table gets a single
    "N/A" row so the block never looks truncated.
    """
    body = [list(map(str, r)) for r in rows]
    if not body:
        body = [["N/A"] * len(widths)]

    lines = [list(header), ["-" * w for w in widths], *body]
    return "\n".join(
        " | ".join(str(cell).ljust(width) for cell, width in zip(line, widths)).rstrip()
        for line in lines
    )


def render_filters(filters: Iterable[dict]) -> str:
    """Render EC2 filters as " - name = value" lines."""
    return "\n".join(f" - {f['Name']} = {f['Values'][0]}" for f in filters)
