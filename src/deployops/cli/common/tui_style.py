"""Questionary / prompt_toolkit theme for deployops.

Questionary uses prompt_toolkit under the hood. Confirmations guard runs
that change remote infrastructure, so the question stands out in bold.
"""

from __future__ import annotations

from prompt_toolkit.styles import Style

QUESTIONARY_STYLE_CONFIRM = Style.from_dict(
    {
        "qmark": "bold ansiyellow",
        "question": "bold ansibrightcyan",
        "answer": "bold ansibrightgreen",
        "instruction": "ansibrightblack",
        "error": "bold ansired",
    }
)
