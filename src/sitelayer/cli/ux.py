"""
Terminal output for sitelayer commands, built on rich.

Colour follows the terminal: NO_COLOR disables it, FORCE_COLOR forces it,
and CI runners or pipes get plain section titles instead of rules.
"""

from __future__ import annotations

import os
import sys
from typing import Sequence

from rich.console import Console
from rich.table import Table
from rich.theme import Theme

# Nord palette (https://www.nordtheme.com/)
SITELAYER_THEME = Theme(
    {
        "info": "#88C0D0",
        "success": "#A3BE8C",
        "warning": "#EBCB8B",
        "error": "#BF616A bold",
        "muted": "#D8DEE9",
        "orange": "#D08770",
    }
)

_SYMBOLS = {"success": "✓", "error": "✗", "warning": "⚠", "info": "ℹ"}
_CI_VARIABLES = ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "JENKINS_URL", "BUILDKITE")

console = Console(
    theme=SITELAYER_THEME,
    highlight=False,
    soft_wrap=True,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=os.environ.get("NO_COLOR") is not None,
)


def _interactive() -> bool:
    if any(os.environ.get(name) for name in _CI_VARIABLES):
        return False
    return sys.stdout.isatty()


def _status(style: str, message: str) -> None:
    console.print(f"[{style}]{_SYMBOLS[style]} {message}[/{style}]")


def success(message: str) -> None:
    _status("success", message)


def error(message: str) -> None:
    _status("error", message)


def warning(message: str) -> None:
    _status("warning", message)


def info(message: str) -> None:
    _status("info", message)


def header(title: str) -> None:
    console.print()
    if _interactive():
        console.rule(f"[bold]{title}[/bold]", style="muted")
    else:
        console.print(f"[bold]{title}[/bold]")


def print_table(
    columns: Sequence[str], rows: Sequence[Sequence[str]], *, title: str | None = None
) -> None:
    """Print rows under ``columns``; cells may carry rich markup."""
    table = Table(title=title, header_style="bold", box=None, pad_edge=False)
    for column in columns:
        table.add_column(column, overflow="fold")
    for row in rows:
        table.add_row(*row)
    console.print(table)
