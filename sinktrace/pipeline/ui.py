"""Rich console, theme and report widgets shared by every sinktrace command.

Commands import the module-level ``console`` rather than building their own::

    from sinktrace.pipeline.ui import console, print_header

    print_header("SINKTRACE SCAN")
    console.print(findings_table(report["findings"]))
"""

import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "bold yellow",
    "medium": "bold blue",
    "low": "cyan",
    "info": "dim white",
}

VERDICT_STYLES = {
    "INSUFFICIENT": "bold red",
    "UNKNOWN": "yellow",
    "SUFFICIENT": "green",
}

SINKTRACE_THEME = Theme({
    "warning": "bold yellow",
    "success": "bold green",
    "path": "bold cyan",
    "dim": "dim white",
    **SEVERITY_STYLES,
})

# Border colour per panel level; text uses the matching theme style
_PANEL_BORDERS = {
    "critical": "red",
    "high": "yellow",
    "medium": "blue",
    "low": "cyan",
    "success": "green",
}

console = Console(theme=SINKTRACE_THEME, force_terminal=sys.stdout.isatty())


def print_header(title: str) -> None:
    console.rule(f"[bold]{title}[/bold]")


def print_warning(msg: str) -> None:
    console.print(f"[warning]WARNING:[/warning] {msg}")


def print_success(msg: str) -> None:
    console.print(f"[success]OK:[/success] {msg}")


def findings_table(rows: list[dict], limit: int | None = None) -> Table:
    """Findings table built from ``Finding.to_dict()`` rows, in report order.

    Args:
        rows: Serialized findings
        limit: Show at most this many rows
    """
    table = Table(show_header=True, header_style="bold", expand=False)
    for name, justify in (
        ("#", "right"),
        ("Severity", "left"),
        ("Verdict", "left"),
        ("Type", "left"),
        ("Origin", "left"),
        ("Sink", "left"),
        ("Context", "left"),
        ("Conf.", "right"),
        ("Paths", "right"),
    ):
        table.add_column(name, justify=justify)

    for i, row in enumerate(rows[:limit] if limit is not None else rows, 1):
        sink = row["sink"]
        where = f"{sink['file']}:{sink['line']}" if sink.get("file") else sink["node"]
        table.add_row(
            str(i),
            Text(row["severity"].upper(), style=SEVERITY_STYLES.get(row["severity"], "")),
            Text(row["classification"], style=VERDICT_STYLES.get(row["classification"], "")),
            row["vulnerability_type"],
            ", ".join(row["source"]["origins"]),
            Text(f"{sink['api']}[{sink['arg_index']}] @ {where}", style="path"),
            " < ".join(sink["context"]),
            f"{row['confidence']:.2f}",
            str(row["collapsed_count"]),
        )
    return table


def print_status_panel(status: str, lines: list[str], level: str = "success") -> None:
    """Boxed ``STATUS: [X]`` banner followed by ``lines``.

    Args:
        status: Status label (e.g. "CRITICAL", "CLEAN")
        lines: Message lines under the label
        level: "critical", "high", "medium", "low" or "success"
    """
    border = _PANEL_BORDERS.get(level, "white")
    body = Text(f"STATUS: [{status}]", style=SINKTRACE_THEME.styles.get(level, "bold"))
    for line in lines:
        body.append(f"\n{line}", style=border)
    console.print(Panel(body, border_style=border, expand=False))
