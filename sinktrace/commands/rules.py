"""Inspect a rule database without scanning."""

import json

import click
from rich.table import Table

from sinktrace.pipeline.ui import console, print_header, print_success, print_warning
from sinktrace.taint import TaintRegistry
from sinktrace.utils.error_handler import handle_exceptions


@click.command("rules")
@handle_exceptions
@click.argument("rules_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print rule statistics as JSON")
def rules_command(rules_path, as_json):
    """Load RULES_PATH, report rule counts and source/sanitizer conflicts.

    Conflicting rules are resolved the same way a scan resolves them: the API
    is not treated as a sanitizer for the conflicting context.
    """
    registry = TaintRegistry.load(rules_path)
    stats = registry.get_stats()

    if as_json:
        stats["conflict_details"] = [
            {"api": c.api, "context": c.context, "origin": c.origin} for c in registry.conflicts
        ]
        click.echo(json.dumps(stats, indent=2, sort_keys=True))
        return

    print_header("RULE DATABASE")
    table = Table(show_header=True, header_style="bold")
    table.add_column("Role")
    table.add_column("Rules", justify="right")
    for role in ("sources", "sinks", "sanitizers"):
        table.add_row(role, str(stats[role]))
    console.print(table)

    canon = ", ".join(sorted(c.value for c in registry.canonicalization_required))
    console.print(f"[dim]Canonicalization required for: {canon or 'none'}[/dim]")

    if registry.conflicts:
        for conflict in registry.conflicts:
            print_warning(str(conflict))
    else:
        print_success(f"{stats['total']} rules loaded, no conflicts")
