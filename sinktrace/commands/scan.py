"""Run a taint scan over a program IR and report insufficiently neutralized flows."""

import json
import sys

import click

from sinktrace.config_runtime import load_runtime_config
from sinktrace.pipeline.ui import (
    console,
    findings_table,
    print_header,
    print_status_panel,
    print_warning,
)
from sinktrace.taint import (
    Classification,
    Context,
    FindingSet,
    OriginKind,
    ScanResult,
    Severity,
    TaintRegistry,
    load_program,
    save_taint_analysis,
    scan,
)
from sinktrace.utils.error_handler import handle_exceptions
from sinktrace.utils.exit_codes import ExitCodes

TABLE_LIMIT = 25


def _parse_all(parser, param, values):
    try:
        return tuple(parser(v) for v in values)
    except ValueError as e:
        raise click.BadParameter(str(e), param=param) from None


def _contexts(ctx, param, values):
    return _parse_all(Context.parse, param, values)


def _origins(ctx, param, values):
    return _parse_all(OriginKind.parse, param, values)


def select_findings(
    findings: FindingSet,
    severity: str | None = None,
    min_confidence: float | None = None,
    contexts: tuple[Context, ...] = (),
    origins: tuple[OriginKind, ...] = (),
) -> FindingSet:
    """Apply the command line filters.

    Every ``--context`` must appear in the sink context; any ``--origin`` may match.
    """
    selected = findings.filter(min_severity=severity, min_confidence=min_confidence)
    for context in contexts:
        selected = selected.findings_for(context)
    if origins:
        wanted = set(origins)
        selected = FindingSet(f for f in selected if f.label.origins & wanted)
    return selected


def exit_code_for(result: ScanResult) -> int:
    """Process exit code of a finished scan.

    3 when every function failed analysis, 2 when an insufficiently neutralized
    flow reaches a critical sink, 1 for any other insufficiently neutralized
    flow, 0 otherwise.
    """
    if result.stats.incomplete:
        return ExitCodes.TASK_INCOMPLETE
    insufficient = result.findings.by_classification(Classification.INSUFFICIENT)
    if any(f.severity is Severity.CRITICAL for f in insufficient):
        return ExitCodes.CRITICAL_SEVERITY
    if insufficient:
        return ExitCodes.INSUFFICIENT
    return ExitCodes.SUCCESS


@click.command("scan")
@handle_exceptions
@click.argument("program", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--rules",
    "rules_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Rule database (YAML or JSON) mapping APIs to source/sink/sanitizer roles",
)
@click.option("--output", default=None, help="Report path (default: .sinktrace/findings.json)")
@click.option("--json", "as_json", is_flag=True, help="Print the JSON report instead of a table")
@click.option(
    "--severity",
    type=click.Choice(["critical", "high", "medium", "low", "info"]),
    default=None,
    help="Hide findings below this severity",
)
@click.option(
    "--min-confidence",
    type=click.FloatRange(0.0, 1.0),
    default=None,
    help="Hide findings scored below this feasibility",
)
@click.option(
    "--context",
    "contexts",
    multiple=True,
    callback=_contexts,
    help="Only findings whose sink context contains this layer (repeatable)",
)
@click.option(
    "--origin",
    "origins",
    multiple=True,
    callback=_origins,
    help="Only findings from this origin kind (repeatable)",
)
@click.option("--workers", type=click.IntRange(1), default=None, help="Summary worker threads")
def scan_command(
    program, rules_path, output, as_json, severity, min_confidence, contexts, origins, workers
):
    """Trace untrusted data to dangerous sinks and verify neutralization on every path.

    PROGRAM is a JSON program IR emitted by a language front end. Each flow
    that reaches a sink argument is classified SUFFICIENT, INSUFFICIENT or
    UNKNOWN for the sink's (possibly nested) output context.

    Filters only change what is displayed; insufficiently neutralized flows
    from concrete origins are never hidden, and the JSON report on disk
    always contains every finding.

    \b
    EXIT CODES:
      0  no insufficiently neutralized flow
      1  insufficiently neutralized flow(s)
      2  insufficiently neutralized flow into a critical sink
      3  analysis incomplete (every function failed)

    \b
    EXAMPLES:
      sinktrace scan program.json --rules rules.yml
      sinktrace scan program.json --rules rules.yml --severity high --json
      sinktrace scan program.json --rules rules.yml --context html-body
    """
    config = load_runtime_config()
    if workers is not None:
        config["limits"]["workers"] = workers
    output = output or config["paths"]["findings_json"]

    program_ir = load_program(program)
    registry = TaintRegistry.load(rules_path)
    if not as_json:
        for conflict in registry.conflicts:
            print_warning(str(conflict))

    result = scan(program_ir, registry, config)
    save_taint_analysis(result, output)

    selected = select_findings(result.findings, severity, min_confidence, contexts, origins)

    if as_json:
        report = result.to_dict()
        report["findings"] = selected.to_list()
        report["total_findings"] = len(selected)
        click.echo(json.dumps(report, indent=2, sort_keys=True))
    else:
        _print_report(result, selected, output)

    sys.exit(exit_code_for(result))


def _print_report(result: ScanResult, selected: FindingSet, output: str) -> None:
    stats = result.stats
    print_header("SINKTRACE SCAN")
    console.print(
        f"Functions: {stats.functions_analyzed}/{stats.functions_total} analyzed, "
        f"{len(stats.failed_functions)} degraded | Sink sites: {stats.sink_sites} | "
        f"Paths: {stats.paths_enumerated} ({stats.paths_collapsed} collapsed)"
    )
    if stats.unresolved_calls or stats.unknown_propagation_edges:
        console.print(
            f"[dim]Unresolved calls: {stats.unresolved_calls}, "
            f"unknown propagation edges: {stats.unknown_propagation_edges}[/dim]"
        )
    for fid, reason in sorted(stats.failed_functions.items()):
        print_warning(f"{fid}: {reason}")

    rows = selected.to_list()
    if rows:
        console.print(findings_table(rows, limit=TABLE_LIMIT))
        if len(rows) > TABLE_LIMIT:
            console.print(
                f"[dim]... and {len(rows) - TABLE_LIMIT} more (use --json for full output)[/dim]"
            )

    insufficient = len(result.findings.by_classification(Classification.INSUFFICIENT))
    code = exit_code_for(result)
    report_line = f"Report: {output}"
    if code == ExitCodes.TASK_INCOMPLETE:
        print_status_panel("INCOMPLETE", [ExitCodes.get_description(code), report_line], "high")
    elif insufficient:
        level = "critical" if code == ExitCodes.CRITICAL_SEVERITY else "high"
        print_status_panel(
            level.upper(),
            [f"{insufficient} insufficiently neutralized flow(s)", report_line],
            level,
        )
    else:
        print_status_panel("CLEAN", [ExitCodes.get_description(code), report_line])
