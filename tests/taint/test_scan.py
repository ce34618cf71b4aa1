"""End-to-end tests for scan(): the behavioral guarantees of the engine."""

import threading

import pytest

from conftest import assign, call, make_function, source
from sinktrace.taint import (
    Classification,
    Context,
    OriginKind,
    ScanCancelled,
    Severity,
    TaintRegistry,
    scan,
)
from sinktrace.taint.discovery import TaintDiscovery
from sinktrace.taint.errors import TaintFidelityError
from sinktrace.taint.interprocedural import ConcretePass


def invoke(node_id, callee, args, target=None):
    node = {"id": node_id, "kind": "call", "callee": callee, "args": list(args)}
    if target is not None:
        node["target"] = target
    return node


def keys(result):
    return {f.dedup_key for f in result.findings}


def branchy(n):
    """x = source; then ``n`` if/else blocks that both copy x; render(x)."""
    nodes = [{**source("n0", "x"), "succ": ["b0"]}]
    for i in range(n):
        after = f"b{i + 1}" if i + 1 < n else "sink"
        nodes += [
            {"id": f"b{i}", "kind": "branch", "succ": [f"l{i}", f"r{i}"]},
            {**assign(f"l{i}", "x", "x"), "succ": [f"m{i}"]},
            {**assign(f"r{i}", "x", "x"), "succ": [f"m{i}"]},
            {"id": f"m{i}", "kind": "nop", "succ": [after]},
        ]
    nodes.append(call("sink", "render", ["x"]))
    return make_function("page", nodes, entry_point=True)


# =============================================================================
# Basic detection
# =============================================================================


class TestDetection:
    def test_sql_injection_from_request_parameter(self, registry, sqli_program):
        """VERIFY: A request parameter concatenated into a query is INSUFFICIENT/CRITICAL."""
        result = scan(sqli_program, registry)
        (finding,) = result.findings
        assert finding.classification is Classification.INSUFFICIENT
        assert finding.severity is Severity.CRITICAL
        assert finding.origin is OriginKind.NETWORK_PARAMETER
        assert finding.vulnerability_type == "SQL Injection"
        assert finding.path == ("app.search::param:0", "app.search::n1", "app.search::n2")
        assert finding.confidence == 1.0
        assert finding.sink.line == 4
        assert finding.sink.file == "app.py"

    def test_no_source_no_finding(self, registry, build_program):
        program = build_program(
            make_function("f", [assign("n1", "sql", "constant"), call("n2", "cursor.execute", ["sql"])])
        )
        result = scan(program, registry)
        assert len(result.findings) == 0
        assert result.stats.sink_sites == 1

    def test_interprocedural_flow(self, registry, build_program):
        """VERIFY: Taint returned by a helper is traced through the helper's body."""
        program = build_program(
            make_function(
                "app.main",
                [source("n1", "x"), invoke("n2", "app.helper", ["x"], "y"), call("n3", "cursor.execute", ["y"])],
            ),
            make_function(
                "app.helper",
                [assign("n1", "t", "s"), {"id": "n2", "kind": "return", "operands": ["t"]}],
                params=["s"],
            ),
        )
        (finding,) = scan(program, registry).findings
        assert finding.path == (
            "app.main::n1",
            "app.helper::param:0",
            "app.helper::n1",
            "app.helper::n2",
            "app.main::n2",
            "app.main::n3",
        )

    def test_sink_inside_callee(self, registry, build_program):
        program = build_program(
            make_function("main", [source("n1", "x", api="request.headers.get"), invoke("n2", "log_it", ["x"])]),
            make_function("log_it", [call("n1", "logger.info", ["msg"])], params=["msg"]),
        )
        (finding,) = scan(program, registry).findings
        assert finding.sink.function_id == "log_it"
        assert finding.origin is OriginKind.HEADER
        assert finding.severity is Severity.LOW


# =============================================================================
# Behavioral guarantees
# =============================================================================


class TestGuarantees:
    def test_strong_update(self, registry, build_program):
        """VERIFY: Overwriting a tainted variable with a constant removes the finding."""
        program = build_program(
            make_function(
                "f",
                [source("n1", "x"), assign("n2", "x"), call("n3", "cursor.execute", ["x"])],
            )
        )
        assert len(scan(program, registry).findings) == 0

    def test_parameterization_sufficient(self, registry, build_program):
        """VERIFY: Binding through a parameterized API is SUFFICIENT for any context."""
        program = build_program(
            make_function(
                "f",
                [source("n1", "x"), call("n2", "db.bind", ["x"], "p"), call("n3", "cursor.execute", ["p"])],
            )
        )
        (finding,) = scan(program, registry).findings
        assert finding.classification is Classification.SUFFICIENT
        assert finding.severity is Severity.INFO
        assert finding.steps[0].api == "db.bind"

    def test_blacklist_downgrade(self, registry, build_program):
        """VERIFY: Blacklist filtering alone is INSUFFICIENT for HTML body output."""
        program = build_program(
            make_function(
                "f",
                [source("n1", "x"), call("n2", "strip_tags", ["x"], "y"), call("n3", "render", ["y"])],
            )
        )
        (finding,) = scan(program, registry).findings
        assert finding.classification is Classification.INSUFFICIENT
        assert "blacklist" in finding.reason

    @pytest.mark.parametrize(
        "first,second,expected",
        [
            ("js.escape", "html.escape", Classification.SUFFICIENT),
            ("html.escape", "js.escape", Classification.INSUFFICIENT),
        ],
    )
    def test_composite_context_ordering(self, registry, build_program, first, second, expected):
        """VERIFY: Script-in-attribute needs JS escaping before attribute escaping."""
        program = build_program(
            make_function(
                "f",
                [
                    source("n1", "x"),
                    call("n2", first, ["x"], "a"),
                    call("n3", second, ["a"], "b"),
                    call("n4", "render_onclick", ["b"]),
                ],
            )
        )
        (finding,) = scan(program, registry).findings
        assert finding.sink.context.layers == (Context.SCRIPT_LITERAL, Context.HTML_ATTRIBUTE)
        assert finding.classification is expected

    def test_unknown_call_conservatism(self, registry, build_program):
        """VERIFY: Taint through an unmodeled call is still reported, with lower confidence."""
        program = build_program(
            make_function(
                "f",
                [source("n1", "x"), call("n2", "lib.transform", ["x"], "y"), call("n3", "cursor.execute", ["y"])],
            )
        )
        result = scan(program, registry)
        (finding,) = result.findings
        assert finding.classification is Classification.INSUFFICIENT
        assert finding.crossed_unknown
        assert finding.unknown_hops == (1,)
        assert finding.confidence == 0.6
        assert result.stats.unresolved_calls == 1
        assert result.stats.unknown_propagation_edges == 1

    def test_monotonicity(self, rules, build_program):
        """VERIFY: Adding a source rule never removes a finding."""
        program = build_program(
            make_function(
                "f",
                [
                    source("n1", "x"),
                    call("n2", "legacy.read", [None], "y"),
                    assign("n3", "q", "x", "y"),
                    call("n4", "cursor.execute", ["q"]),
                ],
            )
        )
        before = scan(program, TaintRegistry.from_dict(rules))
        rules["rules"].append({"api": "legacy.read", "role": "source", "origin": "stored-record"})
        after = scan(program, TaintRegistry.from_dict(rules))
        assert keys(before) <= keys(after)
        assert len(after.findings) > len(before.findings)

    def test_idempotence(self, registry, sqli_program):
        """VERIFY: Scanning the same program twice yields identical reports."""
        first = scan(sqli_program, registry)
        second = scan(sqli_program, registry)
        assert first.findings.to_list() == second.findings.to_list()

    def test_dedup_two_paths_one_finding(self, registry, build_program):
        """VERIFY: Two distinct paths from one origin kind into one sink collapse to one Finding."""
        program = build_program(
            make_function(
                "f",
                [
                    {**source("n1", "x"), "succ": ["n2"]},
                    {"id": "n2", "kind": "branch", "succ": ["n3", "n4"]},
                    {**assign("n3", "y", "x"), "succ": ["n5"]},
                    {**assign("n4", "y", "x", operator="concat"), "succ": ["n5"]},
                    call("n5", "cursor.execute", ["y"]),
                ],
            )
        )
        result = scan(program, registry)
        (finding,) = result.findings
        assert finding.collapsed_count == 2
        assert len(finding.related_paths) == 1
        assert result.stats.paths_enumerated == 2
        assert result.stats.paths_collapsed == 1

    def test_distinct_origins_not_collapsed(self, registry, build_program):
        program = build_program(
            make_function(
                "f",
                [
                    source("n1", "x"),
                    source("n2", "h", api="request.headers.get"),
                    assign("n3", "q", "x", "h"),
                    call("n4", "cursor.execute", ["q"]),
                ],
            )
        )
        origins = sorted(f.origin.value for f in scan(program, registry).findings)
        assert origins == ["header", "network-parameter"]


# =============================================================================
# Degradation
# =============================================================================


class TestDegradation:
    def test_call_to_failed_function_is_unknown(self, registry, build_program):
        """VERIFY: A malformed callee yields an UNKNOWN (not silent) finding at the caller's sink."""
        program = build_program(
            make_function("main", [invoke("n1", "broken", [], "y"), call("n2", "cursor.execute", ["y"])]),
            make_function("broken", [{"id": "n1", "kind": "teleport"}]),
        )
        result = scan(program, registry)
        (finding,) = result.findings
        assert finding.classification is Classification.UNKNOWN
        assert finding.origin is OriginKind.UNKNOWN_EXTERNAL
        assert finding.severity is Severity.HIGH
        assert "broken" in result.stats.failed_functions
        assert not result.stats.incomplete

    def test_every_function_failed_is_incomplete(self, registry, build_program):
        program = build_program(make_function("f", [{**assign("n1", "a"), "succ": ["gone"]}]))
        result = scan(program, registry)
        assert result.stats.incomplete
        assert len(result.findings) == 0

    def test_non_convergence_budget_from_config(self, registry, build_program):
        program = build_program(
            make_function(
                "spin",
                [
                    {**source("n1", "x"), "succ": ["n2"]},
                    {**assign("n2", "x", "x"), "succ": ["n3"]},
                    {"id": "n3", "kind": "branch", "succ": ["n2", "n4"]},
                    call("n4", "render", ["x"]),
                ],
            )
        )
        assert len(scan(program, registry).findings) == 1
        degraded = scan(program, registry, {"limits": {"max_visits_per_node": 1}})
        assert "spin" in degraded.stats.failed_functions

    def test_cancellation(self, registry, sqli_program):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ScanCancelled):
            scan(sqli_program, registry, cancel=cancel)


# =============================================================================
# Path search limits
# =============================================================================


class TestPathSearchLimits:
    def test_long_branch_chain_falls_back_to_provenance(self, registry, build_program):
        """VERIFY: 45 if/else blocks (2^45 paths, all beyond max_path_depth) finish immediately."""
        result = scan(build_program(branchy(45)), registry)
        (finding,) = result.findings
        assert finding.classification is Classification.INSUFFICIENT
        assert finding.truncated
        assert finding.path[0] == "page::n0"
        assert finding.path[-1] == "page::sink"
        assert result.stats.path_searches_exhausted == 0

    def test_short_branch_chain_is_capped_by_max_paths(self, registry, build_program):
        result = scan(build_program(branchy(30)), registry)
        (finding,) = result.findings
        assert not finding.truncated
        assert finding.collapsed_count == 100
        assert len(finding.path) == 32

    def test_state_budget_from_config(self, registry, build_program):
        result = scan(build_program(branchy(30)), registry, {"limits": {"max_path_states": 10}})
        (finding,) = result.findings
        assert finding.truncated
        assert result.stats.path_searches_exhausted == 1
        assert result.stats.to_dict()["path_states_explored"] == 10


# =============================================================================
# Pipeline fidelity
# =============================================================================


class TestPipelineFidelity:
    def test_sink_dropped_by_discovery(self, registry, sqli_program, monkeypatch):
        """VERIFY: A sink call seen by propagation but missing from discovery stops the scan."""
        monkeypatch.setattr(TaintDiscovery, "discover_sinks", lambda self, analyses: [])
        with pytest.raises(TaintFidelityError, match="app.search::n2") as exc_info:
            scan(sqli_program, registry)
        assert exc_info.value.details["stage"] == "discovery"

    def test_callee_never_analyzed(self, registry, build_program, monkeypatch):
        """VERIFY: A reachable callee the concrete pass never ran is a fidelity failure."""
        monkeypatch.setattr(ConcretePass, "_propagate_calls", lambda self, analysis: [])
        program = build_program(
            make_function("app.main", [source("n1", "x"), invoke("n2", "app.helper", ["x"], "y")]),
            make_function(
                "app.helper",
                [call("n1", "cursor.execute", ["s"])],
                params=["s"],
            ),
        )
        with pytest.raises(TaintFidelityError, match="app.helper") as exc_info:
            scan(program, registry)
        assert exc_info.value.details["stage"] == "analysis"

    def test_clean_scan_passes_every_stage(self, registry, build_program):
        program = build_program(
            make_function("app.main", [source("n1", "x"), invoke("n2", "app.helper", ["x"], "y")]),
            make_function("app.helper", [call("n1", "cursor.execute", ["s"])], params=["s"]),
        )
        (finding,) = scan(program, registry).findings
        assert finding.sink.function_id == "app.helper"


# =============================================================================
# Incremental rescans
# =============================================================================


class TestIncremental:
    def test_previous_summaries_reused(self, registry, sqli_program):
        first = scan(sqli_program, registry)
        second = scan(sqli_program, registry, previous=first.summaries)
        assert second.stats.summaries_reused == 1
        assert second.stats.summaries_computed == 0
        assert second.findings.to_list() == first.findings.to_list()

    def test_stats_to_dict(self, registry, sqli_program):
        stats = scan(sqli_program, registry).stats.to_dict()
        assert stats["functions_total"] == 1
        assert stats["functions_analyzed"] == 1
        assert stats["nodes_analyzed"] == 2
        assert set(stats["component_seconds"]) == {
            "summaries",
            "propagation",
            "discovery",
            "paths",
            "classification",
            "emit",
        }
