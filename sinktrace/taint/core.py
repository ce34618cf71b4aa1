"""Scan orchestration, finding deduplication and report persistence.

``scan()`` is the engine's public entry point::

    program = load_program("program.json")
    registry = TaintRegistry.load("rules.yml")
    result = scan(program, registry)
    for finding in result.findings.findings_for(Context.HTML_BODY):
        ...
"""

import json
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable, Iterator

from sinktrace.config_runtime import merge_config
from sinktrace.utils.logging import get_request_id, logger

from .contexts import Context
from .discovery import SinkSite, TaintDiscovery
from .fidelity import (
    create_analysis_manifest,
    create_analysis_receipt,
    create_dedup_manifest,
    create_dedup_receipt,
    create_discovery_manifest,
    create_discovery_receipt,
    create_json_output_receipt,
    reconcile_taint_fidelity,
)
from .interprocedural import ConcretePass, ConcreteResult, FunctionSummary, SummaryResolver
from .ir import ProgramIR
from .labels import OriginKind, TaintLabel
from .propagation import FlowEdge
from .registry import TaintRegistry
from .sanitizer_util import Classification, SanitizerModel
from .scoring import FeasibilityScorer, Severity, severity_for
from .taint_path import EnumeratedPath, Finding, PathEnumerator


class FindingSet:
    """Ordered, restartable collection of findings.

    Iteration order is descending severity, then descending confidence, then
    sink key and path. Every ``iter()`` starts a fresh pass.
    """

    def __init__(self, findings: Iterable[Finding] = ()):
        self._findings = tuple(sorted(findings, key=lambda f: f.sort_key))

    def __iter__(self) -> Iterator[Finding]:
        return (finding for finding in self._findings)

    def __len__(self) -> int:
        return len(self._findings)

    def __bool__(self) -> bool:
        return bool(self._findings)

    def __repr__(self) -> str:
        return f"FindingSet({len(self._findings)} findings)"

    def findings_for(self, query: "Context | OriginKind | str") -> "FindingSet":
        """Findings whose sink context contains ``query`` or whose origin is ``query``."""
        if isinstance(query, str):
            try:
                query = Context.parse(query)
            except ValueError:
                query = OriginKind.parse(query)
        if isinstance(query, Context):
            return FindingSet(f for f in self._findings if query in f.sink.context)
        return FindingSet(f for f in self._findings if query in f.label.origins)

    def by_classification(self, classification: Classification) -> "FindingSet":
        return FindingSet(f for f in self._findings if f.classification is classification)

    def filter(
        self,
        min_severity: "Severity | str | None" = None,
        min_confidence: float | None = None,
    ) -> "FindingSet":
        """Drop findings below the thresholds.

        INSUFFICIENT findings with a concrete origin are always kept.
        """
        threshold = Severity.parse(min_severity) if min_severity is not None else None

        def keep(finding: Finding) -> bool:
            if (
                finding.classification is Classification.INSUFFICIENT
                and finding.origin is not OriginKind.UNKNOWN_EXTERNAL
            ):
                return True
            if threshold is not None and finding.severity.rank < threshold.rank:
                return False
            if min_confidence is not None and finding.confidence < min_confidence:
                return False
            return True

        return FindingSet(f for f in self._findings if keep(f))

    def to_list(self) -> list[dict[str, Any]]:
        return [f.to_dict() for f in self._findings]


@dataclass
class ScanStats:
    nodes_analyzed: int = 0
    functions_total: int = 0
    functions_analyzed: int = 0
    summaries_computed: int = 0
    summaries_reused: int = 0
    failed_functions: dict[str, str] = field(default_factory=dict)
    unknown_propagation_edges: int = 0
    unresolved_calls: int = 0
    rule_conflicts: int = 0
    sink_sites: int = 0
    origin_nodes: int = 0
    paths_enumerated: int = 0
    paths_collapsed: int = 0
    path_states_explored: int = 0
    path_searches_exhausted: int = 0
    component_seconds: dict[str, float] = field(default_factory=dict)

    @property
    def incomplete(self) -> bool:
        """Every function of a non-empty program failed analysis."""
        return self.functions_total > 0 and len(self.failed_functions) >= self.functions_total

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes_analyzed": self.nodes_analyzed,
            "functions_total": self.functions_total,
            "functions_analyzed": self.functions_analyzed,
            "summaries_computed": self.summaries_computed,
            "summaries_reused": self.summaries_reused,
            "failed_functions": dict(sorted(self.failed_functions.items())),
            "unknown_propagation_edges": self.unknown_propagation_edges,
            "unresolved_calls": self.unresolved_calls,
            "rule_conflicts": self.rule_conflicts,
            "sink_sites": self.sink_sites,
            "origin_nodes": self.origin_nodes,
            "paths_enumerated": self.paths_enumerated,
            "paths_collapsed": self.paths_collapsed,
            "path_states_explored": self.path_states_explored,
            "path_searches_exhausted": self.path_searches_exhausted,
            "component_seconds": {k: round(v, 4) for k, v in self.component_seconds.items()},
            "incomplete": self.incomplete,
        }


@dataclass
class ScanResult:
    findings: FindingSet
    stats: ScanStats
    summaries: dict[str, FunctionSummary]

    def to_dict(self) -> dict[str, Any]:
        findings = self.findings.to_list()
        by_type: dict[str, int] = defaultdict(int)
        by_severity: dict[str, int] = defaultdict(int)
        for finding in self.findings:
            if finding.classification is not Classification.SUFFICIENT:
                by_type[finding.vulnerability_type] += 1
            by_severity[finding.severity.value] += 1
        return {
            "success": True,
            "findings": findings,
            "total_findings": len(findings),
            "vulnerabilities_by_type": dict(by_type),
            "summary": {
                "by_severity": dict(by_severity),
                "insufficient": len(self.findings.by_classification(Classification.INSUFFICIENT)),
                "unknown": len(self.findings.by_classification(Classification.UNKNOWN)),
                "sufficient": len(self.findings.by_classification(Classification.SUFFICIENT)),
            },
            "stats": self.stats.to_dict(),
        }


class _Timer:
    """Accumulates wall-clock seconds per pipeline component."""

    def __init__(self, stats: ScanStats):
        self.stats = stats
        self._name = ""
        self._start = 0.0

    def __call__(self, name: str) -> "_Timer":
        self._name = name
        return self

    def __enter__(self) -> "_Timer":
        self._start = time.time()
        return self

    def __exit__(self, *exc) -> None:
        elapsed = time.time() - self._start
        self.stats.component_seconds[self._name] = (
            self.stats.component_seconds.get(self._name, 0.0) + elapsed
        )


def scan(
    program: ProgramIR,
    registry: TaintRegistry,
    config: dict[str, Any] | None = None,
    cancel: threading.Event | None = None,
    previous: dict[str, FunctionSummary] | None = None,
) -> ScanResult:
    """Run the full pipeline over ``program``.

    Args:
        program: Program IR
        registry: Rule database
        config: Runtime configuration, partial dicts are merged over the defaults
        cancel: Event checked at cooperative checkpoints (raises ScanCancelled)
        previous: Summaries of an earlier scan, reused for unchanged functions

    Returns:
        ScanResult with the deduplicated findings, statistics and the summary
        table (pass it back as ``previous`` for an incremental rescan)
    """
    cfg = merge_config(config)
    limits = cfg["limits"]
    stats = ScanStats(
        functions_total=len(program.function_ids),
        rule_conflicts=len(registry.conflicts),
    )
    timer = _Timer(stats)

    with timer("summaries"):
        resolver = SummaryResolver(registry, cfg, cancel)
        summaries = resolver.resolve(program, previous)
    stats.summaries_computed = len(resolver.recomputed - set(resolver.failures))
    stats.summaries_reused = len(resolver.reused)

    with timer("propagation"):
        concrete = ConcretePass(program, registry, summaries, resolver.call_graph, cfg, cancel).run()

    stats.failed_functions = {**resolver.failures, **concrete.failures}
    stats.functions_analyzed = len(concrete.analyses)
    stats.nodes_analyzed = sum(a.nodes_analyzed for a in concrete.analyses.values())

    edges: set[FlowEdge] = set()
    origins: dict[str, frozenset[OriginKind]] = {}
    unresolved: set[str] = set()
    for analysis in concrete.analyses.values():
        edges |= analysis.edges
        origins.update(analysis.origins)
        unresolved |= analysis.unresolved_calls
    stats.unknown_propagation_edges = sum(1 for e in edges if e.unknown)
    stats.unresolved_calls = len(unresolved)

    with timer("discovery"):
        discovery = TaintDiscovery(program, registry)
        sites = discovery.discover_sinks(concrete.analyses)
        sources = discovery.discover_sources(concrete.analyses)
    stats.sink_sites = len(sites)
    stats.origin_nodes = len(sources)
    manifest = create_discovery_manifest(sources, [s.to_dict() for s in sites])
    reconcile_taint_fidelity(
        manifest, create_discovery_receipt(_observed_sinks(program, registry, concrete)), "discovery"
    )

    reconcile_taint_fidelity(
        create_analysis_manifest(
            _reachable_functions(summaries, concrete), summaries_degraded=len(resolver.failures)
        ),
        create_analysis_receipt(concrete.analyses, concrete.failures),
        "analysis",
    )

    with timer("paths"):
        enumerator = PathEnumerator(
            edges,
            origins,
            max_depth=limits["max_path_depth"],
            max_paths=limits["max_paths_per_sink"],
            max_states=limits["max_path_states"],
        )
        flows = _enumerate_flows(sites, concrete, enumerator)
    stats.path_states_explored = enumerator.paths_explored
    stats.path_searches_exhausted = enumerator.exhausted_searches

    with timer("classification"):
        candidates = _classify(program, registry, flows, FeasibilityScorer(cfg))
    stats.paths_enumerated = len(candidates)

    with timer("emit"):
        findings = deduplicate_findings(candidates)
    stats.paths_collapsed = len(candidates) - len(findings)
    reconcile_taint_fidelity(
        create_dedup_manifest(len(candidates), len(findings)),
        create_dedup_receipt([f.collapsed_count for f in findings]),
        "dedup",
    )

    logger.info(
        f"Scan complete: {len(findings)} finding(s) from {len(candidates)} path(s), "
        f"{stats.functions_analyzed}/{stats.functions_total} functions, "
        f"{len(stats.failed_functions)} degraded"
    )
    return ScanResult(findings=FindingSet(findings), stats=stats, summaries=dict(summaries))


def _observed_sinks(
    program: ProgramIR, registry: TaintRegistry, concrete: ConcreteResult
) -> list[str]:
    """Sink calls propagation saw with at least one checked, non-literal argument."""
    observed = []
    for fid, analysis in concrete.analyses.items():
        func = program.functions[fid]
        for key, observation in analysis.sinks.items():
            rule = registry.sink_for(observation.api)
            node = func.nodes[observation.node_id]
            if rule and any(rule.checks(i) and slot is not None for i, slot in enumerate(node.args)):
                observed.append(key)
    return observed


def _reachable_functions(
    summaries: dict[str, FunctionSummary], concrete: ConcreteResult
) -> set[str]:
    """Entry functions plus every callee with a usable summary at an analyzed call."""
    expected = set(concrete.entries)
    for analysis in concrete.analyses.values():
        for observation in analysis.calls.values():
            summary = summaries.get(observation.callee)
            if summary is not None and not summary.unknown:
                expected.add(observation.callee)
    return expected


@dataclass(frozen=True)
class _Flow:
    site: SinkSite
    label: TaintLabel
    paths: tuple[EnumeratedPath, ...]


def _enumerate_flows(
    sites: list[SinkSite], concrete: ConcreteResult, enumerator: PathEnumerator
) -> list[_Flow]:
    """Per sink site and origin kind, the concrete paths that carry it."""
    flows: list[_Flow] = []
    for site in sites:
        observation = concrete.analyses[site.function_id].sinks.get(site.node_key)
        if observation is None or site.arg_index >= len(observation.args):
            continue

        per_origin: dict[OriginKind, TaintLabel] = {}
        for label in observation.args[site.arg_index].concrete():
            for origin in label.origins:
                single = TaintLabel(
                    origins=frozenset({origin}),
                    provenance=label.provenance,
                    context=label.context,
                )
                current = per_origin.get(origin)
                if current is None or len(single.provenance) < len(current.provenance):
                    per_origin[origin] = single

        for origin in sorted(per_origin, key=lambda o: o.value):
            label = per_origin[origin]
            paths = enumerator.enumerate(site, origin)
            if not paths:
                logger.debug(
                    f"No enumerated path from {origin.value} into {site.node_key}; "
                    "falling back to label provenance"
                )
                paths = [PathEnumerator.from_provenance(label, site)]
            flows.append(_Flow(site, label, tuple(paths)))
    return flows


def _classify(
    program: ProgramIR,
    registry: TaintRegistry,
    flows: list[_Flow],
    scorer: FeasibilityScorer,
) -> list[Finding]:
    model = SanitizerModel(program, registry)
    candidates: list[Finding] = []
    for flow in flows:
        corroborating = len(flow.paths) - 1
        for path in flow.paths:
            steps = model.steps_on_path(path.nodes)
            verdict = model.classify(steps, flow.site.context, flow.label)
            confidence = scorer.score(
                unknown_hops=len(path.unknown_hops),
                path_length=len(path.nodes),
                merge_count=_merge_count(program, path.nodes),
                corroborating_paths=corroborating,
            )
            candidates.append(
                Finding(
                    label=flow.label,
                    sink=flow.site,
                    path=path.nodes,
                    classification=verdict.classification,
                    severity=severity_for(verdict.classification, flow.site.context),
                    confidence=confidence,
                    steps=tuple(steps),
                    unknown_hops=path.unknown_hops,
                    reason=verdict.reason,
                    truncated=path.truncated,
                )
            )
    return candidates


def _merge_count(program: ProgramIR, nodes: tuple[str, ...]) -> int:
    count = 0
    for key in nodes:
        function_id, _, node_id = key.rpartition("::")
        func = program.functions.get(function_id)
        if func is not None and node_id in func.merge_nodes:
            count += 1
    return count


def deduplicate_findings(candidates: list[Finding]) -> list[Finding]:
    """Collapse candidates sharing (origin kind, sink site, classification).

    The highest-confidence candidate represents the group (shorter path, then
    path order break ties) and records how many paths it stands for.
    """
    groups: dict[tuple, list[Finding]] = defaultdict(list)
    for finding in candidates:
        groups[finding.dedup_key].append(finding)

    deduped: list[Finding] = []
    for group in groups.values():
        group.sort(key=lambda f: (-f.confidence, len(f.path), f.path))
        best = group[0]
        deduped.append(
            replace(
                best,
                collapsed_count=len(group),
                related_paths=tuple(f.path for f in group[1:]),
            )
        )
    return deduped


def save_taint_analysis(
    result: ScanResult, output_path: str = "./.sinktrace/findings.json"
) -> dict[str, Any]:
    """Save scan results to a JSON file and verify the write.

    Returns:
        Fidelity reconciliation result for the json_output stage
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    report = result.to_dict()
    report["request_id"] = get_request_id()
    payload = json.dumps(report, indent=2, sort_keys=True)
    with open(output, "w", encoding="utf-8") as f:
        f.write(payload)

    return reconcile_taint_fidelity(
        {"findings_to_write": len(result.findings)},
        create_json_output_receipt(len(report["findings"]), len(payload.encode("utf-8"))),
        "json_output",
    )
