"""Finding data model and source-to-sink path enumeration."""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from sinktrace.utils.logging import logger

from .contexts import CompositeContext, Context
from .discovery import SinkSite
from .labels import OriginKind, TaintLabel
from .propagation import EDGE_CALL, EDGE_LOCAL, EDGE_RETURN, FlowEdge
from .sanitizer_util import Classification, NeutralizationStep
from .scoring import Confidence, Severity, confidence_bucket


def determine_vulnerability_type(context: CompositeContext, api: str = "") -> str:
    """Vulnerability class of a flow, decided by the sink context and API name."""
    sink_context = context.outermost
    lower_api = (api or "").lower()

    if sink_context is Context.RAW_COMMAND_INTERPRETER:
        sql_patterns = ["sql", "query", "execute", "cursor", "hql", "raw", "statement"]
        if any(p in lower_api for p in sql_patterns):
            return "SQL Injection"
        if "eval" in lower_api:
            return "Code Injection"
        return "Command Injection"
    if sink_context in (Context.HTML_BODY, Context.HTML_ATTRIBUTE, Context.SCRIPT_LITERAL):
        return "Cross-Site Scripting (XSS)"
    if sink_context is Context.CSS_VALUE:
        return "CSS Injection"
    if sink_context is Context.FILESYSTEM_PATH:
        return "Path Traversal"
    if sink_context is Context.REDIRECT_TARGET:
        return "Open Redirect"
    if sink_context is Context.FORWARD_TARGET:
        return "Unvalidated Forward"
    if sink_context is Context.URL_PARAMETER:
        return "Parameter Injection"
    if sink_context is Context.LOG_RECORD:
        return "Log Injection"
    return "Data Exposure"


@dataclass(frozen=True)
class Finding:
    """One reported source-to-sink flow.

    Attributes:
        label: Taint label (single origin kind) that reaches the sink
        sink: Sink site the path ends at
        path: Node keys from the origin to the sink
        unknown_hops: Indexes into ``path`` entered through unknown propagation
        steps: Neutralization steps found on the path
        confidence: Feasibility score in [0, 1]
        classification: SUFFICIENT / INSUFFICIENT / UNKNOWN
        severity: Severity after classification
        reason: Short explanation of the classification
        collapsed_count: Number of paths this finding stands for after dedup
        truncated: Path was reconstructed from label provenance
        related_paths: Other paths collapsed into this finding
    """

    label: TaintLabel
    sink: SinkSite
    path: tuple[str, ...]
    classification: Classification
    severity: Severity
    confidence: float
    steps: tuple[NeutralizationStep, ...] = ()
    unknown_hops: tuple[int, ...] = ()
    reason: str = ""
    collapsed_count: int = 1
    truncated: bool = False
    related_paths: tuple[tuple[str, ...], ...] = field(default=(), compare=False)

    @property
    def origin(self) -> OriginKind:
        origin = self.label.primary_origin
        assert origin is not None
        return origin

    @property
    def crossed_unknown(self) -> bool:
        return bool(self.unknown_hops)

    @property
    def confidence_level(self) -> Confidence:
        return confidence_bucket(self.confidence)

    @property
    def vulnerability_type(self) -> str:
        return determine_vulnerability_type(self.sink.context, self.sink.api)

    @property
    def dedup_key(self) -> tuple:
        return (self.origin.value, self.sink.node_key, self.sink.arg_index, self.classification.value)

    @property
    def sort_key(self) -> tuple:
        """Descending severity, then descending confidence, then sink and path."""
        return (-self.severity.rank, -self.confidence, self.sink.node_key, self.sink.arg_index, self.path)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization with guaranteed structure."""
        unknown = set(self.unknown_hops)
        result = {
            "vulnerability_type": self.vulnerability_type,
            "classification": self.classification.value,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "confidence_level": self.confidence_level.value,
            "reason": self.reason,
            "source": {
                "origins": sorted(o.value for o in self.label.origins),
                "node": self.path[0] if self.path else None,
                "context": self.label.context.value if self.label.context else None,
            },
            "sink": self.sink.to_dict(),
            "path": [{"node": node, "unknown": i in unknown} for i, node in enumerate(self.path)],
            "path_length": len(self.path),
            "neutralization": [s.to_dict() for s in self.steps],
            "collapsed_count": self.collapsed_count,
            "unknown_propagation": self.crossed_unknown,
            "truncated": self.truncated,
        }
        if self.related_paths:
            result["related_paths"] = [list(p) for p in self.related_paths]
        return result


@dataclass(frozen=True)
class EnumeratedPath:
    nodes: tuple[str, ...]
    unknown_hops: tuple[int, ...] = ()
    truncated: bool = False


class PathEnumerator:
    """Backward enumeration of concrete paths over recorded flow edges.

    Call and return edges are matched like parentheses: a path that enters a
    callee through a return edge at call site ``c`` may only leave it through a
    call edge at ``c``. A path may still leave through any call site when it
    started inside the callee (unbalanced prefix).

    A branch is only expanded while the shortest edge distance back to an
    origin node still fits into ``max_depth``. ``max_states`` bounds the work
    per sink and origin; a search that runs out returns what it found so far.
    """

    def __init__(
        self,
        edges: Iterable[FlowEdge],
        origins: dict[str, frozenset[OriginKind]],
        max_depth: int = 40,
        max_paths: int = 100,
        max_states: int = 20000,
    ):
        self.incoming: dict[str, list[FlowEdge]] = defaultdict(list)
        self.outgoing: dict[str, set[str]] = defaultdict(set)
        for edge in sorted(set(edges), key=lambda e: (e.dst, e.src, e.kind, e.slot or "", e.site or "")):
            self.incoming[edge.dst].append(edge)
            self.outgoing[edge.src].add(edge.dst)
        self.origins = origins
        self.max_depth = max_depth
        self.max_paths = max_paths
        self.max_states = max_states
        self.paths_explored = 0
        self.exhausted_searches = 0
        self._distances: dict[OriginKind, dict[str, int]] = {}

    def _distance_from(self, origin: OriginKind) -> dict[str, int]:
        """Fewest edges from any ``origin`` node to each node, ignoring call matching."""
        if origin not in self._distances:
            dist = {node: 0 for node, kinds in self.origins.items() if origin in kinds}
            queue = deque(sorted(dist))
            while queue:
                node = queue.popleft()
                for nxt in self.outgoing.get(node, ()):
                    if nxt not in dist:
                        dist[nxt] = dist[node] + 1
                        queue.append(nxt)
            self._distances[origin] = dist
        return self._distances[origin]

    def enumerate(self, sink: SinkSite, origin: OriginKind) -> list[EnumeratedPath]:
        """All acyclic paths (up to the limits) from an ``origin`` node into ``sink``."""
        dist = self._distance_from(origin)

        def reachable(node: str, length: int) -> bool:
            # length counts the nodes of the path once ``node`` is on it
            return node in dist and length + dist[node] <= self.max_depth

        start_edges = [
            e for e in self.incoming.get(sink.node_key, ())
            if e.kind == EDGE_LOCAL and e.slot == sink.slot and reachable(e.src, 2)
        ]
        found: list[EnumeratedPath] = []

        # (node, reversed path, unknown flags aligned with reversed path, call stack)
        stack: list[tuple[str, tuple[str, ...], tuple[bool, ...], tuple[str, ...]]] = []
        for edge in reversed(start_edges):
            stack.append((edge.src, (sink.node_key, edge.src), (False, edge.unknown), ()))

        states = 0
        while stack and len(found) < self.max_paths:
            if states >= self.max_states:
                self.exhausted_searches += 1
                logger.warning(
                    f"Path search from {origin.value} into {sink.node_key} stopped after "
                    f"{states} states with {len(found)} path(s)"
                )
                break
            node, rpath, flags, calls = stack.pop()
            states += 1

            if origin in self.origins.get(node, ()):
                nodes = tuple(reversed(rpath))
                ordered = tuple(reversed(flags))
                # flags[i] marks that rpath[i] was entered through an unknown edge;
                # in forward order the hop lands on the node after it
                unknown = tuple(i + 1 for i, flag in enumerate(ordered[:-1]) if flag)
                found.append(EnumeratedPath(nodes, unknown))
                continue

            for edge in reversed(self.incoming.get(node, ())):
                if edge.src in rpath or not reachable(edge.src, len(rpath) + 1):
                    continue
                next_calls = calls
                if edge.kind == EDGE_RETURN:
                    next_calls = calls + (edge.site,)
                elif edge.kind == EDGE_CALL:
                    if calls:
                        if calls[-1] != edge.site:
                            continue
                        next_calls = calls[:-1]
                stack.append((edge.src, rpath + (edge.src,), flags + (edge.unknown,), next_calls))

        self.paths_explored += states
        return found

    @staticmethod
    def from_provenance(label: TaintLabel, sink: SinkSite) -> EnumeratedPath:
        """Fallback path when enumeration finds nothing: the label's own provenance."""
        nodes = list(label.nodes)
        unknown = [i for i, hop in enumerate(label.provenance) if hop.unknown]
        if not nodes or nodes[-1] != sink.node_key:
            nodes.append(sink.node_key)
        return EnumeratedPath(tuple(nodes), tuple(unknown), truncated=True)
