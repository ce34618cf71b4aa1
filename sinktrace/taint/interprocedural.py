"""Interprocedural resolution: call graph, SCC condensation and function summaries.

Two passes run over the program:

1. Bottom-up summaries. The call graph is condensed into strongly connected
   components and the condensation is split into layers by height (leaves
   are layer 0). Every function is analyzed once in symbolic mode and its exit
   state is compressed into a FunctionSummary. SCCs in the same layer only
   depend on lower layers, so they are analyzed concurrently; members of a
   recursive SCC are iterated jointly until their provisional summaries stop
   changing.

2. Top-down concrete pass. Starting from entry functions, every reachable
   function is analyzed with concrete taint on its parameters (declared
   origins plus whatever callers pass in) and on program globals. Calls are
   resolved through the published summaries; the per-function runs supply the
   sink observations and flow edges that findings are built from.

A function whose IR is malformed or whose fixpoint does not converge gets an
UNKNOWN summary. Callers then see a fresh unknown-external label at the call
and the scan continues.
"""

import threading
from collections import ChainMap, defaultdict, deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from sinktrace.utils.logging import logger

from .errors import MalformedIR, NonConvergence, ScanCancelled, TaintError
from .ir import RETURN_SLOT, FunctionIR, ProgramIR, global_key
from .labels import TaintLabel, TaintSet
from .propagation import (
    FunctionAnalysis,
    PropagationEngine,
    SummaryView,
    Transfer,
    symbolic_inputs,
)
from .registry import TaintRegistry


@dataclass(frozen=True)
class FunctionSummary(SummaryView):
    """Published, immutable summary of one function.

    Attributes:
        transfers: (input, output, crossed-unknown) triples. Inputs are
            ``param:i``, ``receiver`` and ``global:g``; outputs are ``return``,
            ``param:j`` (out-parameters) and ``global:g``
        generated: output -> taint created inside the function
        exit_defs: output -> definition keys that reach the function exit
        unknown: True when the function failed analysis
        function_id: Function this summary describes
        content_hash: Hash of the IR the summary was computed from
        unknown_outputs: Outputs reached through unknown propagation
        error: Failure description for UNKNOWN summaries
    """

    function_id: str = ""
    content_hash: str = ""
    unknown_outputs: frozenset[str] = frozenset()
    error: str | None = None

    @classmethod
    def failed(cls, function_id: str, content_hash: str, error: str) -> "FunctionSummary":
        return cls(
            unknown=True,
            function_id=function_id,
            content_hash=content_hash,
            error=error,
        )

    def same_effect(self, other: "FunctionSummary | None") -> bool:
        """True when ``other`` would produce identical call-site effects."""
        if other is None:
            return False
        return (
            self.unknown == other.unknown
            and self.transfers == other.transfers
            and dict(self.generated) == dict(other.generated)
            and dict(self.exit_defs) == dict(other.exit_defs)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "function": self.function_id,
            "content_hash": self.content_hash,
            "unknown": self.unknown,
            "error": self.error,
            "transfers": [list(t) for t in sorted(self.transfers)],
            "generated": {
                output: sorted(o.value for o in taint.origins)
                for output, taint in sorted(self.generated.items())
            },
            "unknown_outputs": sorted(self.unknown_outputs),
        }


def summarize(function: FunctionIR, analysis: FunctionAnalysis) -> FunctionSummary:
    """Compress a symbolic run's exit state into a transfer relation."""
    exit_state = analysis.exit

    outputs: dict[str, str] = {RETURN_SLOT: RETURN_SLOT}
    pseudo: dict[str, str] = {}
    for index, param in enumerate(function.params):
        if param.out:
            outputs[f"param:{index}"] = param.name
            pseudo[f"param:{index}"] = function.param_key(index)
    for name in analysis.globals_read:
        written = exit_state.defs_of(name) - {global_key(name)}
        if written:
            outputs[f"global:{name}"] = name
            pseudo[f"global:{name}"] = global_key(name)

    transfers: set[Transfer] = set()
    generated: dict[str, TaintSet] = {}
    exit_defs: dict[str, frozenset[str]] = {}
    unknown_outputs: set[str] = set()

    for output, slot in outputs.items():
        taint = exit_state.get(slot)
        defs = exit_state.defs_of(slot) - {pseudo.get(output)}
        if defs:
            exit_defs[output] = frozenset(defs)
        for label in taint:
            if label.crossed_unknown:
                unknown_outputs.add(output)
            for marker in label.symbols:
                if marker == output and not label.crossed_unknown:
                    continue
                transfers.add(Transfer(marker, output, label.crossed_unknown))
        concrete = taint.concrete()
        if concrete:
            generated[output] = concrete

    return FunctionSummary(
        transfers=frozenset(transfers),
        generated=MappingProxyType(generated),
        exit_defs=MappingProxyType(exit_defs),
        function_id=function.id,
        content_hash=function.content_hash,
        unknown_outputs=frozenset(unknown_outputs),
    )


# ---------------------------------------------------------------------------
# Call graph
# ---------------------------------------------------------------------------


def _tarjan_sccs(graph: dict[str, set[str]]) -> list[tuple[str, ...]]:
    """Iterative Tarjan. SCCs come out in reverse topological order (leaves first)."""
    counter = 0
    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    sccs: list[tuple[str, ...]] = []

    for start in sorted(graph):
        if start in index:
            continue
        index[start] = lowlink[start] = counter
        counter += 1
        stack.append(start)
        on_stack.add(start)
        work = [(start, iter(sorted(graph.get(start, ()))))]

        while work:
            v, successors = work[-1]
            advanced = False
            for w in successors:
                if w not in index:
                    index[w] = lowlink[w] = counter
                    counter += 1
                    stack.append(w)
                    on_stack.add(w)
                    work.append((w, iter(sorted(graph.get(w, ())))))
                    advanced = True
                    break
                if w in on_stack:
                    lowlink[v] = min(lowlink[v], index[w])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[v])
            if lowlink[v] == index[v]:
                members = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w)
                    members.append(w)
                    if w == v:
                        break
                sccs.append(tuple(sorted(members)))

    return sccs


class CallGraph:
    """Resolved call edges between program functions."""

    def __init__(self, program: ProgramIR):
        known = program.function_ids
        self.callees: dict[str, set[str]] = {fid: set() for fid in known}
        self.callers: dict[str, set[str]] = {fid: set() for fid in known}
        for func in program.functions.values():
            for node in func.call_nodes:
                if node.callee in known and not node.dynamic:
                    self.callees[func.id].add(node.callee)
                    self.callers[node.callee].add(func.id)

        self.sccs = _tarjan_sccs(self.callees)
        self.scc_of = {fid: scc for scc in self.sccs for fid in scc}

    def is_recursive(self, scc: tuple[str, ...]) -> bool:
        return len(scc) > 1 or scc[0] in self.callees.get(scc[0], ())

    def layers(self) -> list[list[tuple[str, ...]]]:
        """Group SCCs by height in the condensation (leaves are layer 0)."""
        height: dict[tuple[str, ...], int] = {}
        for scc in self.sccs:
            below = {
                self.scc_of[callee]
                for fid in scc
                for callee in self.callees[fid]
                if self.scc_of[callee] != scc
            }
            height[scc] = 1 + max((height[b] for b in below), default=-1)

        layers: list[list[tuple[str, ...]]] = [[] for _ in range(max(height.values(), default=-1) + 1)]
        for scc in self.sccs:
            layers[height[scc]].append(scc)
        return layers

    def roots(self) -> list[str]:
        return sorted(fid for fid, callers in self.callers.items() if not callers - {fid})


# ---------------------------------------------------------------------------
# Bottom-up summary resolution
# ---------------------------------------------------------------------------


def _limit(config: dict[str, Any] | None, key: str, default: int) -> int:
    if not config:
        return default
    return int(config.get("limits", {}).get(key, default))


class SummaryResolver:
    """Computes FunctionSummary objects bottom-up over the SCC condensation.

    Args:
        registry: Rule database
        config: Runtime configuration (see ``config_runtime.DEFAULTS``)
        cancel: Event checked between layers
    """

    def __init__(
        self,
        registry: TaintRegistry,
        config: dict[str, Any] | None = None,
        cancel: threading.Event | None = None,
    ):
        self.registry = registry
        self.config = config
        self.cancel = cancel
        self.max_visits = _limit(config, "max_visits_per_node", 200)
        self.max_scc_iterations = _limit(config, "max_scc_iterations", 20)
        self.workers = max(1, _limit(config, "workers", 4))

        self.summaries: dict[str, FunctionSummary] = {}
        self.failures: dict[str, str] = {}
        self.recomputed: set[str] = set()
        self.reused: set[str] = set()
        self.call_graph: CallGraph | None = None

    def resolve(
        self, program: ProgramIR, previous: dict[str, FunctionSummary] | None = None
    ) -> dict[str, FunctionSummary]:
        """Publish a summary for every function of ``program``.

        Args:
            program: Program IR
            previous: Summaries from an earlier run; reused when the function's
                content hash is unchanged and none of its callees was recomputed

        Returns:
            Function id -> published summary
        """
        previous = previous or {}
        self.call_graph = graph = CallGraph(program)

        for fid, error in program.malformed.items():
            self._fail(fid, "", str(error))

        valid: set[str] = set()
        for fid, func in program.functions.items():
            try:
                func.validate(program.function_ids)
                valid.add(fid)
            except MalformedIR as e:
                self._fail(fid, func.content_hash, str(e))

        layers = graph.layers()
        for depth, layer in enumerate(layers):
            self._check_cancel()
            pending = [scc for scc in layer if any(fid in valid for fid in scc)]
            if not pending:
                continue
            logger.debug(f"Summarizing layer {depth}/{len(layers) - 1}: {len(pending)} SCC(s)")

            to_compute = []
            for scc in pending:
                if self._try_reuse(program, scc, previous):
                    continue
                to_compute.append(scc)

            results: list[dict[str, FunctionSummary]] = []
            if self.workers == 1 or len(to_compute) <= 1:
                results = [self._analyze_scc(program, scc, valid) for scc in to_compute]
            else:
                with ThreadPoolExecutor(max_workers=self.workers) as executor:
                    futures = {
                        executor.submit(self._analyze_scc, program, scc, valid): scc
                        for scc in to_compute
                    }
                    for future in as_completed(futures):
                        results.append(future.result())

            # Publish once the whole layer is done; callers only read lower layers
            for result in results:
                for fid, summary in result.items():
                    self.summaries[fid] = summary
                    self.recomputed.add(fid)
                    if summary.unknown:
                        self.failures[fid] = summary.error or "unknown failure"

        return self.summaries

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise ScanCancelled("Scan cancelled during summary resolution")

    def _fail(self, fid: str, content_hash: str, error: str) -> None:
        logger.warning(f"Function {fid} degraded to UNKNOWN: {error}")
        self.summaries[fid] = FunctionSummary.failed(fid, content_hash, error)
        self.failures[fid] = error
        self.recomputed.add(fid)

    def _try_reuse(
        self, program: ProgramIR, scc: tuple[str, ...], previous: dict[str, FunctionSummary]
    ) -> bool:
        assert self.call_graph is not None
        for fid in scc:
            func = program.functions.get(fid)
            old = previous.get(fid)
            if func is None or old is None or old.unknown or old.content_hash != func.content_hash:
                return False
            for callee in self.call_graph.callees[fid]:
                if callee not in scc and callee in self.recomputed:
                    return False
        for fid in scc:
            self.summaries[fid] = previous[fid]
            self.reused.add(fid)
        logger.debug(f"Reusing summaries for {', '.join(scc)}")
        return True

    def _analyze_scc(
        self, program: ProgramIR, scc: tuple[str, ...], valid: set[str]
    ) -> dict[str, FunctionSummary]:
        """Iterate the members of one SCC to a joint fixpoint."""
        assert self.call_graph is not None
        members = [fid for fid in scc if fid in valid]
        provisional: dict[str, FunctionSummary] = {}
        view = ChainMap(provisional, self.summaries)
        rounds = self.max_scc_iterations if self.call_graph.is_recursive(scc) else 1

        for _ in range(rounds):
            changed = False
            for fid in members:
                if fid in provisional and provisional[fid].unknown:
                    continue
                func = program.functions[fid]
                summary = self._summarize_one(program, func, view)
                if not summary.same_effect(provisional.get(fid)):
                    provisional[fid] = summary
                    changed = True
            if not changed:
                return provisional

        if rounds == 1:
            return provisional

        budget_error = str(NonConvergence(", ".join(members), self.max_scc_iterations))
        logger.warning(f"SCC did not stabilize, degrading members to UNKNOWN: {budget_error}")
        return {
            fid: FunctionSummary.failed(fid, program.functions[fid].content_hash, budget_error)
            for fid in members
        }

    def _summarize_one(self, program: ProgramIR, func: FunctionIR, view) -> FunctionSummary:
        engine = PropagationEngine(
            func,
            self.registry,
            view,
            program_globals=program.globals,
            max_visits_per_node=self.max_visits,
            known_functions=program.function_ids,
        )
        try:
            analysis = engine.run(symbolic_inputs(func, program.globals))
        except TaintError as e:
            logger.warning(f"Function {func.id} degraded to UNKNOWN: {e}")
            return FunctionSummary.failed(func.id, func.content_hash, str(e))
        logger.debug(f"Summarized {func.id} in {analysis.visits} node visits")
        return summarize(func, analysis)


# ---------------------------------------------------------------------------
# Top-down concrete pass
# ---------------------------------------------------------------------------


@dataclass
class ConcreteResult:
    """Per-function concrete analyses plus program-wide global taint."""

    analyses: dict[str, FunctionAnalysis] = field(default_factory=dict)
    global_taint: dict[str, TaintSet] = field(default_factory=dict)
    entries: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    truncated: set[str] = field(default_factory=set)
    runs: int = 0


class ConcretePass:
    """Worklist over functions that propagates concrete taint top-down."""

    def __init__(
        self,
        program: ProgramIR,
        registry: TaintRegistry,
        summaries: dict[str, FunctionSummary],
        call_graph: CallGraph,
        config: dict[str, Any] | None = None,
        cancel: threading.Event | None = None,
    ):
        self.program = program
        self.registry = registry
        self.summaries = summaries
        self.call_graph = call_graph
        self.cancel = cancel
        self.max_visits = _limit(config, "max_visits_per_node", 200)
        self.max_rounds = max(1, _limit(config, "max_worklist_rounds", 50))

        self._param_taint: dict[str, dict[str, TaintSet]] = defaultdict(dict)
        self._runs: dict[str, int] = defaultdict(int)

    def entry_functions(self) -> list[str]:
        """Declared entry points, else call-graph roots, else every usable function."""
        usable = [fid for fid in self.program.functions if not self._failed(fid)]
        entries = sorted(fid for fid in usable if self.program.functions[fid].entry_point)
        if entries:
            return entries
        roots = [fid for fid in self.call_graph.roots() if fid in usable]
        return roots or sorted(usable)

    def _failed(self, fid: str) -> bool:
        summary = self.summaries.get(fid)
        return summary is None or summary.unknown

    def run(self) -> ConcreteResult:
        result = ConcreteResult(entries=self.entry_functions())
        worklist = deque(result.entries)
        queued = set(worklist)

        while worklist:
            if self.cancel is not None and self.cancel.is_set():
                raise ScanCancelled("Scan cancelled during concrete propagation")

            fid = worklist.popleft()
            queued.discard(fid)
            if self._runs[fid] >= self.max_rounds:
                result.truncated.add(fid)
                continue
            self._runs[fid] += 1
            result.runs += 1

            func = self.program.functions[fid]
            inputs = initial_inputs(func)
            for slot, taint in self._param_taint[fid].items():
                inputs[slot] = inputs.get(slot, TaintSet.empty()) | taint
            for name in func.slots() & self.program.globals:
                inputs.setdefault(name, result.global_taint.get(name, TaintSet.empty()))

            engine = PropagationEngine(
                func,
                self.registry,
                self.summaries,
                program_globals=self.program.globals,
                max_visits_per_node=self.max_visits,
                known_functions=self.program.function_ids,
            )
            try:
                analysis = engine.run(inputs)
            except TaintError as e:
                logger.warning(f"Concrete analysis of {fid} failed: {e}")
                result.failures[fid] = str(e)
                continue
            result.analyses[fid] = analysis

            affected = self._propagate_calls(analysis)
            for name in self._propagate_globals(analysis, result.global_taint):
                affected.extend(
                    reader_id
                    for reader_id, reader in result.analyses.items()
                    if name in reader.globals_read
                )
            for other in affected:
                if other not in queued:
                    worklist.append(other)
                    queued.add(other)

        if result.truncated:
            logger.warning(
                f"Concrete pass hit max_worklist_rounds={self.max_rounds} for "
                f"{len(result.truncated)} function(s)"
            )
        return result

    def _propagate_calls(self, analysis: FunctionAnalysis) -> list[str]:
        """Fold call-site argument taint into callee parameters; return callees to (re)run."""
        enqueue: list[str] = []
        for call in analysis.calls.values():
            callee = self.program.functions.get(call.callee)
            if callee is None or self._failed(callee.id):
                continue
            current = self._param_taint[callee.id]
            changed = self._runs[callee.id] == 0

            for index, param in enumerate(callee.params):
                if index < len(call.args):
                    changed |= _fold(current, param.name, call.args[index].extend(callee.param_key(index)))
            if callee.receiver:
                changed |= _fold(current, callee.receiver, call.receiver.extend(callee.receiver_key))

            if changed and callee.id not in enqueue:
                enqueue.append(callee.id)
        return enqueue

    def _propagate_globals(
        self, analysis: FunctionAnalysis, global_taint: dict[str, TaintSet]
    ) -> list[str]:
        """Join globals written by ``analysis`` into program-wide taint; return changed names."""
        changed: list[str] = []
        for name in sorted(analysis.globals_read):
            written = analysis.exit.defs_of(name) - {global_key(name)}
            if not written:
                continue
            taint = analysis.exit.get(name).extend(global_key(name))
            if _fold(global_taint, name, taint):
                changed.append(name)
        return changed


def _fold(table: dict[str, TaintSet], slot: str, taint: TaintSet) -> bool:
    if not taint:
        return False
    existing = table.get(slot, TaintSet.empty())
    if taint.issubset(existing):
        return False
    table[slot] = existing | taint
    return True


def initial_inputs(func: FunctionIR) -> dict[str, TaintSet]:
    """Declared parameter origins (entry-point request parameters and the like)."""
    return {
        param.name: TaintSet.of(
            TaintLabel.source(param.origin, func.param_key(index), param.context)
        )
        for index, param in enumerate(func.params)
        if param.origin is not None
    }
