"""Intraprocedural taint propagation.

Forward worklist fixpoint over one function's CFG. The state at every program
point maps slots (variables) to a TaintSet and to the set of definitions that
reach it. Join at merge points is union, so the analysis is monotone and a
fixpoint exists; the visit budget only guards against IR that breaks that
assumption.

Besides the exit state, a run records everything later stages need:

* flow edges (definition -> use, call arguments -> callee parameters, callee
  returns -> call site) used to enumerate concrete source-to-sink paths,
* sink observations (argument taint at every sink call),
* call observations (argument taint at every resolved call, which seeds the
  callee's parameters in the concrete pass),
* reaching definitions per node, used by the context classifier.

Flow edges depend only on the CFG and the call graph, never on taint, so a
single run in either mode yields the same edge set.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import NamedTuple

from .errors import NonConvergence
from .ir import RETURN_SLOT, FunctionIR, IRNode, NodeKind, global_key
from .labels import OriginKind, TaintLabel, TaintSet, join_all
from .registry import TaintRegistry

EDGE_LOCAL = "local"
EDGE_CALL = "call"
EDGE_RETURN = "return"
EDGE_UNKNOWN = "unknown"
EDGE_GLOBAL = "global"


class FlowEdge(NamedTuple):
    """Value defined at ``dst`` derives from the value defined at ``src``.

    ``slot`` is the slot read at ``dst`` for local edges; ``site`` is the call
    node key for call/return edges.
    """

    src: str
    dst: str
    kind: str = EDGE_LOCAL
    slot: str | None = None
    site: str | None = None

    @property
    def unknown(self) -> bool:
        return self.kind == EDGE_UNKNOWN


class Transfer(NamedTuple):
    """One entry of a summary's transfer relation."""

    input: str
    output: str
    unknown: bool = False


@dataclass(frozen=True)
class SummaryView:
    """What the engine needs to know about a callee at a call site."""

    transfers: frozenset[Transfer] = frozenset()
    generated: dict[str, TaintSet] = field(default_factory=dict)
    exit_defs: dict[str, frozenset[str]] = field(default_factory=dict)
    unknown: bool = False


@dataclass
class ValueState:
    """Taint and reaching definitions per slot at one program point."""

    taint: dict[str, TaintSet] = field(default_factory=dict)
    defs: dict[str, frozenset[str]] = field(default_factory=dict)

    def copy(self) -> "ValueState":
        return ValueState(dict(self.taint), dict(self.defs))

    def get(self, slot: str | None) -> TaintSet:
        if slot is None:
            return TaintSet.empty()
        return self.taint.get(slot, TaintSet.empty())

    def defs_of(self, slot: str | None) -> frozenset[str]:
        if slot is None:
            return frozenset()
        return self.defs.get(slot, frozenset())

    def assign(self, slot: str, taint: TaintSet, def_key: str) -> None:
        """Strong update."""
        self.taint[slot] = taint
        self.defs[slot] = frozenset({def_key})

    def weak_assign(self, slot: str, taint: TaintSet, def_key: str) -> None:
        self.taint[slot] = self.get(slot) | taint
        self.defs[slot] = self.defs_of(slot) | {def_key}

    def join(self, other: "ValueState") -> bool:
        """Join ``other`` into this state in place. Returns True on change."""
        changed = False
        for slot, taint in other.taint.items():
            current = self.taint.get(slot)
            if current is None:
                self.taint[slot] = taint
                changed = True
            elif not taint.issubset(current):
                self.taint[slot] = current | taint
                changed = True
        for slot, defs in other.defs.items():
            current = self.defs.get(slot)
            if current is None:
                self.defs[slot] = defs
                changed = True
            elif not defs <= current:
                self.defs[slot] = current | defs
                changed = True
        return changed


@dataclass(frozen=True)
class SinkObservation:
    node_key: str
    node_id: str
    api: str
    args: tuple[TaintSet, ...]


@dataclass(frozen=True)
class CallObservation:
    node_key: str
    callee: str
    args: tuple[TaintSet, ...]
    receiver: TaintSet


@dataclass
class FunctionAnalysis:
    """Result of one propagation run over a function."""

    function_id: str
    exit: ValueState
    edges: set[FlowEdge] = field(default_factory=set)
    sinks: dict[str, SinkObservation] = field(default_factory=dict)
    calls: dict[str, CallObservation] = field(default_factory=dict)
    origins: dict[str, frozenset[OriginKind]] = field(default_factory=dict)
    reaching: dict[str, dict[str, frozenset[str]]] = field(default_factory=dict)
    # Assign node id -> operands seen carrying concrete taint
    tainted_operands: dict[str, set[str]] = field(default_factory=dict)
    unresolved_calls: set[str] = field(default_factory=set)
    visits: int = 0
    globals_read: frozenset[str] = frozenset()

    @property
    def unknown_edges(self) -> int:
        return sum(1 for e in self.edges if e.unknown)

    @property
    def nodes_analyzed(self) -> int:
        return len(self.reaching)


def symbolic_inputs(function: FunctionIR, program_globals: frozenset[str]) -> dict[str, TaintSet]:
    """One marker label per parameter, receiver and global read by ``function``."""
    inputs: dict[str, TaintSet] = {}
    for index, param in enumerate(function.params):
        inputs[param.name] = TaintSet.of(
            TaintLabel.symbolic(f"param:{index}", function.param_key(index))
        )
    if function.receiver:
        inputs[function.receiver] = TaintSet.of(
            TaintLabel.symbolic("receiver", function.receiver_key)
        )
    for name in sorted(function.slots() & program_globals):
        inputs.setdefault(name, TaintSet.of(TaintLabel.symbolic(f"global:{name}", global_key(name))))
    return inputs


class PropagationEngine:
    """Runs the forward fixpoint for one function.

    Args:
        function: Function CFG
        registry: Rule database (read-only)
        summaries: Callee id -> SummaryView; a missing entry for a known
            callee means "not summarized yet" and is treated as empty
        program_globals: Names of program-level globals
        max_visits_per_node: Budget multiplier for NonConvergence
        known_functions: Ids of every function in the program
    """

    def __init__(
        self,
        function: FunctionIR,
        registry: TaintRegistry,
        summaries: dict[str, SummaryView],
        program_globals: frozenset[str] = frozenset(),
        max_visits_per_node: int = 200,
        known_functions: frozenset[str] | None = None,
    ):
        self.function = function
        self.registry = registry
        self.summaries = summaries
        self.program_globals = program_globals
        self.max_visits_per_node = max_visits_per_node
        self.known_functions = known_functions if known_functions is not None else frozenset()

    def run(self, inputs: dict[str, TaintSet]) -> FunctionAnalysis:
        """Analyze the function with ``inputs`` as the taint of params/receiver/globals."""
        func = self.function
        globals_read = frozenset(func.slots() & self.program_globals)
        analysis = FunctionAnalysis(function_id=func.id, exit=ValueState(), globals_read=globals_read)

        entry_state = ValueState()
        for index, param in enumerate(func.params):
            entry_state.assign(param.name, inputs.get(param.name, TaintSet.empty()), func.param_key(index))
            if param.origin is not None:
                analysis.origins[func.param_key(index)] = frozenset({param.origin})
        if func.receiver:
            entry_state.assign(
                func.receiver, inputs.get(func.receiver, TaintSet.empty()), func.receiver_key
            )
        for name in globals_read:
            if name not in entry_state.defs:
                entry_state.assign(name, inputs.get(name, TaintSet.empty()), global_key(name))

        in_states: dict[str, ValueState] = {func.entry: entry_state}
        out_states: dict[str, ValueState] = {}
        worklist: deque[str] = deque([func.entry])
        queued = {func.entry}
        budget = self.max_visits_per_node * max(1, len(func.nodes))

        while worklist:
            node_id = worklist.popleft()
            queued.discard(node_id)
            analysis.visits += 1
            if analysis.visits > budget:
                raise NonConvergence(func.id, budget, {"visits": analysis.visits})

            node = func.nodes[node_id]
            state = in_states[node_id]
            analysis.reaching[node_id] = dict(state.defs)

            out = self._transfer(node, state.copy(), analysis)
            out_states[node_id] = out

            for succ in node.succ:
                target = in_states.get(succ)
                if target is None:
                    in_states[succ] = out.copy()
                    changed = True
                else:
                    changed = target.join(out)
                if changed and succ not in queued:
                    worklist.append(succ)
                    queued.add(succ)

        exit_state = ValueState()
        for node_id, out in out_states.items():
            node = func.nodes[node_id]
            if node.kind is NodeKind.RETURN or not node.succ:
                exit_state.join(out)
        analysis.exit = exit_state

        for name in globals_read:
            for def_key in exit_state.defs_of(name):
                if def_key != global_key(name):
                    analysis.edges.add(FlowEdge(def_key, global_key(name), EDGE_GLOBAL))

        return analysis

    # -------------------------------------------------------------------
    # Transfer functions
    # -------------------------------------------------------------------

    def _transfer(self, node: IRNode, state: ValueState, analysis: FunctionAnalysis) -> ValueState:
        key = self.function.key(node.id)

        if node.kind is NodeKind.ASSIGN:
            self._record_uses(key, node.operands, state, analysis)
            tainted = {o for o in node.operands if state.get(o).origins}
            if tainted:
                analysis.tainted_operands.setdefault(node.id, set()).update(tainted)
            taint = join_all(state.get(o) for o in node.operands).extend(key)
            state.assign(node.target, taint, key)

        elif node.kind is NodeKind.RETURN:
            self._record_uses(key, node.operands, state, analysis)
            taint = join_all(state.get(o) for o in node.operands).extend(key)
            state.weak_assign(RETURN_SLOT, taint, key)

        elif node.kind is NodeKind.CALL:
            self._transfer_call(node, key, state, analysis)

        # BRANCH / NOP: no data effect, control-flow-implicit taint is not tracked
        return state

    def _record_uses(
        self,
        key: str,
        slots: "tuple[str | None, ...] | list[str | None]",
        state: ValueState,
        analysis: FunctionAnalysis,
        kind: str = EDGE_LOCAL,
    ) -> None:
        for slot in slots:
            for def_key in state.defs_of(slot):
                analysis.edges.add(FlowEdge(def_key, key, kind, slot=slot))

    def _transfer_call(
        self, node: IRNode, key: str, state: ValueState, analysis: FunctionAnalysis
    ) -> None:
        registry = self.registry
        arg_taint = tuple(state.get(a) for a in node.args)
        joined = join_all(arg_taint)
        if node.receiver:
            joined = joined | state.get(node.receiver)

        sink = registry.sink_for(node.api)
        if sink is not None:
            analysis.sinks[key] = SinkObservation(key, node.id, sink.api, arg_taint)
            checked = [slot for i, slot in enumerate(node.args) if sink.checks(i)]
            self._record_uses(key, checked, state, analysis)

        source = registry.source_for(node.api)
        if source is not None:
            analysis.origins[key] = frozenset({source.origin})
            result = TaintSet.of(TaintLabel.source(source.origin, key, source.context))
            self._assign_result(node, result, key, state)
            return

        if registry.is_sanitizer(node.api):
            self._record_uses(key, node.reads, state, analysis)
            self._assign_result(node, joined.extend(key), key, state)
            return

        callee = node.callee if node.callee in self.known_functions else None
        if callee is not None and not node.dynamic:
            summary = self.summaries.get(callee)
            if summary is None or not summary.unknown:
                self._apply_summary(node, key, callee, summary or SummaryView(), arg_taint, state, analysis)
                return
            # Callee failed analysis: callers see a fresh unknown-external origin
            self._record_uses(key, node.reads, state, analysis, EDGE_UNKNOWN)
            analysis.origins[key] = frozenset({OriginKind.UNKNOWN_EXTERNAL})
            fresh = TaintLabel.source(OriginKind.UNKNOWN_EXTERNAL, key)
            self._assign_result(node, joined.mark_unknown(key).add(fresh), key, state)
            return

        # Unresolved, dynamic or unmodeled library call. A sink's own return
        # value is unmodeled too, but its argument edges are already recorded.
        if sink is None:
            self._record_uses(key, node.reads, state, analysis, EDGE_UNKNOWN)
            analysis.unresolved_calls.add(key)
        self._assign_result(node, joined.mark_unknown(key), key, state)

    def _assign_result(self, node: IRNode, taint: TaintSet, key: str, state: ValueState) -> None:
        if node.target:
            state.assign(node.target, taint, key)

    def _apply_summary(
        self,
        node: IRNode,
        key: str,
        callee: str,
        summary: SummaryView,
        arg_taint: tuple[TaintSet, ...],
        state: ValueState,
        analysis: FunctionAnalysis,
    ) -> None:
        receiver_taint = state.get(node.receiver)
        analysis.calls[key] = CallObservation(key, callee, arg_taint, receiver_taint)

        for index, slot in enumerate(node.args):
            param_key = f"{callee}::param:{index}"
            for def_key in state.defs_of(slot):
                analysis.edges.add(FlowEdge(def_key, param_key, EDGE_CALL, slot=slot, site=key))
        if node.receiver:
            for def_key in state.defs_of(node.receiver):
                analysis.edges.add(
                    FlowEdge(def_key, f"{callee}::receiver", EDGE_CALL, slot=node.receiver, site=key)
                )

        inputs: dict[str, TaintSet] = {}
        for index, taint in enumerate(arg_taint):
            inputs[f"param:{index}"] = taint
        inputs["receiver"] = receiver_taint

        outputs: dict[str, list[TaintSet]] = {}
        for transfer in sorted(summary.transfers):
            if transfer.input.startswith("global:"):
                taint = state.get(transfer.input[len("global:"):])
            else:
                taint = inputs.get(transfer.input, TaintSet.empty())
            if taint:
                outputs.setdefault(transfer.output, []).append(
                    taint.extend(key, unknown=transfer.unknown)
                )
        for output, generated in summary.generated.items():
            if generated:
                outputs.setdefault(output, []).append(generated.extend(key))

        for output, def_keys in summary.exit_defs.items():
            for def_key in def_keys:
                analysis.edges.add(FlowEdge(def_key, key, EDGE_RETURN, site=key))

        if node.target:
            state.assign(node.target, join_all(outputs.get(RETURN_SLOT, ())), key)

        for output, taints in outputs.items():
            taint = join_all(taints)
            if output.startswith("param:"):
                index = int(output[len("param:"):])
                if index < len(node.args) and node.args[index] is not None:
                    state.weak_assign(node.args[index], taint, key)
            elif output.startswith("global:"):
                state.weak_assign(output[len("global:"):], taint, key)

        # Out-params and globals the callee may write still gain this call as a def
        for output in summary.exit_defs:
            if output.startswith("global:"):
                name = output[len("global:"):]
                if name in self.program_globals:
                    state.defs[name] = state.defs_of(name) | {key}

