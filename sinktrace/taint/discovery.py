"""Sink discovery and context classification.

Every call whose API has a sink role yields one SinkSite per checked argument.
The site's context starts from the rule's declared layers and is refined by
walking outward-to-inward from the argument: first the constructs that
enclose the argument at the call itself, then, backward through reaching
definitions, assignments that embed the value into another context (template
rendering, string interpolation into an attribute, ...).

Example: ``render(page)`` is an html-body sink, ``page`` embeds ``attr`` into
an html-attribute and ``attr`` embeds ``user`` into a script-literal. The
argument's context is ``script-literal < html-attribute < html-body``.
"""

from dataclasses import dataclass
from typing import Any

from sinktrace.utils.logging import logger

from .contexts import CompositeContext, Context
from .ir import FunctionIR, IRNode, NodeKind, ProgramIR
from .propagation import FunctionAnalysis
from .registry import SinkRule, TaintRegistry


@dataclass(frozen=True)
class SinkSite:
    """One checked argument slot of a sink call."""

    node_key: str
    function_id: str
    api: str
    arg_index: int
    context: CompositeContext
    slot: str | None = None
    line: int = 0
    file: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node_key,
            "function": self.function_id,
            "api": self.api,
            "arg_index": self.arg_index,
            "context": self.context.to_list(),
            "file": self.file,
            "line": self.line,
        }


class TaintDiscovery:
    """Finds sink sites and source nodes in an analyzed program."""

    def __init__(self, program: ProgramIR, registry: TaintRegistry):
        self.program = program
        self.registry = registry

    def discover_sinks(self, analyses: dict[str, FunctionAnalysis]) -> list[SinkSite]:
        """Enumerate sink sites in every analyzed function.

        Args:
            analyses: Function id -> concrete analysis (reaching definitions are
                taken from here)

        Returns:
            Sink sites ordered by node key then argument index
        """
        sites: list[SinkSite] = []
        for fid in sorted(analyses):
            func = self.program.functions[fid]
            reaching = analyses[fid].reaching
            tainted = analyses[fid].tainted_operands
            for node in func.call_nodes:
                rule = self.registry.sink_for(node.api)
                if rule is None:
                    continue
                sites.extend(self._sites_for_call(func, node, rule, reaching, tainted))

        logger.debug(f"Discovered {len(sites)} sink site(s)")
        return sites

    def _sites_for_call(
        self,
        func: FunctionIR,
        node: IRNode,
        rule: SinkRule,
        reaching: dict[str, dict[str, frozenset[str]]],
        tainted: dict[str, set[str]],
    ) -> list[SinkSite]:
        sites = []
        for index, slot in enumerate(node.args):
            if not rule.checks(index) or slot is None:
                continue
            sites.append(
                SinkSite(
                    node_key=func.key(node.id),
                    function_id=func.id,
                    api=rule.api,
                    arg_index=index,
                    context=self.classify_context(func, node, index, rule, reaching, tainted),
                    slot=slot,
                    line=node.line,
                    file=node.file or func.file,
                )
            )
        return sites

    def classify_context(
        self,
        func: FunctionIR,
        node: IRNode,
        index: int,
        rule: SinkRule,
        reaching: dict[str, dict[str, frozenset[str]]] | None = None,
        tainted: dict[str, set[str]] | None = None,
    ) -> CompositeContext:
        """Composite context of argument ``index`` at sink call ``node``.

        The walk follows the single reaching definition of the argument back
        through copies and embeddings, stopping at merges and non-assign
        definitions. An embedding only adds its layers when no co-operand
        outside it carries taint (``tainted`` maps assign node ids to their
        tainted operands).
        """
        layers: list[Context] = list(rule.layers)
        layers.extend(node.enclosing.get(index, ()))

        slot = node.args[index] if index < len(node.args) else None
        at = node.id
        seen: set[str] = set()

        while slot is not None and reaching:
            defs = reaching.get(at, {}).get(slot, frozenset())
            if len(defs) != 1:
                break  # no definition or ambiguous merge
            def_key = next(iter(defs))
            owner, _, def_id = def_key.rpartition("::")
            if owner != func.id or def_id not in func.nodes or def_key in seen:
                break
            seen.add(def_key)

            definition = func.nodes[def_id]
            if definition.kind is not NodeKind.ASSIGN:
                break

            if definition.embeds:
                embedded = [o for o in definition.operands if o in definition.embeds]
                if tainted is not None and tainted.get(def_id, set()) - set(embedded):
                    break
                placements = {definition.embeds[o] for o in embedded}
                if len(placements) != 1:
                    break
                layers.extend(placements.pop())
                if len(embedded) != 1:
                    break
                slot = embedded[0]
            elif len(definition.operands) == 1:
                slot = definition.operands[0]
            else:
                break
            at = def_id

        return CompositeContext.from_outermost(layers)

    def discover_sources(self, analyses: dict[str, FunctionAnalysis]) -> list[dict[str, Any]]:
        """Origin nodes (source calls, declared parameters, UNKNOWN callees)."""
        sources = []
        for fid in sorted(analyses):
            for node_key, origins in sorted(analyses[fid].origins.items()):
                sources.append({
                    "node": node_key,
                    "function": fid,
                    "origins": sorted(o.value for o in origins),
                })
        return sources
