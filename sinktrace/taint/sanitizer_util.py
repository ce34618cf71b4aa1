"""Neutralization verification: is a path's sanitization adequate for its sink context?

Presence of *a* sanitizer on a path is not enough. The verdict depends on the
strength of each step, the contexts it is sound for, and, for composite
contexts, on the order in which the steps are applied.

Precedence:

1. Parameterization anywhere between source and sink is sufficient on its own.
2. Layers are matched innermost-first to steps in path order. A layer matched
   by a whitelist (or canonicalization) step at a strictly later position than
   the previous layer's step is covered.
3. Layers whose context requires canonicalization need a canonicalization step
   followed by a whitelist step, both covering that layer.
4. A layer only a blacklist step covers makes the path INSUFFICIENT.
5. A path with no relevant step is INSUFFICIENT, or UNKNOWN when its only
   origin is unknown-external.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .contexts import CompositeContext, Context
from .ir import NodeKind, ProgramIR
from .labels import TaintLabel
from .registry import Strength, TaintRegistry


class Classification(Enum):
    SUFFICIENT = "SUFFICIENT"
    INSUFFICIENT = "INSUFFICIENT"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class NeutralizationStep:
    """A sanitizer call on a path. ``position`` is the index in the path."""

    node_key: str
    api: str
    contexts: frozenset[Context]
    strength: Strength
    position: int

    def covers(self, context: Context) -> bool:
        return context in self.contexts

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node_key,
            "api": self.api,
            "contexts": sorted(c.value for c in self.contexts),
            "strength": self.strength.value,
            "position": self.position,
        }


@dataclass(frozen=True)
class Verdict:
    classification: Classification
    reason: str
    matched: tuple[NeutralizationStep, ...] = ()


_VALIDATING = (Strength.WHITELIST, Strength.CANONICALIZATION)


class SanitizerModel:
    """Judges the neutralization steps on a path against a sink context."""

    def __init__(self, program: ProgramIR, registry: TaintRegistry):
        self.program = program
        self.registry = registry

    def steps_on_path(self, path: list[str] | tuple[str, ...]) -> list[NeutralizationStep]:
        """Sanitizer steps strictly between the source (first) and sink (last) node."""
        steps: list[NeutralizationStep] = []
        for position in range(1, len(path) - 1):
            node = self.program.node(path[position])
            if node is None or node.kind is not NodeKind.CALL:
                continue
            for rule in self.registry.sanitizers_for(node.api):
                steps.append(
                    NeutralizationStep(
                        node_key=path[position],
                        api=rule.api,
                        contexts=rule.contexts,
                        strength=rule.strength,
                        position=position,
                    )
                )
        return steps

    def classify(
        self,
        steps: list[NeutralizationStep],
        context: CompositeContext,
        label: TaintLabel,
    ) -> Verdict:
        """Classify one path.

        Args:
            steps: Neutralization steps in path order
            context: Sink context of the argument the path reaches
            label: Taint label carried along the path

        Returns:
            Verdict with classification, reason, and the steps that were matched
        """
        for step in steps:
            if step.strength is Strength.PARAMETERIZATION:
                return Verdict(Classification.SUFFICIENT, f"parameterized by {step.api}", (step,))

        relevant = [s for s in steps if any(s.covers(layer) for layer in context)]
        if not relevant:
            if label.unknown_only:
                return Verdict(Classification.UNKNOWN, "unknown-external origin, no neutralization")
            return Verdict(Classification.INSUFFICIENT, "no neutralization for " + str(context))

        matched: list[NeutralizationStep] = []
        floor = 0
        for layer in context:
            if self.registry.requires_canonicalization(layer):
                canon = _first(steps, layer, floor, (Strength.CANONICALIZATION,))
                whitelist = _first(
                    steps, layer, canon.position if canon else floor, (Strength.WHITELIST,)
                )
                if canon is None or whitelist is None:
                    return Verdict(
                        Classification.INSUFFICIENT,
                        _canonicalization_reason(steps, layer, floor, canon),
                        tuple(matched),
                    )
                matched.extend((canon, whitelist))
                floor = whitelist.position
                continue

            step = _first(steps, layer, floor, _VALIDATING)
            if step is not None:
                matched.append(step)
                floor = step.position
                continue

            if _first(steps, layer, floor, (Strength.BLACKLIST,)) is not None:
                return Verdict(
                    Classification.INSUFFICIENT,
                    f"{layer.value} only covered by blacklist filtering",
                    tuple(matched),
                )
            return Verdict(
                Classification.INSUFFICIENT,
                f"{layer.value} not neutralized in order for {context}",
                tuple(matched),
            )

        return Verdict(
            Classification.SUFFICIENT,
            "neutralized for " + str(context),
            tuple(matched),
        )


def _first(
    steps: list[NeutralizationStep],
    layer: Context,
    after: int,
    strengths: tuple[Strength, ...],
) -> NeutralizationStep | None:
    for step in steps:
        if step.position > after and step.strength in strengths and step.covers(layer):
            return step
    return None


def _canonicalization_reason(
    steps: list[NeutralizationStep],
    layer: Context,
    floor: int,
    canon: NeutralizationStep | None,
) -> str:
    if canon is not None:
        return f"{layer.value} canonicalized but never validated afterwards"
    if _first(steps, layer, floor, (Strength.WHITELIST,)) is not None:
        return f"{layer.value} validated without prior canonicalization"
    if _first(steps, layer, floor, (Strength.BLACKLIST,)) is not None:
        return f"{layer.value} only covered by blacklist filtering"
    return f"{layer.value} not neutralized in order"
