"""Path feasibility scoring and severity assignment.

Scoring only ranks findings, it never removes them. An INSUFFICIENT finding
with a concrete origin keeps at least LOW severity regardless of its score.
"""

from enum import Enum
from typing import Any

from .contexts import CompositeContext, Context
from .sanitizer_util import Classification


class Severity(Enum):
    """Standardized severity levels."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return 4 - PRIORITY_ORDER[self.value]

    @classmethod
    def parse(cls, value: "str | Severity") -> "Severity":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())

    def lowered(self) -> "Severity":
        """One level less severe, never below LOW."""
        return _BY_RANK[max(self.rank - 1, Severity.LOW.rank)]


class Confidence(Enum):
    """Confidence in finding accuracy."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER = {
    "critical": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
    "info": 4,
}

_BY_RANK = {s.rank: s for s in Severity}

CONTEXT_SEVERITY = {
    Context.RAW_COMMAND_INTERPRETER: Severity.CRITICAL,
    Context.HTML_BODY: Severity.HIGH,
    Context.HTML_ATTRIBUTE: Severity.HIGH,
    Context.SCRIPT_LITERAL: Severity.HIGH,
    Context.FILESYSTEM_PATH: Severity.HIGH,
    Context.REDIRECT_TARGET: Severity.MEDIUM,
    Context.FORWARD_TARGET: Severity.MEDIUM,
    Context.URL_PARAMETER: Severity.MEDIUM,
    Context.CSS_VALUE: Severity.MEDIUM,
    Context.LOG_RECORD: Severity.LOW,
}

HIGH_CONFIDENCE = 0.75
MEDIUM_CONFIDENCE = 0.45


def base_severity(context: CompositeContext) -> Severity:
    """Severity of an unneutralized flow into ``context`` (decided by the sink layer)."""
    return CONTEXT_SEVERITY[context.outermost]


def severity_for(classification: Classification, context: CompositeContext) -> Severity:
    if classification is Classification.SUFFICIENT:
        return Severity.INFO
    base = base_severity(context)
    if classification is Classification.UNKNOWN:
        return base.lowered()
    return base


def confidence_bucket(score: float) -> Confidence:
    if score >= HIGH_CONFIDENCE:
        return Confidence.HIGH
    if score >= MEDIUM_CONFIDENCE:
        return Confidence.MEDIUM
    return Confidence.LOW


class FeasibilityScorer:
    """Scores how likely a reported path is a real flow, in [0, 1]."""

    def __init__(self, config: dict[str, Any] | None = None):
        scoring = (config or {}).get("scoring", {})
        limits = (config or {}).get("limits", {})
        self.unknown_penalty = float(scoring.get("unknown_penalty", 0.6))
        self.min_unknown_factor = float(scoring.get("min_unknown_factor", 0.1))
        self.long_path_penalty = float(scoring.get("long_path_penalty", 0.9))
        self.corroboration_bonus = float(scoring.get("corroboration_bonus", 0.05))
        self.max_corroboration_bonus = float(scoring.get("max_corroboration_bonus", 0.15))
        self.path_length_ceiling = int(limits.get("path_length_ceiling", 16))
        self.merge_count_ceiling = int(limits.get("merge_count_ceiling", 4))

    def score(
        self,
        unknown_hops: int = 0,
        path_length: int = 0,
        merge_count: int = 0,
        corroborating_paths: int = 0,
    ) -> float:
        """Score one path.

        Args:
            unknown_hops: Unknown-propagation decisions crossed by the path
            path_length: Number of nodes on the path
            merge_count: Path nodes that are CFG merge points
            corroborating_paths: Other independent paths from the same origin
                kind into the same sink argument
        """
        value = 1.0
        if unknown_hops:
            value *= max(self.min_unknown_factor, self.unknown_penalty**unknown_hops)
        if path_length > self.path_length_ceiling:
            value *= self.long_path_penalty
        if merge_count > self.merge_count_ceiling:
            value *= self.long_path_penalty
        if corroborating_paths > 0:
            value += min(
                self.max_corroboration_bonus, self.corroboration_bonus * corroborating_paths
            )
        return round(min(1.0, max(0.0, value)), 4)
