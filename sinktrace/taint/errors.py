"""Error taxonomy for the taint engine.

Function-local failures (MalformedIR, NonConvergence) are caught by the
interprocedural resolver, which degrades the affected function's summary to
UNKNOWN and keeps going. They never abort a whole scan.
"""

from dataclasses import dataclass


class TaintError(Exception):
    """Base class for taint engine errors.

    Attributes:
        message: Human-readable error description
        details: Dict with structured context for debugging
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class MalformedIR(TaintError):
    """The supplied IR violates a structural precondition for one function."""

    def __init__(self, function_id: str, message: str, details: dict | None = None):
        super().__init__(f"{function_id}: {message}", details)
        self.function_id = function_id


class NonConvergence(TaintError):
    """A dataflow fixpoint did not stabilize within its iteration budget."""

    def __init__(self, function_id: str, budget: int, details: dict | None = None):
        super().__init__(
            f"{function_id}: fixpoint did not converge within {budget} iterations", details
        )
        self.function_id = function_id
        self.budget = budget


class ScanCancelled(TaintError):
    """The scan was cancelled at a cooperative checkpoint."""


class TaintFidelityError(TaintError):
    """Raised when a pipeline fidelity check fails in strict mode."""


@dataclass(frozen=True)
class RuleConflict:
    """An API declared as both source and sanitizer for the same context.

    Not raised: it is reported as a configuration warning and resolved by
    dropping the sanitizer role for that context.
    """

    api: str
    context: str
    origin: str

    def __str__(self) -> str:
        return (
            f"Rule conflict: '{self.api}' is a {self.origin} source and a sanitizer "
            f"for {self.context}; treating it as NOT a sanitizer for {self.context}"
        )
