"""sinktrace - source-to-sink taint analysis with context-sensitive neutralization checks."""

__version__ = "1.0.0"

from sinktrace.taint import (
    CompositeContext,
    Context,
    Finding,
    FindingSet,
    OriginKind,
    ProgramIR,
    ScanResult,
    TaintRegistry,
    load_program,
    scan,
)

__all__ = [
    "__version__",
    "scan",
    "load_program",
    "ProgramIR",
    "TaintRegistry",
    "Context",
    "CompositeContext",
    "OriginKind",
    "Finding",
    "FindingSet",
    "ScanResult",
]
