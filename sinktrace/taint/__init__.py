"""Taint analysis module - summary-based interprocedural engine."""

from .contexts import CompositeContext, Context
from .core import FindingSet, ScanResult, ScanStats, deduplicate_findings, save_taint_analysis, scan
from .discovery import SinkSite, TaintDiscovery
from .errors import MalformedIR, NonConvergence, RuleConflict, ScanCancelled, TaintError
from .interprocedural import CallGraph, FunctionSummary, SummaryResolver
from .ir import FunctionIR, IRNode, ProgramIR, load_program
from .labels import OriginKind, TaintLabel, TaintSet
from .registry import Strength, TaintRegistry
from .sanitizer_util import Classification, SanitizerModel
from .scoring import Confidence, FeasibilityScorer, Severity
from .taint_path import Finding, PathEnumerator

__all__ = [
    "scan",
    "save_taint_analysis",
    "deduplicate_findings",
    "FindingSet",
    "ScanResult",
    "ScanStats",
    "Finding",
    "PathEnumerator",
    "TaintRegistry",
    "Strength",
    "TaintDiscovery",
    "SinkSite",
    "SanitizerModel",
    "Classification",
    "FeasibilityScorer",
    "Severity",
    "Confidence",
    "SummaryResolver",
    "FunctionSummary",
    "CallGraph",
    "ProgramIR",
    "FunctionIR",
    "IRNode",
    "load_program",
    "Context",
    "CompositeContext",
    "OriginKind",
    "TaintLabel",
    "TaintSet",
    "TaintError",
    "MalformedIR",
    "NonConvergence",
    "ScanCancelled",
    "RuleConflict",
]
