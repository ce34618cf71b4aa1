"""Scan pipeline fidelity control.

Manifest/receipt verification at the stages where results could silently
disappear:
1. Discovery - every sink call seen by propagation has sink sites
2. Analysis - every reachable function was analyzed or failed
3. Deduplication - every candidate path is accounted for after collapsing
4. Output - JSON persistence
"""

import hashlib
import json
import os
from typing import Any, Iterable

from sinktrace.utils.constants import ENV_FIDELITY_STRICT
from sinktrace.utils.logging import logger

from .errors import TaintFidelityError


def create_manifest(items: list) -> dict[str, Any]:
    """Count + order-independent fingerprint of a list of JSON-serializable items."""
    encoded = sorted(json.dumps(item, sort_keys=True, default=str) for item in items)
    digest = hashlib.sha256("\n".join(encoded).encode("utf-8")).hexdigest()
    return {"count": len(items), "fingerprint": digest[:16]}


def create_discovery_manifest(sources: list, sinks: list) -> dict[str, Any]:
    """Create manifest after sink/source discovery.

    Args:
        sources: Discovered origin nodes
        sinks: Discovered sink sites (as dicts)

    Returns:
        Manifest dict with source/sink tokens, the sink call nodes and stage identifier
    """
    return {
        "sources": create_manifest(sources),
        "sinks": create_manifest(sinks),
        "sink_nodes": sorted({s["node"] for s in sinks}),
        "_stage": "discovery",
    }


def create_discovery_receipt(observed_sinks: Iterable[str]) -> dict[str, Any]:
    """Sink calls propagation observed with at least one checked argument."""
    return {
        "observed_sinks": sorted(set(observed_sinks)),
        "_stage": "discovery",
    }


def create_analysis_manifest(
    functions_expected: Iterable[str], summaries_degraded: int = 0
) -> dict[str, Any]:
    """Functions the concrete pass has to reach (entries and usable callees)."""
    return {
        "functions_expected": sorted(set(functions_expected)),
        "summaries_degraded": summaries_degraded,
        "_stage": "analysis",
    }


def create_analysis_receipt(
    functions_analyzed: Iterable[str], functions_failed: Iterable[str]
) -> dict[str, Any]:
    return {
        "functions_analyzed": sorted(set(functions_analyzed)),
        "functions_failed": sorted(set(functions_failed)),
        "_stage": "analysis",
    }


def create_dedup_manifest(pre_dedup_count: int, post_dedup_count: int) -> dict[str, Any]:
    """Create manifest after deduplication.

    Args:
        pre_dedup_count: Candidate findings before deduplication
        post_dedup_count: Findings after deduplication

    Returns:
        Manifest dict with dedup stats and removal ratio
    """
    return {
        "pre_dedup_count": pre_dedup_count,
        "post_dedup_count": post_dedup_count,
        "removed_count": pre_dedup_count - post_dedup_count,
        "removal_ratio": (pre_dedup_count - post_dedup_count) / max(pre_dedup_count, 1),
        "_stage": "dedup",
    }


def create_dedup_receipt(collapsed_counts: list[int]) -> dict[str, Any]:
    return {
        "collapsed_total": sum(collapsed_counts),
        "findings": len(collapsed_counts),
        "_stage": "dedup",
    }


def create_json_output_receipt(json_findings: int, json_bytes_written: int) -> dict[str, Any]:
    """Create receipt after JSON write in save_taint_analysis()."""
    return {
        "json_count": json_findings,
        "json_bytes": json_bytes_written,
        "_stage": "json_output",
    }


def reconcile_taint_fidelity(
    manifest: dict[str, Any],
    receipt: dict[str, Any],
    stage: str,
    strict: bool = True,
) -> dict[str, Any]:
    """Compare manifest vs receipt at one pipeline stage.

    Args:
        manifest: What was produced/expected at this stage
        receipt: What was actually kept/written
        stage: One of "discovery", "analysis", "dedup", "json_output"
        strict: If True, raise TaintFidelityError on failure

    Returns:
        Dict with status ("OK", "WARNING", "FAILED"), errors, and warnings

    Raises:
        TaintFidelityError: In strict mode when errors are detected
    """
    if os.environ.get(ENV_FIDELITY_STRICT, "1") == "0":
        strict = False

    errors = []
    warnings = []

    if stage == "discovery":
        src_count = manifest.get("sources", {}).get("count", 0)
        sink_count = manifest.get("sinks", {}).get("count", 0)
        if src_count == 0:
            warnings.append("Discovery found 0 origin nodes - is this expected?")
        if sink_count == 0:
            warnings.append("Discovery found 0 sink sites - is this expected?")

        sink_nodes = set(manifest.get("sink_nodes", ()))
        observed = set(receipt.get("observed_sinks", ()))
        lost = sorted(observed - sink_nodes)
        if lost:
            errors.append(
                f"Discovery lost {len(lost)} sink call(s) observed during propagation: "
                f"{', '.join(lost[:5])}"
            )
        unreached = sink_nodes - observed
        if unreached:
            warnings.append(f"{len(unreached)} sink call(s) never reached by propagation")

    elif stage == "analysis":
        expected = set(manifest.get("functions_expected", ()))
        analyzed = set(receipt.get("functions_analyzed", ()))
        failed = set(receipt.get("functions_failed", ()))
        missing = sorted(expected - analyzed - failed)

        if missing:
            errors.append(
                f"Analysis accounted for {len(expected) - len(missing)}/{len(expected)} "
                f"reachable functions - pipeline stalled (missing: {', '.join(missing[:5])})"
            )
        degraded = manifest.get("summaries_degraded", 0)
        if degraded:
            warnings.append(f"{degraded} function(s) degraded to UNKNOWN summaries")
        if failed:
            warnings.append(f"{len(failed)} function(s) failed concrete analysis")

    elif stage == "dedup":
        pre = manifest.get("pre_dedup_count", 0)
        post = manifest.get("post_dedup_count", 0)
        collapsed = receipt.get("collapsed_total", 0)
        if collapsed != pre:
            errors.append(
                f"Dedup lost paths: {pre} candidates but collapsed counts sum to {collapsed}"
            )
        if receipt.get("findings", post) != post:
            errors.append(
                f"Dedup: manifest={post} findings, receipt={receipt.get('findings')}"
            )

    elif stage == "json_output":
        manifest_count = manifest.get("findings_to_write", 0)
        json_count = receipt.get("json_count", 0)

        if manifest_count > 0 and json_count == 0:
            errors.append(
                f"JSON Output: {manifest_count} findings to write, 0 in JSON (100% LOSS)"
            )
        elif manifest_count != json_count:
            warnings.append(
                f"JSON Output: manifest={manifest_count}, json={json_count} "
                f"(delta={manifest_count - json_count})"
            )

    result = {
        "status": "FAILED" if errors else ("WARNING" if warnings else "OK"),
        "stage": stage,
        "errors": errors,
        "warnings": warnings,
    }

    if errors and strict:
        error_msg = f"Fidelity FAILED at {stage}: " + "; ".join(errors)
        logger.error(error_msg)
        raise TaintFidelityError(error_msg, details=result)

    if warnings:
        logger.warning(f"Fidelity warnings at {stage}: {warnings}")

    return result
