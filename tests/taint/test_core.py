"""Tests for FindingSet, deduplication and report persistence."""

import json

import pytest

from sinktrace.taint import (
    Classification,
    CompositeContext,
    Context,
    FindingSet,
    OriginKind,
    ScanResult,
    ScanStats,
    Severity,
    deduplicate_findings,
    save_taint_analysis,
    scan,
)
from sinktrace.taint.discovery import SinkSite
from sinktrace.taint.labels import TaintLabel
from sinktrace.taint.taint_path import Finding


def finding(
    origin="network-parameter",
    node_key="f::sink",
    context=("raw-command-interpreter",),
    classification=Classification.INSUFFICIENT,
    severity=Severity.CRITICAL,
    confidence=1.0,
    path=("f::src", "f::sink"),
):
    site = SinkSite(
        node_key=node_key,
        function_id=node_key.split("::")[0],
        api="cursor.execute",
        arg_index=0,
        context=CompositeContext.of(*context),
        slot="v",
    )
    return Finding(
        label=TaintLabel.source(origin, path[0]),
        sink=site,
        path=path,
        classification=classification,
        severity=severity,
        confidence=confidence,
    )


class TestFindingSet:
    def test_iteration_is_ordered_and_restartable(self):
        low = finding(severity=Severity.LOW, node_key="f::a")
        crit = finding(node_key="f::b")
        findings = FindingSet([low, crit])
        assert list(findings) == [crit, low]
        assert list(findings) == [crit, low]
        assert len(findings) == 2

    def test_empty_is_falsy(self):
        assert not FindingSet()

    def test_findings_for_context_matches_any_layer(self):
        nested = finding(context=("script-literal", "html-attribute"), severity=Severity.HIGH)
        sql = finding(node_key="f::q")
        findings = FindingSet([nested, sql])
        assert list(findings.findings_for(Context.SCRIPT_LITERAL)) == [nested]
        assert list(findings.findings_for("html-attribute")) == [nested]
        assert len(findings.findings_for(Context.HTML_BODY)) == 0

    def test_findings_for_origin(self):
        cookie = finding(origin="cookie", node_key="f::c")
        param = finding(node_key="f::p")
        findings = FindingSet([cookie, param])
        assert list(findings.findings_for(OriginKind.COOKIE)) == [cookie]
        assert list(findings.findings_for("network-parameter")) == [param]

    def test_filter_keeps_concrete_insufficient(self):
        """VERIFY: Thresholds never hide an INSUFFICIENT finding with a concrete origin."""
        weak = finding(severity=Severity.LOW, confidence=0.2)
        unknown = finding(
            origin="unknown-external",
            node_key="f::u",
            classification=Classification.UNKNOWN,
            severity=Severity.HIGH,
            confidence=0.2,
        )
        safe = finding(node_key="f::s", classification=Classification.SUFFICIENT, severity=Severity.INFO)
        filtered = FindingSet([weak, unknown, safe]).filter(min_severity="medium", min_confidence=0.5)
        assert list(filtered) == [weak]

    def test_filter_by_severity(self):
        unknown = finding(
            origin="unknown-external", classification=Classification.UNKNOWN, severity=Severity.MEDIUM
        )
        assert len(FindingSet([unknown]).filter(min_severity=Severity.HIGH)) == 0
        assert len(FindingSet([unknown]).filter(min_severity=Severity.MEDIUM)) == 1

    def test_by_classification(self):
        safe = finding(classification=Classification.SUFFICIENT, severity=Severity.INFO)
        bad = finding(node_key="f::b")
        assert list(FindingSet([safe, bad]).by_classification(Classification.SUFFICIENT)) == [safe]


class TestDeduplicate:
    def test_keeps_highest_confidence(self):
        short = finding(confidence=0.6)
        best = finding(confidence=0.9, path=("f::src", "f::mid", "f::sink"))
        (kept,) = deduplicate_findings([short, best])
        assert kept.confidence == 0.9
        assert kept.collapsed_count == 2
        assert kept.related_paths == (("f::src", "f::sink"),)

    def test_shorter_path_breaks_ties(self):
        long = finding(path=("f::src", "f::mid", "f::sink"))
        short = finding()
        (kept,) = deduplicate_findings([long, short])
        assert kept.path == ("f::src", "f::sink")

    def test_classification_is_part_of_the_key(self):
        bad = finding()
        safe = finding(classification=Classification.SUFFICIENT, severity=Severity.INFO)
        assert len(deduplicate_findings([bad, safe])) == 2

    def test_distinct_sinks_not_collapsed(self):
        a = finding(node_key="f::a")
        b = finding(node_key="f::b")
        assert len(deduplicate_findings([a, b])) == 2


class TestReport:
    def test_to_dict_summary(self):
        result = ScanResult(
            findings=FindingSet(
                [
                    finding(),
                    finding(node_key="f::s", classification=Classification.SUFFICIENT, severity=Severity.INFO),
                ]
            ),
            stats=ScanStats(functions_total=1, functions_analyzed=1),
            summaries={},
        )
        report = result.to_dict()
        assert report["success"] is True
        assert report["total_findings"] == 2
        assert report["vulnerabilities_by_type"] == {"SQL Injection": 1}
        assert report["summary"]["insufficient"] == 1
        assert report["summary"]["sufficient"] == 1
        assert report["summary"]["by_severity"] == {"critical": 1, "info": 1}
        assert report["stats"]["incomplete"] is False

    def test_save_taint_analysis(self, tmp_path, registry, sqli_program):
        result = scan(sqli_program, registry)
        output = tmp_path / "out" / "findings.json"
        fidelity = save_taint_analysis(result, str(output))
        assert fidelity["status"] == "OK"

        data = json.loads(output.read_text(encoding="utf-8"))
        assert data["total_findings"] == 1
        assert data["findings"][0]["vulnerability_type"] == "SQL Injection"
        assert data["findings"][0]["sink"]["line"] == 4

    def test_save_empty_result(self, tmp_path):
        result = ScanResult(findings=FindingSet(), stats=ScanStats(), summaries={})
        fidelity = save_taint_analysis(result, str(tmp_path / "findings.json"))
        assert fidelity["status"] == "OK"


def test_findings_for_rejects_unknown_name():
    with pytest.raises(ValueError):
        FindingSet([finding()]).findings_for("no-such-thing")
