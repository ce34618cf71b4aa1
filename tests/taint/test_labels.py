"""Tests for taint labels and label sets."""

from sinktrace.taint.contexts import Context
from sinktrace.taint.labels import Hop, OriginKind, TaintLabel, TaintSet, join_all

import pytest


class TestOriginKind:
    def test_parse_accepts_value_and_name(self):
        """VERIFY: Origins parse from 'network-parameter' and 'NETWORK_PARAMETER'."""
        assert OriginKind.parse("network-parameter") is OriginKind.NETWORK_PARAMETER
        assert OriginKind.parse("STORED_RECORD") is OriginKind.STORED_RECORD

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            OriginKind.parse("carrier-pigeon")

    def test_specificity_ranking(self):
        """VERIFY: network-parameter = stored-record > header = cookie > file > env > unknown."""
        rank = lambda o: o.specificity  # noqa: E731
        assert rank(OriginKind.NETWORK_PARAMETER) == rank(OriginKind.STORED_RECORD)
        assert rank(OriginKind.STORED_RECORD) > rank(OriginKind.HEADER)
        assert rank(OriginKind.HEADER) == rank(OriginKind.COOKIE)
        assert rank(OriginKind.COOKIE) > rank(OriginKind.FILE_CONTENT)
        assert rank(OriginKind.FILE_CONTENT) > rank(OriginKind.ENVIRONMENT)
        assert rank(OriginKind.ENVIRONMENT) > rank(OriginKind.UNKNOWN_EXTERNAL)


class TestTaintLabel:
    def test_equality_ignores_provenance(self):
        """VERIFY: Two labels from the same origin kind are equal whatever their path."""
        a = TaintLabel.source("network-parameter", "f::n1").extend("f::n2")
        b = TaintLabel.source("network-parameter", "g::n7")
        assert a == b
        assert hash(a) == hash(b)
        assert a.provenance != b.provenance

    def test_context_distinguishes_labels(self):
        a = TaintLabel.source("header", "f::n1", Context.HTML_BODY)
        b = TaintLabel.source("header", "f::n1")
        assert a != b

    def test_extend_derives_new_label(self):
        """VERIFY: extend() never mutates the original label."""
        label = TaintLabel.source("cookie", "f::n1")
        extended = label.extend("f::n2")
        assert label.nodes == ("f::n1",)
        assert extended.nodes == ("f::n1", "f::n2")

    def test_extend_same_node_is_noop(self):
        label = TaintLabel.source("cookie", "f::n1")
        assert label.extend("f::n1") is label

    def test_mark_unknown_records_hop(self):
        """VERIFY: mark_unknown() flags the new hop as an unknown-propagation decision."""
        label = TaintLabel.source("cookie", "f::n1").mark_unknown("f::n2")
        assert label.provenance[-1] == Hop("f::n2", unknown=True)
        assert label.crossed_unknown

    def test_join_retains_all_origins(self):
        """VERIFY: join() keeps every origin as a set."""
        a = TaintLabel.source("network-parameter", "f::n1")
        b = TaintLabel.source("environment", "f::n2")
        joined = a.join(b)
        assert joined.origins == {OriginKind.NETWORK_PARAMETER, OriginKind.ENVIRONMENT}

    def test_join_keeps_more_specific_provenance(self):
        """VERIFY: The provenance of the higher-ranked origin survives a join."""
        weak = TaintLabel.source("unknown-external", "f::n1")
        strong = TaintLabel.source("network-parameter", "f::n5").extend("f::n6")
        assert weak.join(strong).nodes == ("f::n5", "f::n6")
        assert strong.join(weak).nodes == ("f::n5", "f::n6")

    def test_primary_origin_prefers_specificity(self):
        label = TaintLabel.source("environment", "f::n1").join(TaintLabel.source("header", "f::n2"))
        assert label.primary_origin is OriginKind.HEADER

    def test_symbolic_label(self):
        """VERIFY: A label with markers and no origins is symbolic, not concrete."""
        label = TaintLabel.symbolic("param:0", "f::param:0")
        assert label.is_symbolic
        assert not label.is_concrete

    def test_unknown_only(self):
        assert TaintLabel.source("unknown-external", "f::n1").unknown_only
        mixed = TaintLabel.source("unknown-external", "f::n1").join(TaintLabel.source("cookie", "f::n2"))
        assert not mixed.unknown_only


class TestTaintSet:
    def test_empty_is_falsy(self):
        assert not TaintSet.empty()
        assert len(TaintSet.empty()) == 0

    def test_union_keeps_unequal_members(self):
        a = TaintSet.of(TaintLabel.source("cookie", "f::n1"))
        b = TaintSet.of(TaintLabel.source("header", "f::n2"))
        assert len(a | b) == 2
        assert (a | b).origins == {OriginKind.COOKIE, OriginKind.HEADER}

    def test_union_prefers_shorter_provenance_for_equal_members(self):
        """VERIFY: For equal labels the more specific (shorter) provenance is kept."""
        long = TaintLabel.source("cookie", "f::n1").extend("f::n2").extend("f::n3")
        short = TaintLabel.source("cookie", "f::n9")
        merged = TaintSet.of(long) | TaintSet.of(short)
        assert len(merged) == 1
        assert merged.get(short).nodes == ("f::n9",)

    def test_union_is_monotone(self):
        """VERIFY: A set is always a subset of its union with anything."""
        a = TaintSet.of(TaintLabel.source("cookie", "f::n1"))
        b = TaintSet.of(TaintLabel.source("header", "f::n2"))
        assert a.issubset(a | b)
        assert b.issubset(a | b)

    def test_concrete_drops_symbolic_labels(self):
        symbolic = TaintLabel.symbolic("param:0", "f::param:0")
        concrete = TaintLabel.source("cookie", "f::n1")
        taint = TaintSet.of(symbolic, concrete)
        assert list(taint.concrete()) == [concrete]
        assert taint.symbols == {"param:0"}

    def test_extend_empty_stays_empty(self):
        assert TaintSet.empty().extend("f::n1") is TaintSet.empty()

    def test_join_all_of_nothing_is_empty(self):
        assert join_all([]) == TaintSet.empty()
        assert join_all([TaintSet.empty(), TaintSet.empty()]) == TaintSet.empty()
