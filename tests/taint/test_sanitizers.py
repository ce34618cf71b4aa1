"""Tests for the neutralization effectiveness model."""

import pytest

from conftest import call, make_function, source
from sinktrace.taint.contexts import CompositeContext, Context
from sinktrace.taint.labels import TaintLabel
from sinktrace.taint.registry import Strength
from sinktrace.taint.sanitizer_util import Classification, NeutralizationStep, SanitizerModel

CONCRETE = TaintLabel.source("network-parameter", "f::n0")
UNKNOWN_ONLY = TaintLabel.source("unknown-external", "f::n0")


def step(position, strength, *contexts, api=None):
    return NeutralizationStep(
        node_key=f"f::s{position}",
        api=api or f"{strength}-{position}",
        contexts=frozenset(Context.parse(c) for c in contexts),
        strength=Strength(strength),
        position=position,
    )


@pytest.fixture
def model(registry, build_program):
    return SanitizerModel(build_program(), registry)


class TestClassification:
    def test_no_steps_is_insufficient(self, model):
        verdict = model.classify([], CompositeContext.of("html-body"), CONCRETE)
        assert verdict.classification is Classification.INSUFFICIENT

    def test_no_steps_unknown_origin_is_unknown(self, model):
        """VERIFY: Unknown-external taint without neutralization is UNKNOWN, not INSUFFICIENT."""
        verdict = model.classify([], CompositeContext.of("html-body"), UNKNOWN_ONLY)
        assert verdict.classification is Classification.UNKNOWN

    def test_parameterization_is_sufficient_anywhere(self, model):
        """VERIFY: Parameterization neutralizes every context on its own."""
        steps = [step(1, "blacklist", "html-body"), step(2, "parameterization")]
        for ctx in (CompositeContext.of("raw-command-interpreter"), CompositeContext.of("script-literal", "html-body")):
            assert model.classify(steps, ctx, CONCRETE).classification is Classification.SUFFICIENT

    def test_matching_whitelist_is_sufficient(self, model):
        verdict = model.classify([step(1, "whitelist", "html-body")], CompositeContext.of("html-body"), CONCRETE)
        assert verdict.classification is Classification.SUFFICIENT
        assert len(verdict.matched) == 1

    def test_wrong_context_encoder_is_insufficient(self, model):
        """VERIFY: HTML-body encoding does not neutralize a script literal."""
        verdict = model.classify(
            [step(1, "whitelist", "html-body")], CompositeContext.of("script-literal"), CONCRETE
        )
        assert verdict.classification is Classification.INSUFFICIENT

    def test_blacklist_only_is_insufficient(self, model):
        verdict = model.classify([step(1, "blacklist", "html-body")], CompositeContext.of("html-body"), CONCRETE)
        assert verdict.classification is Classification.INSUFFICIENT
        assert "blacklist" in verdict.reason

    def test_blacklist_alongside_whitelist_is_sufficient(self, model):
        steps = [step(1, "blacklist", "html-body"), step(2, "whitelist", "html-body")]
        verdict = model.classify(steps, CompositeContext.of("html-body"), CONCRETE)
        assert verdict.classification is Classification.SUFFICIENT


class TestCompositeOrdering:
    CTX = CompositeContext.of("script-literal", "html-attribute")

    def test_innermost_first_is_sufficient(self, model):
        """VERIFY: JS-escape then attribute-escape neutralizes script-in-attribute."""
        steps = [step(1, "whitelist", "script-literal"), step(2, "whitelist", "html-attribute")]
        assert model.classify(steps, self.CTX, CONCRETE).classification is Classification.SUFFICIENT

    def test_outermost_first_is_insufficient(self, model):
        """VERIFY: Attribute-escape then JS-escape is the wrong order."""
        steps = [step(1, "whitelist", "html-attribute"), step(2, "whitelist", "script-literal")]
        verdict = model.classify(steps, self.CTX, CONCRETE)
        assert verdict.classification is Classification.INSUFFICIENT
        assert "html-attribute" in verdict.reason

    def test_missing_layer_is_insufficient(self, model):
        steps = [step(1, "whitelist", "script-literal")]
        assert model.classify(steps, self.CTX, CONCRETE).classification is Classification.INSUFFICIENT

    def test_one_step_cannot_cover_two_layers(self, model):
        """VERIFY: Each layer needs its own step at a strictly later position."""
        steps = [step(1, "whitelist", "script-literal", "html-attribute")]
        assert model.classify(steps, self.CTX, CONCRETE).classification is Classification.INSUFFICIENT


class TestCanonicalization:
    CTX = CompositeContext.of("filesystem-path")

    def test_canonicalize_then_validate_is_sufficient(self, model):
        steps = [step(1, "canonicalization", "filesystem-path"), step(2, "whitelist", "filesystem-path")]
        assert model.classify(steps, self.CTX, CONCRETE).classification is Classification.SUFFICIENT

    def test_validate_without_canonicalization_is_insufficient(self, model):
        verdict = model.classify([step(1, "whitelist", "filesystem-path")], self.CTX, CONCRETE)
        assert verdict.classification is Classification.INSUFFICIENT
        assert "without prior canonicalization" in verdict.reason

    def test_validate_before_canonicalization_is_insufficient(self, model):
        steps = [step(1, "whitelist", "filesystem-path"), step(2, "canonicalization", "filesystem-path")]
        verdict = model.classify(steps, self.CTX, CONCRETE)
        assert verdict.classification is Classification.INSUFFICIENT
        assert "never validated" in verdict.reason

    def test_canonicalization_alone_suffices_elsewhere(self, model):
        steps = [step(1, "canonicalization", "html-body")]
        verdict = model.classify(steps, CompositeContext.of("html-body"), CONCRETE)
        assert verdict.classification is Classification.SUFFICIENT


class TestStepsOnPath:
    def test_steps_exclude_endpoints(self, registry, build_program):
        program = build_program(
            make_function(
                "f",
                [
                    source("n1", "x"),
                    call("n2", "os.path.normpath", ["x"], "p"),
                    call("n3", "allowlist_path", ["p"], "q"),
                    call("n4", "open", ["q"]),
                ],
            )
        )
        steps = SanitizerModel(program, registry).steps_on_path(["f::n1", "f::n2", "f::n3", "f::n4"])
        assert [(s.api, s.strength, s.position) for s in steps] == [
            ("os.path.normpath", Strength.CANONICALIZATION, 1),
            ("allowlist_path", Strength.WHITELIST, 2),
        ]
        assert steps[0].to_dict()["contexts"] == ["filesystem-path"]
