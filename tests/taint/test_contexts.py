"""Tests for sink contexts and composite contexts."""

import pytest

from sinktrace.taint.contexts import CompositeContext, Context


class TestContext:
    def test_all_contexts_present(self):
        assert {c.value for c in Context} == {
            "raw-command-interpreter",
            "html-body",
            "html-attribute",
            "script-literal",
            "url-parameter",
            "css-value",
            "filesystem-path",
            "redirect-target",
            "forward-target",
            "log-record",
        }

    def test_parse_is_lenient_about_spelling(self):
        assert Context.parse("HTML_BODY") is Context.HTML_BODY
        assert Context.parse("html_attribute") is Context.HTML_ATTRIBUTE
        assert Context.parse(Context.CSS_VALUE) is Context.CSS_VALUE

    def test_parse_unknown_raises(self):
        with pytest.raises(ValueError, match="Unknown context"):
            Context.parse("svg-foreign-object")


class TestCompositeContext:
    def test_layers_are_innermost_first(self):
        ctx = CompositeContext.of("script-literal", "html-attribute")
        assert ctx.innermost is Context.SCRIPT_LITERAL
        assert ctx.outermost is Context.HTML_ATTRIBUTE
        assert ctx.is_composite

    def test_from_outermost_reverses_walk(self):
        """VERIFY: An outermost-first walk becomes innermost-first layers."""
        ctx = CompositeContext.from_outermost(["html-body", "html-attribute", "script-literal"])
        assert ctx.layers == (Context.SCRIPT_LITERAL, Context.HTML_ATTRIBUTE, Context.HTML_BODY)

    def test_from_outermost_collapses_adjacent_duplicates(self):
        ctx = CompositeContext.from_outermost(["html-body", "html-body"])
        assert ctx.layers == (Context.HTML_BODY,)
        assert not ctx.is_composite

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            CompositeContext(())

    def test_membership_and_str(self):
        ctx = CompositeContext.of("script-literal", "html-attribute")
        assert Context.HTML_ATTRIBUTE in ctx
        assert Context.HTML_BODY not in ctx
        assert str(ctx) == "script-literal < html-attribute"
        assert ctx.to_list() == ["script-literal", "html-attribute"]
