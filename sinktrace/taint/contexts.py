"""Sink contexts and composite (nested) contexts.

A context is the syntactic environment a value is placed into at a sink. It
decides which neutralization is adequate: HTML-body encoding does nothing for a
value that ends up inside a ``<script>`` string literal.

Composite contexts model nested placement, e.g. a value inside a JavaScript
string inside an ``onclick`` attribute inside an HTML page::

    CompositeContext((SCRIPT_LITERAL, HTML_ATTRIBUTE, HTML_BODY))

Layers are always stored innermost-first, which is also the order in which the
encoders have to be applied.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable


class Context(Enum):
    """Placement context of a value at a sink."""

    RAW_COMMAND_INTERPRETER = "raw-command-interpreter"
    HTML_BODY = "html-body"
    HTML_ATTRIBUTE = "html-attribute"
    SCRIPT_LITERAL = "script-literal"
    URL_PARAMETER = "url-parameter"
    CSS_VALUE = "css-value"
    FILESYSTEM_PATH = "filesystem-path"
    REDIRECT_TARGET = "redirect-target"
    FORWARD_TARGET = "forward-target"
    LOG_RECORD = "log-record"

    @classmethod
    def parse(cls, value: "str | Context") -> "Context":
        """Accept enum members, their values ('html-body') or names ('HTML_BODY')."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        try:
            return cls(text.lower().replace("_", "-"))
        except ValueError:
            pass
        try:
            return cls[text.upper().replace("-", "_")]
        except KeyError:
            raise ValueError(f"Unknown context: {value!r}") from None


# Contexts where percent/unicode encoded equivalents exist, so validation is
# only meaningful after canonicalization.
DEFAULT_CANONICALIZATION_REQUIRED = frozenset({
    Context.FILESYSTEM_PATH,
    Context.RAW_COMMAND_INTERPRETER,
})


@dataclass(frozen=True)
class CompositeContext:
    """Non-empty ordered sequence of context layers, innermost first."""

    layers: tuple[Context, ...]

    def __post_init__(self):
        if not self.layers:
            raise ValueError("CompositeContext requires at least one layer")

    @classmethod
    def of(cls, *layers: "Context | str") -> "CompositeContext":
        return cls(tuple(Context.parse(layer) for layer in layers))

    @classmethod
    def from_outermost(cls, layers: Iterable["Context | str"]) -> "CompositeContext":
        """Build from an outermost-first walk, collapsing repeated adjacent layers."""
        ordered: list[Context] = []
        for layer in layers:
            ctx = Context.parse(layer)
            if not ordered or ordered[-1] != ctx:
                ordered.append(ctx)
        ordered.reverse()
        return cls(tuple(ordered))

    @property
    def innermost(self) -> Context:
        return self.layers[0]

    @property
    def outermost(self) -> Context:
        return self.layers[-1]

    @property
    def is_composite(self) -> bool:
        return len(self.layers) > 1

    def __contains__(self, ctx: object) -> bool:
        return ctx in self.layers

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self):
        return iter(self.layers)

    def __str__(self) -> str:
        return " < ".join(layer.value for layer in self.layers)

    def to_list(self) -> list[str]:
        return [layer.value for layer in self.layers]
