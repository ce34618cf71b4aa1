"""Rule database: maps API identifiers to source, sink and sanitizer roles.

The registry is populated once (from YAML, JSON or a plain dict) and is then
read-only for the lifetime of a scan, so worker threads may share it freely.

Rule file format::

    version: 1
    canonicalization_required: [filesystem-path, raw-command-interpreter]
    rules:
      - api: request.args.get
        role: source
        origin: network-parameter
      - api: cursor.execute
        role: sink
        context: raw-command-interpreter
        args: [0]
      - api: cursor.execute_params
        role: sanitizer
        strength: parameterization
      - api: html.escape
        role: sanitizer
        contexts: [html-body, html-attribute]
        strength: whitelist

A sink's ``contexts`` list is outermost first (``[html-body, script-literal]``
is a script string literal rendered into an HTML page).
"""

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from sinktrace.utils.logging import logger

from .contexts import DEFAULT_CANONICALIZATION_REQUIRED, Context
from .errors import RuleConflict
from .labels import OriginKind


class Strength(Enum):
    """How a neutralization step protects a value."""

    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    PARAMETERIZATION = "parameterization"
    CANONICALIZATION = "canonicalization"


@dataclass(frozen=True)
class SourceRule:
    api: str
    origin: OriginKind
    context: Context | None = None


@dataclass(frozen=True)
class SinkRule:
    """Sink role. ``layers`` is outermost first; ``args`` of None checks every argument."""

    api: str
    layers: tuple[Context, ...]
    args: tuple[int, ...] | None = None

    def checks(self, index: int) -> bool:
        return self.args is None or index in self.args


@dataclass(frozen=True)
class SanitizerRule:
    """Sanitizer role. Parameterization rules may leave ``contexts`` empty."""

    api: str
    contexts: frozenset[Context]
    strength: Strength

    def covers(self, context: Context) -> bool:
        return context in self.contexts


class TaintRegistry:
    """API to role lookup table with conflict resolution."""

    def __init__(self, canonicalization_required: "frozenset[Context] | None" = None):
        self.version = 1
        self.sources: dict[str, SourceRule] = {}
        self.sinks: dict[str, SinkRule] = {}
        self.sanitizers: dict[str, list[SanitizerRule]] = {}
        self.conflicts: list[RuleConflict] = []
        self.canonicalization_required = (
            frozenset(canonicalization_required)
            if canonicalization_required is not None
            else DEFAULT_CANONICALIZATION_REQUIRED
        )

    # -------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------

    def register_source(
        self, api: str, origin: "OriginKind | str", context: "Context | str | None" = None
    ) -> None:
        """Register a taint source API."""
        self.sources[api] = SourceRule(
            api=api,
            origin=OriginKind.parse(origin),
            context=Context.parse(context) if context else None,
        )
        self._resolve_conflicts(api)

    def register_sink(
        self,
        api: str,
        contexts: "list[Context | str] | tuple | Context | str",
        args: "list[int] | tuple[int, ...] | None" = None,
    ) -> None:
        """Register a sink API. ``contexts`` is outermost first."""
        if isinstance(contexts, (str, Context)):
            contexts = [contexts]
        layers = tuple(Context.parse(c) for c in contexts)
        if not layers:
            raise ValueError(f"Sink '{api}' declares no context")
        self.sinks[api] = SinkRule(
            api=api,
            layers=layers,
            args=tuple(int(a) for a in args) if args is not None else None,
        )

    def register_sanitizer(
        self,
        api: str,
        contexts: "list[Context | str] | tuple | Context | str | None",
        strength: "Strength | str",
    ) -> None:
        """Register a sanitizer API for the contexts it is sound for."""
        if contexts is None:
            contexts = []
        elif isinstance(contexts, (str, Context)):
            contexts = [contexts]
        strength = strength if isinstance(strength, Strength) else Strength(str(strength).lower())
        parsed = frozenset(Context.parse(c) for c in contexts)
        if not parsed and strength is not Strength.PARAMETERIZATION:
            raise ValueError(f"Sanitizer '{api}' declares no context")
        self.sanitizers.setdefault(api, []).append(
            SanitizerRule(api=api, contexts=parsed, strength=strength)
        )
        self._resolve_conflicts(api)

    def _resolve_conflicts(self, api: str) -> None:
        """Strip sanitizer roles that collide with a source role of the same API.

        A source without a declared context collides with every context the
        sanitizer claims.
        """
        source = self.sources.get(api)
        rules = self.sanitizers.get(api)
        if source is None or not rules:
            return

        kept: list[SanitizerRule] = []
        for rule in rules:
            if source.context is None:
                clashing = set(rule.contexts) if rule.contexts else {None}
            else:
                clashing = {source.context} & rule.contexts
            if not clashing:
                kept.append(rule)
                continue

            for ctx in sorted(clashing, key=lambda c: c.value if c else "*"):
                conflict = RuleConflict(
                    api=api,
                    context=ctx.value if ctx else "*",
                    origin=source.origin.value,
                )
                self.conflicts.append(conflict)
                logger.warning(str(conflict))

            remaining = frozenset(c for c in rule.contexts if c not in clashing)
            if remaining:
                kept.append(SanitizerRule(api=api, contexts=remaining, strength=rule.strength))

        if kept:
            self.sanitizers[api] = kept
        else:
            del self.sanitizers[api]

    # -------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------

    def source_for(self, api: str | None) -> SourceRule | None:
        return self.sources.get(api) if api else None

    def sink_for(self, api: str | None) -> SinkRule | None:
        return self.sinks.get(api) if api else None

    def sanitizers_for(self, api: str | None) -> tuple[SanitizerRule, ...]:
        if not api:
            return ()
        return tuple(self.sanitizers.get(api, ()))

    def is_source(self, api: str | None) -> bool:
        return self.source_for(api) is not None

    def is_sink(self, api: str | None) -> bool:
        return self.sink_for(api) is not None

    def is_sanitizer(self, api: str | None) -> bool:
        return bool(self.sanitizers_for(api))

    def requires_canonicalization(self, context: Context) -> bool:
        return context in self.canonicalization_required

    def get_stats(self) -> dict[str, Any]:
        """Get statistics about registered rules."""
        sanitizer_rules = sum(len(v) for v in self.sanitizers.values())
        return {
            "sources": len(self.sources),
            "sinks": len(self.sinks),
            "sanitizers": sanitizer_rules,
            "total": len(self.sources) + len(self.sinks) + sanitizer_rules,
            "conflicts": len(self.conflicts),
        }

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaintRegistry":
        """Build a registry from a parsed rule document.

        Invalid individual rules are skipped with a warning; a document that
        is not a mapping with a ``rules`` list raises ValueError.
        """
        if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
            raise ValueError("Invalid rule database format: expected a mapping with a 'rules' list")

        canon = data.get("canonicalization_required")
        registry = cls(
            canonicalization_required=(
                frozenset(Context.parse(c) for c in canon) if canon is not None else None
            )
        )
        registry.version = data.get("version", 1)

        for index, rule in enumerate(data["rules"]):
            try:
                registry._load_rule(rule)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid rule #{index} ({rule!r}): {e}")

        return registry

    def _load_rule(self, rule: dict[str, Any]) -> None:
        api = str(rule["api"])
        role = str(rule["role"]).lower()
        contexts = rule.get("contexts", rule.get("context"))

        if role == "source":
            self.register_source(api, rule.get("origin", "unknown-external"), rule.get("context"))
        elif role == "sink":
            if contexts is None:
                raise ValueError("sink rule without context")
            self.register_sink(api, contexts, rule.get("args"))
        elif role == "sanitizer":
            self.register_sanitizer(api, contexts, rule.get("strength", "whitelist"))
        else:
            raise ValueError(f"unknown role {role!r}")

    @classmethod
    def load(cls, path: str | Path) -> "TaintRegistry":
        """Load a rule database from a YAML or JSON file."""
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        registry = cls.from_dict(data)
        logger.debug(f"Loaded rule database {path}: {registry.get_stats()}")
        return registry
