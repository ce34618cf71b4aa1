"""Taint lattice: origin kinds, taint labels and immutable label sets.

A value's taint is a *set* of labels rather than a single flag so that a
finding can be explained by more than one simultaneous origin. The lattice per
program point is the powerset of labels ordered by inclusion; join is union.

Label identity deliberately ignores provenance. Two labels that describe the
same origins collapse into one set member and the member that survives is the
one whose provenance is the better explanation (more specific origin first,
then the shorter path).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, NamedTuple

from .contexts import Context


class OriginKind(Enum):
    """Where externally influenced data enters the program."""

    NETWORK_PARAMETER = "network-parameter"
    HEADER = "header"
    COOKIE = "cookie"
    STORED_RECORD = "stored-record"
    FILE_CONTENT = "file-content"
    ENVIRONMENT = "environment"
    UNKNOWN_EXTERNAL = "unknown-external"

    @classmethod
    def parse(cls, value: "str | OriginKind") -> "OriginKind":
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
            raise ValueError(f"Unknown origin kind: {value!r}") from None

    @property
    def specificity(self) -> int:
        return ORIGIN_SPECIFICITY[self]


# Higher wins when two labels compete to explain a flow.
ORIGIN_SPECIFICITY = {
    OriginKind.NETWORK_PARAMETER: 5,
    OriginKind.STORED_RECORD: 5,
    OriginKind.HEADER: 4,
    OriginKind.COOKIE: 4,
    OriginKind.FILE_CONTENT: 3,
    OriginKind.ENVIRONMENT: 2,
    OriginKind.UNKNOWN_EXTERNAL: 0,
}


class Hop(NamedTuple):
    """One step of a label's provenance path."""

    node: str
    unknown: bool = False

    def __str__(self) -> str:
        return f"{self.node}?" if self.unknown else self.node


@dataclass(frozen=True, eq=False)
class TaintLabel:
    """Immutable taint label: (origins, provenance path, context at origin).

    ``symbols`` holds symbolic markers (``param:0``, ``receiver``,
    ``global:NAME``) used while summarizing a function independently of its
    call sites. A label with markers and no origins is purely symbolic.
    """

    origins: frozenset[OriginKind] = frozenset()
    provenance: tuple[Hop, ...] = ()
    context: Context | None = None
    symbols: frozenset[str] = frozenset()
    _key: tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        key = (
            tuple(sorted(o.value for o in self.origins)),
            self.context.value if self.context else "",
            tuple(sorted(self.symbols)),
        )
        object.__setattr__(self, "_key", key)

    # -------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------

    @classmethod
    def source(
        cls, origin: OriginKind | str, node: str, context: Context | None = None
    ) -> "TaintLabel":
        """Fresh concrete label created at ``node``."""
        return cls(
            origins=frozenset({OriginKind.parse(origin)}),
            provenance=(Hop(node),),
            context=context,
        )

    @classmethod
    def symbolic(cls, marker: str, node: str) -> "TaintLabel":
        """Placeholder label standing for "whatever taint arrives via ``marker``"."""
        return cls(symbols=frozenset({marker}), provenance=(Hop(node),))

    # -------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TaintLabel):
            return NotImplemented
        return self._key == other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __repr__(self) -> str:
        origins = ",".join(sorted(o.value for o in self.origins)) or "-"
        symbols = ",".join(sorted(self.symbols))
        path = " -> ".join(str(h) for h in self.provenance)
        tag = f"{origins}|{symbols}" if symbols else origins
        return f"TaintLabel({tag} via {path})"

    # -------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------

    @property
    def is_concrete(self) -> bool:
        return bool(self.origins)

    @property
    def is_symbolic(self) -> bool:
        return bool(self.symbols) and not self.origins

    @property
    def specificity(self) -> int:
        if not self.origins:
            return -1
        return max(o.specificity for o in self.origins)

    @property
    def crossed_unknown(self) -> bool:
        """True when any hop was an unknown-propagation decision."""
        return any(h.unknown for h in self.provenance)

    @property
    def unknown_only(self) -> bool:
        return self.origins == frozenset({OriginKind.UNKNOWN_EXTERNAL})

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(h.node for h in self.provenance)

    @property
    def primary_origin(self) -> OriginKind | None:
        """Most specific origin, ties broken by name for determinism."""
        if not self.origins:
            return None
        return max(self.origins, key=lambda o: (o.specificity, o.value))

    # -------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------

    def extend(self, node: str, unknown: bool = False) -> "TaintLabel":
        """Derive a label that has additionally flowed through ``node``."""
        if self.provenance and self.provenance[-1].node == node and not unknown:
            return self
        return TaintLabel(
            origins=self.origins,
            provenance=self.provenance + (Hop(node, unknown),),
            context=self.context,
            symbols=self.symbols,
        )

    def mark_unknown(self, node: str) -> "TaintLabel":
        """Derive a label that reached ``node`` through an unknown-propagation decision."""
        return self.extend(node, unknown=True)

    def without_symbols(self) -> "TaintLabel":
        return TaintLabel(
            origins=self.origins, provenance=self.provenance, context=self.context
        )

    def join(self, other: "TaintLabel") -> "TaintLabel":
        """Merge two labels into one that retains every origin.

        The provenance of the more specific origin is kept (network-parameter
        and stored-record outrank unknown-external); on a tie the shorter path
        wins. Contexts survive only when both sides agree.
        """
        keep = self if _preferred(self, other) else other
        return TaintLabel(
            origins=self.origins | other.origins,
            provenance=keep.provenance,
            context=self.context if self.context == other.context else None,
            symbols=self.symbols | other.symbols,
        )


def _preferred(a: TaintLabel, b: TaintLabel) -> bool:
    """True when ``a``'s provenance is the better representative."""
    if a.specificity != b.specificity:
        return a.specificity > b.specificity
    if a.crossed_unknown != b.crossed_unknown:
        return not a.crossed_unknown
    if len(a.provenance) != len(b.provenance):
        return len(a.provenance) < len(b.provenance)
    return a.nodes <= b.nodes


class TaintSet:
    """Small immutable set of taint labels (empty set = untainted)."""

    __slots__ = ("_labels",)

    def __init__(self, labels: Iterable[TaintLabel] = ()):
        merged: dict[TaintLabel, TaintLabel] = {}
        for label in labels:
            current = merged.get(label)
            merged[label] = label if current is None else current.join(label)
        self._labels = merged

    @classmethod
    def empty(cls) -> "TaintSet":
        return _EMPTY

    @classmethod
    def of(cls, *labels: TaintLabel) -> "TaintSet":
        return cls(labels)

    def __iter__(self) -> Iterator[TaintLabel]:
        return iter(sorted(self._labels.values(), key=lambda l: (l._key, l.nodes)))

    def __len__(self) -> int:
        return len(self._labels)

    def __bool__(self) -> bool:
        return bool(self._labels)

    def __contains__(self, label: object) -> bool:
        return label in self._labels

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TaintSet):
            return NotImplemented
        return self._labels.keys() == other._labels.keys()

    def __hash__(self) -> int:
        return hash(frozenset(self._labels))

    def __repr__(self) -> str:
        return f"TaintSet({list(self)!r})"

    def __or__(self, other: "TaintSet") -> "TaintSet":
        return self.union(other)

    def union(self, *others: "TaintSet") -> "TaintSet":
        if not any(others):
            return self
        if not self and len(others) == 1:
            return others[0]
        labels = list(self._labels.values())
        for other in others:
            labels.extend(other._labels.values())
        return TaintSet(labels)

    def add(self, label: TaintLabel) -> "TaintSet":
        return TaintSet([*self._labels.values(), label])

    def extend(self, node: str, unknown: bool = False) -> "TaintSet":
        if not self:
            return self
        return TaintSet(label.extend(node, unknown) for label in self._labels.values())

    def mark_unknown(self, node: str) -> "TaintSet":
        return self.extend(node, unknown=True)

    def concrete(self) -> "TaintSet":
        return TaintSet(
            label.without_symbols() for label in self._labels.values() if label.is_concrete
        )

    def get(self, label: TaintLabel) -> TaintLabel | None:
        """Return the stored representative equal to ``label``."""
        return self._labels.get(label)

    @property
    def symbols(self) -> frozenset[str]:
        found: set[str] = set()
        for label in self._labels:
            found |= label.symbols
        return frozenset(found)

    @property
    def origins(self) -> frozenset[OriginKind]:
        found: set[OriginKind] = set()
        for label in self._labels:
            found |= label.origins
        return frozenset(found)

    def issubset(self, other: "TaintSet") -> bool:
        return self._labels.keys() <= other._labels.keys()


_EMPTY = TaintSet()


def join_all(sets: Iterable[TaintSet]) -> TaintSet:
    """Lattice join over any number of taint sets."""
    sets = [s for s in sets if s]
    if not sets:
        return TaintSet.empty()
    return sets[0].union(*sets[1:])
