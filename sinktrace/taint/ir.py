"""Intermediate representation consumed from the language front end.

The engine never parses source text. A front end hands over, per function, a
control-flow graph of typed nodes plus the call edges of every call node. The
JSON shape accepted by :meth:`ProgramIR.from_dict`::

    {
      "globals": ["CONFIG"],
      "functions": [
        {
          "id": "app.views.search",
          "entry_point": true,
          "params": [{"name": "q", "origin": "network-parameter"}],
          "entry": "n1",
          "nodes": [
            {"id": "n1", "kind": "assign", "target": "sql",
             "operands": ["q"], "operator": "concat", "succ": ["n2"]},
            {"id": "n2", "kind": "call", "api": "cursor.execute",
             "args": ["sql"], "succ": []}
          ]
        }
      ]
    }

Node keys are globally unique strings of the form ``function::node``.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from pathlib import Path
from typing import Any

from .contexts import Context
from .errors import MalformedIR
from .labels import OriginKind

RETURN_SLOT = "return"


class NodeKind(Enum):
    ASSIGN = "assign"
    CALL = "call"
    BRANCH = "branch"
    RETURN = "return"
    NOP = "nop"


@dataclass(frozen=True)
class IRNode:
    """One CFG node.

    Attributes:
        id: Node id, unique within its function
        kind: Node type
        succ: Successor node ids
        target: Slot written by an assign or receiving a call's result
        operands: Slots read by an assign/return (literals are omitted)
        embeds: operand slot -> contexts (outermost first) the operand is
            placed into while building ``target`` (e.g. template rendering)
        api: Rule-database identifier of the called API
        callee: Resolved function id for calls into the program
        dynamic: Front end could not resolve the call target
        args: Argument slots, ``None`` for literal arguments
        receiver: Slot of the method receiver, if any
        enclosing: argument index -> contexts (outermost first) that syntactically
            enclose that argument at the call
    """

    id: str
    kind: NodeKind
    succ: tuple[str, ...] = ()
    target: str | None = None
    operands: tuple[str, ...] = ()
    embeds: dict[str, tuple[Context, ...]] = field(default_factory=dict)
    operator: str = ""
    api: str | None = None
    callee: str | None = None
    dynamic: bool = False
    args: tuple[str | None, ...] = ()
    receiver: str | None = None
    enclosing: dict[int, tuple[Context, ...]] = field(default_factory=dict)
    line: int = 0
    file: str = ""

    @property
    def reads(self) -> tuple[str, ...]:
        """Every slot this node reads."""
        if self.kind is NodeKind.CALL:
            slots = [a for a in self.args if a is not None]
            if self.receiver:
                slots.append(self.receiver)
            return tuple(slots)
        return self.operands

    @classmethod
    def from_dict(cls, function_id: str, data: dict[str, Any]) -> "IRNode":
        try:
            node_id = str(data["id"])
            kind = NodeKind(data.get("kind", "nop"))
        except KeyError:
            raise MalformedIR(function_id, f"node without id: {data!r}") from None
        except ValueError:
            raise MalformedIR(
                function_id, f"node {data.get('id')!r} has unknown kind {data.get('kind')!r}"
            ) from None

        try:
            embeds = {
                str(slot): tuple(Context.parse(c) for c in _as_list(ctxs))
                for slot, ctxs in (data.get("embeds") or {}).items()
            }
            enclosing = {
                int(idx): tuple(Context.parse(c) for c in _as_list(ctxs))
                for idx, ctxs in (data.get("enclosing") or {}).items()
            }
        except ValueError as e:
            raise MalformedIR(function_id, f"node {node_id!r}: {e}") from e

        return cls(
            id=node_id,
            kind=kind,
            succ=tuple(str(s) for s in data.get("succ", ())),
            target=data.get("target"),
            operands=tuple(str(o) for o in data.get("operands", ())),
            embeds=embeds,
            operator=data.get("operator", ""),
            api=data.get("api"),
            callee=data.get("callee"),
            dynamic=bool(data.get("dynamic", False)),
            args=tuple(None if a is None else str(a) for a in data.get("args", ())),
            receiver=data.get("receiver"),
            enclosing=enclosing,
            line=int(data.get("line", 0)),
            file=data.get("file", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"id": self.id, "kind": self.kind.value, "succ": list(self.succ)}
        if self.target is not None:
            result["target"] = self.target
        if self.operands:
            result["operands"] = list(self.operands)
        if self.embeds:
            result["embeds"] = {s: [c.value for c in cs] for s, cs in sorted(self.embeds.items())}
        if self.operator:
            result["operator"] = self.operator
        if self.api is not None:
            result["api"] = self.api
        if self.callee is not None:
            result["callee"] = self.callee
        if self.dynamic:
            result["dynamic"] = True
        if self.args:
            result["args"] = list(self.args)
        if self.receiver is not None:
            result["receiver"] = self.receiver
        if self.enclosing:
            result["enclosing"] = {
                str(i): [c.value for c in cs] for i, cs in sorted(self.enclosing.items())
            }
        if self.line:
            result["line"] = self.line
        if self.file:
            result["file"] = self.file
        return result


@dataclass(frozen=True)
class Param:
    """Formal parameter. ``origin`` marks entry-point parameters as sources."""

    name: str
    origin: OriginKind | None = None
    out: bool = False
    context: Context | None = None

    @classmethod
    def from_dict(cls, data: "dict[str, Any] | str") -> "Param":
        if isinstance(data, str):
            return cls(name=data)
        origin = data.get("origin")
        context = data.get("context")
        return cls(
            name=str(data["name"]),
            origin=OriginKind.parse(origin) if origin else None,
            out=bool(data.get("out", False)),
            context=Context.parse(context) if context else None,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name}
        if self.origin:
            result["origin"] = self.origin.value
        if self.out:
            result["out"] = True
        if self.context:
            result["context"] = self.context.value
        return result


@dataclass(frozen=True)
class FunctionIR:
    """Control-flow graph and signature of one function."""

    id: str
    nodes: dict[str, IRNode]
    entry: str
    params: tuple[Param, ...] = ()
    receiver: str | None = None
    entry_point: bool = False
    file: str = ""

    # -------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------

    def key(self, node_id: str) -> str:
        return f"{self.id}::{node_id}"

    def param_key(self, index: int) -> str:
        return f"{self.id}::param:{index}"

    @property
    def receiver_key(self) -> str:
        return f"{self.id}::receiver"

    # -------------------------------------------------------------------
    # Graph views
    # -------------------------------------------------------------------

    @cached_property
    def predecessors(self) -> dict[str, tuple[str, ...]]:
        preds: dict[str, list[str]] = {node_id: [] for node_id in self.nodes}
        for node in self.nodes.values():
            for succ in node.succ:
                if succ in preds:
                    preds[succ].append(node.id)
        return {k: tuple(v) for k, v in preds.items()}

    @cached_property
    def return_nodes(self) -> tuple[str, ...]:
        return tuple(n.id for n in self.nodes.values() if n.kind is NodeKind.RETURN)

    @cached_property
    def call_nodes(self) -> tuple[IRNode, ...]:
        return tuple(n for n in self.nodes.values() if n.kind is NodeKind.CALL)

    @cached_property
    def merge_nodes(self) -> frozenset[str]:
        return frozenset(k for k, v in self.predecessors.items() if len(v) > 1)

    @property
    def param_names(self) -> tuple[str, ...]:
        return tuple(p.name for p in self.params)

    def slots(self) -> set[str]:
        found = set(self.param_names)
        if self.receiver:
            found.add(self.receiver)
        for node in self.nodes.values():
            found.update(node.reads)
            if node.target:
                found.add(node.target)
        return found

    # -------------------------------------------------------------------
    # Validation / serialization
    # -------------------------------------------------------------------

    def validate(self, known_functions: "set[str] | frozenset[str]") -> None:
        """Raise MalformedIR when a structural precondition does not hold."""
        if self.entry not in self.nodes:
            raise MalformedIR(self.id, f"entry node {self.entry!r} does not exist")

        names = self.param_names
        if len(set(names)) != len(names):
            raise MalformedIR(self.id, f"duplicate parameter names {list(names)}")

        for node in self.nodes.values():
            for succ in node.succ:
                if succ not in self.nodes:
                    raise MalformedIR(
                        self.id,
                        f"node {node.id!r} has dangling successor {succ!r}",
                        {"node": node.id, "successor": succ},
                    )
            if node.kind is NodeKind.RETURN and node.succ:
                raise MalformedIR(self.id, f"return node {node.id!r} has successors")
            if node.kind is NodeKind.ASSIGN and not node.target:
                raise MalformedIR(self.id, f"assign node {node.id!r} has no target")
            if node.kind is NodeKind.CALL:
                if node.callee is not None and node.callee not in known_functions:
                    raise MalformedIR(
                        self.id,
                        f"call node {node.id!r} has dangling call edge to {node.callee!r}",
                        {"node": node.id, "callee": node.callee},
                    )
                if node.callee is None and node.api is None and not node.dynamic:
                    raise MalformedIR(
                        self.id, f"call node {node.id!r} names neither api nor callee"
                    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FunctionIR":
        function_id = str(data.get("id", ""))
        if not function_id:
            raise MalformedIR("<anonymous>", "function without id")

        nodes: dict[str, IRNode] = {}
        for raw in data.get("nodes", ()):
            node = IRNode.from_dict(function_id, raw)
            if node.id in nodes:
                raise MalformedIR(function_id, f"duplicate node id {node.id!r}")
            nodes[node.id] = node

        entry = data.get("entry")
        if entry is None and nodes:
            entry = next(iter(nodes))
        try:
            params = tuple(Param.from_dict(p) for p in data.get("params", ()))
        except (KeyError, ValueError) as e:
            raise MalformedIR(function_id, f"bad parameter declaration: {e}") from e

        return cls(
            id=function_id,
            nodes=nodes,
            entry=str(entry) if entry is not None else "",
            params=params,
            receiver=data.get("receiver"),
            entry_point=bool(data.get("entry_point", False)),
            file=data.get("file", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "entry": self.entry,
            "params": [p.to_dict() for p in self.params],
            "nodes": [n.to_dict() for n in self.nodes.values()],
        }
        if self.receiver:
            result["receiver"] = self.receiver
        if self.entry_point:
            result["entry_point"] = True
        if self.file:
            result["file"] = self.file
        return result

    @cached_property
    def content_hash(self) -> str:
        """Stable hash of this function's IR, used to key reusable summaries."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def global_key(name: str) -> str:
    return f"<global>::{name}"


@dataclass
class ProgramIR:
    """All functions of the program under analysis.

    Functions whose IR could not even be parsed are kept in ``malformed`` so
    that callers still see them as known (but UNKNOWN) callees.
    """

    functions: dict[str, FunctionIR] = field(default_factory=dict)
    globals: frozenset[str] = frozenset()
    malformed: dict[str, MalformedIR] = field(default_factory=dict)

    @property
    def function_ids(self) -> frozenset[str]:
        return frozenset(self.functions) | frozenset(self.malformed)

    @property
    def node_count(self) -> int:
        return sum(len(f.nodes) for f in self.functions.values())

    def function_of(self, node_key: str) -> str:
        return node_key.rsplit("::", 1)[0]

    def node(self, node_key: str) -> IRNode | None:
        function_id, _, node_id = node_key.rpartition("::")
        func = self.functions.get(function_id)
        if func is None:
            return None
        return func.nodes.get(node_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgramIR":
        program = cls(globals=frozenset(str(g) for g in data.get("globals", ())))
        for raw in data.get("functions", ()):
            try:
                func = FunctionIR.from_dict(raw)
            except MalformedIR as e:
                program.malformed[e.function_id] = e
                continue
            if func.id in program.functions:
                program.malformed[func.id] = MalformedIR(func.id, "duplicate function id")
                del program.functions[func.id]
                continue
            program.functions[func.id] = func
        return program

    def to_dict(self) -> dict[str, Any]:
        return {
            "globals": sorted(self.globals),
            "functions": [f.to_dict() for f in self.functions.values()],
        }


def load_program(path: str | Path) -> ProgramIR:
    """Load a program IR from a JSON file produced by a front end."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Invalid IR file format in {path}: expected an object")
    return ProgramIR.from_dict(data)


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]
