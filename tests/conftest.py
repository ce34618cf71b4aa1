"""Pytest configuration and fixtures."""

import pytest

from sinktrace.taint import ProgramIR, TaintRegistry

RULES = {
    "version": 1,
    "canonicalization_required": ["filesystem-path", "raw-command-interpreter"],
    "rules": [
        {"api": "request.args.get", "role": "source", "origin": "network-parameter"},
        {"api": "request.headers.get", "role": "source", "origin": "header"},
        {"api": "os.getenv", "role": "source", "origin": "environment"},
        {"api": "cursor.execute", "role": "sink", "context": "raw-command-interpreter", "args": [0]},
        {"api": "render", "role": "sink", "context": "html-body"},
        {"api": "render_onclick", "role": "sink", "contexts": ["html-attribute", "script-literal"]},
        {"api": "open", "role": "sink", "context": "filesystem-path", "args": [0]},
        {"api": "redirect", "role": "sink", "context": "redirect-target"},
        {"api": "logger.info", "role": "sink", "context": "log-record"},
        {"api": "html.escape", "role": "sanitizer", "contexts": ["html-body", "html-attribute"], "strength": "whitelist"},
        {"api": "js.escape", "role": "sanitizer", "contexts": ["script-literal"], "strength": "whitelist"},
        {"api": "strip_tags", "role": "sanitizer", "contexts": ["html-body"], "strength": "blacklist"},
        {"api": "db.bind", "role": "sanitizer", "strength": "parameterization"},
        {"api": "os.path.normpath", "role": "sanitizer", "contexts": ["filesystem-path"], "strength": "canonicalization"},
        {"api": "allowlist_path", "role": "sanitizer", "contexts": ["filesystem-path"], "strength": "whitelist"},
    ],
}


def make_function(fid, nodes, params=(), entry_point=False, **extra):
    """Function dict for ProgramIR.from_dict.

    Nodes without an explicit ``succ`` fall through to the next node in the
    list; return nodes and the last node get no successors.
    """
    chained = []
    for index, raw in enumerate(nodes):
        node = dict(raw)
        if "succ" not in node:
            is_last = index == len(nodes) - 1
            node["succ"] = [] if is_last or node.get("kind") == "return" else [nodes[index + 1]["id"]]
        chained.append(node)
    func = {
        "id": fid,
        "entry": chained[0]["id"] if chained else None,
        "params": list(params),
        "nodes": chained,
        **extra,
    }
    if entry_point:
        func["entry_point"] = True
    return func


def source(node_id, target, api="request.args.get", **fields):
    return {"id": node_id, "kind": "call", "api": api, "args": [None], "target": target, **fields}


def call(node_id, api, args, target=None, **fields):
    node = {"id": node_id, "kind": "call", "api": api, "args": list(args), **fields}
    if target is not None:
        node["target"] = target
    return node


def assign(node_id, target, *operands, **fields):
    return {"id": node_id, "kind": "assign", "target": target, "operands": list(operands), **fields}


@pytest.fixture
def rules():
    """Rule document shared by the engine tests (a fresh deep copy per test)."""
    import copy

    return copy.deepcopy(RULES)


@pytest.fixture
def registry(rules):
    """Registry loaded from the shared rule document."""
    return TaintRegistry.from_dict(rules)


@pytest.fixture
def build_program():
    """Factory: build_program(func, func, ..., globals=[...]) -> ProgramIR."""

    def _build(*functions, globals=()):
        return ProgramIR.from_dict({"globals": list(globals), "functions": list(functions)})

    return _build


@pytest.fixture
def sqli_program(build_program):
    """Entry point whose request parameter is concatenated into a query."""
    return build_program(
        make_function(
            "app.search",
            [
                assign("n1", "sql", "q", operator="concat", line=3),
                call("n2", "cursor.execute", ["sql"], line=4),
            ],
            params=[{"name": "q", "origin": "network-parameter"}],
            entry_point=True,
            file="app.py",
        )
    )


@pytest.fixture
def no_fidelity_strict(monkeypatch):
    monkeypatch.setenv("SINKTRACE_FIDELITY_STRICT", "0")
