"""Expression tree, the input data model for code generation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

OP_ADD: str = "+"
OP_MUL: str = "*"

OPERATORS: tuple[str, ...] = (OP_ADD, OP_MUL)

_OP_NAMES: dict[str, str] = {
    OP_ADD: "add",
    OP_MUL: "mul",
}


# ============================================================
# NODES
# ============================================================


@dataclass
class Expr:
    """Base for all expression nodes."""


@dataclass
class IntLit(Expr):
    """32-bit signed integer literal."""

    value: int


@dataclass
class BinaryOp(Expr):
    """left op right, evaluated left first."""

    op: str
    left: Expr
    right: Expr


@dataclass
class Print(Expr):
    """Log the value of inner through the host, then yield it unchanged."""

    inner: Expr


def lit(value: int) -> IntLit:
    return IntLit(value)


def add(left: Expr | int, right: Expr | int) -> BinaryOp:
    return BinaryOp(OP_ADD, _coerce(left), _coerce(right))


def mul(left: Expr | int, right: Expr | int) -> BinaryOp:
    return BinaryOp(OP_MUL, _coerce(left), _coerce(right))


def show(inner: Expr | int) -> Print:
    return Print(_coerce(inner))


def _coerce(node: Expr | int) -> Expr:
    if isinstance(node, int) and not isinstance(node, bool):
        return IntLit(node)
    return node


# ============================================================
# TRAVERSAL
# ============================================================


def children(node: Expr) -> list[Expr | None]:
    """Child slots of node in declared order. Slots may hold None on malformed trees."""
    if isinstance(node, BinaryOp):
        return [node.left, node.right]
    if isinstance(node, Print):
        return [node.inner]
    return []


def walk(root: Expr, order: str = "post") -> Iterator[Expr]:
    """Yield every node of the tree exactly once, in pre- or post-order.

    Uses an explicit stack so trees deeper than the recursion limit are fine.
    Empty child slots are skipped. A node reached twice (shared subtree or
    cycle) raises ValueError.
    """
    if order != "pre" and order != "post":
        raise ValueError("unknown traversal order '" + order + "'")
    seen: set[int] = set()
    if order == "pre":
        pending: list[Expr] = [root]
        while pending:
            node = pending.pop()
            _mark(seen, node)
            yield node
            kids = children(node)
            for kid in reversed(kids):
                if kid is not None:
                    pending.append(kid)
        return
    stack: list[tuple[Expr, bool]] = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            yield node
            continue
        _mark(seen, node)
        stack.append((node, True))
        for kid in reversed(children(node)):
            if kid is not None:
                stack.append((kid, False))


def _mark(seen: set[int], node: Expr) -> None:
    if id(node) in seen:
        raise ValueError("node " + type(node).__name__ + " appears more than once in the tree")
    seen.add(id(node))


# ============================================================
# DEBUG RENDERING
# ============================================================


def to_dict(root: Expr) -> dict[str, object]:
    """Serialize a tree to nested dicts."""
    done: dict[int, dict[str, object]] = {}
    for node in walk(root, "post"):
        d: dict[str, object] = {"kind": type(node).__name__}
        if isinstance(node, IntLit):
            d["value"] = node.value
        elif isinstance(node, BinaryOp):
            d["op"] = node.op
            d["left"] = _lookup(done, node.left)
            d["right"] = _lookup(done, node.right)
        elif isinstance(node, Print):
            d["inner"] = _lookup(done, node.inner)
        done[id(node)] = d
    return done[id(root)]


def describe(root: Expr) -> str:
    """Render a tree as `add(print(10), 30)` style text."""
    done: dict[int, str] = {}
    for node in walk(root, "post"):
        if isinstance(node, IntLit):
            text = str(node.value)
        elif isinstance(node, BinaryOp):
            name = _OP_NAMES.get(node.op, repr(node.op))
            text = name + "(" + _text(done, node.left) + ", " + _text(done, node.right) + ")"
        elif isinstance(node, Print):
            text = "print(" + _text(done, node.inner) + ")"
        else:
            text = "<" + type(node).__name__ + ">"
        done[id(node)] = text
    return done[id(root)]


def _lookup(done: dict[int, dict[str, object]], node: Expr | None) -> dict[str, object] | None:
    if node is None:
        return None
    return done[id(node)]


def _text(done: dict[int, str], node: Expr | None) -> str:
    if node is None:
        return "<missing>"
    return done[id(node)]
