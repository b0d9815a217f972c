"""Code generator: lowers an expression tree to a module descriptor.

The generated module imports one logging function, defines `calculate`
(the expression body) and `main` (calls `calculate`), and exports both.
"""

from __future__ import annotations

import logging

from .ast import OPERATORS, OP_ADD, OP_MUL, BinaryOp, Expr, IntLit, Print
from .check import assemble
from .errors import StructuralError, UnsupportedOperationError
from .ir import (
    ENTRY_SIGNATURE,
    I32,
    I32_MAX,
    I32_MIN,
    LOG_SIGNATURE,
    OP_CALL,
    OP_CONST,
    OP_LOCAL_GET,
    OP_LOCAL_TEE,
    CompiledModule,
    Export,
    Function,
    Import,
    Local,
    ModuleDescriptor,
    Program,
)
from . import ir

logger = logging.getLogger(__name__)

DEFAULT_IMPORT_MODULE: str = "env"
DEFAULT_IMPORT_NAME: str = "log_i32"
DEFAULT_LOG_SYMBOL: str = "imported_log_i32"

TEMP_LOCAL: str = "$temp"
CALCULATE: str = "calculate"
MAIN: str = "main"

_ARITH: dict[str, str] = {
    OP_ADD: ir.OP_ADD,
    OP_MUL: ir.OP_MUL,
}


def generate(
    root: Expr,
    import_module: str = DEFAULT_IMPORT_MODULE,
    import_name: str = DEFAULT_IMPORT_NAME,
    log_symbol: str = DEFAULT_LOG_SYMBOL,
) -> ModuleDescriptor:
    """Generate the module descriptor for root. Raises GenerationError subclasses."""
    log_ref = "$" + log_symbol
    body = _Emitter(log_ref).emit_tree(root)
    logger.debug("generated %d instructions for %s", len(body), CALCULATE)
    calculate = Function(
        symbol="$" + CALCULATE,
        typ=ENTRY_SIGNATURE,
        locals=(Local(TEMP_LOCAL, I32),),
        body=body,
    )
    entry = Program()
    entry.emit(OP_CALL, "$" + CALCULATE)
    main = Function(symbol="$" + MAIN, typ=ENTRY_SIGNATURE, locals=(), body=entry.freeze())
    return ModuleDescriptor(
        imports=(Import(import_module, import_name, log_ref, LOG_SIGNATURE),),
        functions=(calculate, main),
        exports=(Export(CALCULATE, "$" + CALCULATE), Export(MAIN, "$" + MAIN)),
    )


def compile_tree(
    root: Expr,
    import_module: str = DEFAULT_IMPORT_MODULE,
    import_name: str = DEFAULT_IMPORT_NAME,
    log_symbol: str = DEFAULT_LOG_SYMBOL,
) -> CompiledModule:
    """Generate, validate and serialize root in one step."""
    desc = generate(root, import_module, import_name, log_symbol)
    return assemble(desc)


class _Emitter:
    """Post-order emission over an explicit work stack.

    Tracks the operand stack depth so every subtree is checked to leave exactly
    one extra value behind.
    """

    def __init__(self, log_ref: str) -> None:
        self.log_ref = log_ref
        self.program = Program()
        self.depth = 0

    def emit_tree(self, root: Expr) -> tuple[ir.Instr, ...]:
        seen: set[int] = set()
        # (node, depth at entry); depth is None until children are scheduled
        work: list[tuple[Expr, int | None]] = [(root, None)]
        while work:
            node, entry_depth = work.pop()
            if entry_depth is None:
                if id(node) in seen:
                    raise StructuralError("node " + type(node).__name__ + " appears more than once in the tree")
                seen.add(id(node))
                kids = self._check_node(node)
                work.append((node, self.depth))
                for kid in reversed(kids):
                    work.append((kid, None))
                continue
            self._emit_node(node)
            if self.depth != entry_depth + 1:
                raise StructuralError(
                    type(node).__name__ + " left stack depth " + str(self.depth) + ", expected " + str(entry_depth + 1)
                )
        return self.program.freeze()

    def _check_node(self, node: object) -> list[Expr]:
        """Validate node shape; return its children in evaluation order."""
        if isinstance(node, IntLit):
            v = node.value
            if not isinstance(v, int) or isinstance(v, bool):
                raise StructuralError("integer literal holds " + type(v).__name__)
            if v < I32_MIN or v > I32_MAX:
                raise StructuralError("integer literal " + str(v) + " does not fit in 32 bits")
            return []
        if isinstance(node, BinaryOp):
            _check_child("binary operation", "left operand", node.left)
            _check_child("binary operation", "right operand", node.right)
            if node.op not in OPERATORS:
                raise UnsupportedOperationError(node.op)
            return [node.left, node.right]
        if isinstance(node, Print):
            _check_child("print", "operand", node.inner)
            return [node.inner]
        if node is None:
            raise StructuralError("missing expression")
        raise StructuralError("unknown node type " + type(node).__name__)

    def _emit_node(self, node: Expr) -> None:
        p = self.program
        if isinstance(node, IntLit):
            p.emit(OP_CONST, node.value)
            self.depth += 1
        elif isinstance(node, BinaryOp):
            p.emit(_ARITH[node.op])
            self.depth -= 1
        elif isinstance(node, Print):
            # tee keeps the value; the call consumes the copy; get restores it
            p.emit(OP_LOCAL_TEE, TEMP_LOCAL)
            p.emit(OP_CALL, self.log_ref)
            self.depth -= 1
            p.emit(OP_LOCAL_GET, TEMP_LOCAL)
            self.depth += 1


def _check_child(owner: str, slot: str, child: object) -> None:
    if child is None:
        raise StructuralError(owner + " is missing its " + slot)
    if not isinstance(child, Expr):
        raise StructuralError(owner + " has a " + type(child).__name__ + " as its " + slot)
