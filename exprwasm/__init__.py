"""exprwasm: compile expression trees to WebAssembly and run them."""

from __future__ import annotations

from .ast import OP_ADD, OP_MUL, BinaryOp, Expr, IntLit, Print, add, lit, mul, show, walk
from .check import assemble, resolve, validate
from .codegen import compile_tree, generate
from .emit import to_wat
from .errors import (
    ExportNotFoundError,
    ExprWasmError,
    InstantiationError,
    InvalidModuleError,
    SignatureMismatchError,
    StructuralError,
    Trapped,
    UnresolvedImportError,
    UnresolvedSymbolError,
    UnsupportedOperationError,
    ValidationError,
)
from .host import ExecutionResult, Host, Instance, Linker, Store, Trap, run_module
from .ir import CompiledModule, ModuleDescriptor


def run(module: CompiledModule | bytes, linker: Linker, store: Store | None = None) -> ExecutionResult:
    """Load, link, instantiate and invoke `main` of a compiled module."""
    return run_module(bytes(module), linker, store)
