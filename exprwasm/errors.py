"""Error taxonomy for every pipeline stage.

Each error carries a `stage` tag so callers (and tests) can tell exactly which
stage rejected the input.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .host import Trap


class ExprWasmError(Exception):
    """Base error for generation, assembly, loading, linking and execution."""

    stage: str = "error"

    def __init__(self, msg: str):
        super().__init__(msg)
        self.msg = msg


# ============================================================
# GENERATION
# ============================================================


class GenerationError(ExprWasmError):
    stage = "generate"


class StructuralError(GenerationError):
    """Malformed expression tree (missing child, bad literal, foreign node)."""


class UnsupportedOperationError(GenerationError):
    """Operator tag outside the recognized set."""

    def __init__(self, op: object):
        super().__init__("unsupported operator " + repr(op))
        self.op = op


# ============================================================
# ASSEMBLY
# ============================================================


class AssemblyError(ExprWasmError):
    stage = "assemble"


class UnresolvedSymbolError(AssemblyError):
    def __init__(self, symbol: str, where: str):
        super().__init__("unresolved symbol " + symbol + " in " + where)
        self.symbol = symbol
        self.where = where


class ValidationError(AssemblyError):
    """Static validation failure at an instruction (index >= 0) or module level (-1)."""

    def __init__(self, msg: str, func: str = "", index: int = -1):
        if func == "":
            text = msg
        elif index < 0:
            text = msg + " in " + func
        else:
            text = msg + " in " + func + " at instr " + str(index)
        super().__init__(text)
        self.msg = msg
        self.func = func
        self.index = index


# ============================================================
# HOST
# ============================================================


class InvalidModuleError(ExprWasmError):
    stage = "load"


class LinkError(ExprWasmError):
    stage = "link"


class UnresolvedImportError(LinkError):
    def __init__(self, module: str, name: str):
        super().__init__("no binding for import " + module + "." + name)
        self.module = module
        self.name = name


class SignatureMismatchError(LinkError):
    def __init__(self, msg: str, stage: str = "link"):
        super().__init__(msg)
        self.stage = stage


class InstantiationError(ExprWasmError):
    stage = "instantiate"


class ExportNotFoundError(ExprWasmError):
    stage = "invoke"

    def __init__(self, name: str):
        super().__init__("no exported function named '" + name + "'")
        self.name = name


class Trapped(ExprWasmError):
    stage = "execute"

    def __init__(self, trap: Trap):
        super().__init__("trap: " + trap.reason)
        self.trap = trap


class HostStateError(ExprWasmError):
    """A host transition was requested out of order or after a failure."""

    stage = "host"
