"""Stack-machine instruction program and module descriptor.

Instruction arguments are symbolic (`"$temp"`, `"$calculate"`) as produced by
the code generator, and become integer indices once `check.resolve` has bound
them. A descriptor decoded from a binary is always in resolved form.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass

# ============================================================
# TYPES
# ============================================================

I32: str = "i32"

VALUE_TYPES: tuple[str, ...] = (I32,)

I32_MIN: int = -(2**31)
I32_MAX: int = 2**31 - 1


@dataclass(frozen=True)
class FuncType:
    params: tuple[str, ...]
    results: tuple[str, ...]

    def display(self) -> str:
        return "(" + ", ".join(self.params) + ") -> (" + ", ".join(self.results) + ")"


LOG_SIGNATURE: FuncType = FuncType((I32,), ())
ENTRY_SIGNATURE: FuncType = FuncType((), (I32,))


def to_i32(value: int) -> int:
    """Wrap an integer to signed 32-bit."""
    value = value & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


# ============================================================
# INSTRUCTIONS
# ============================================================

OP_CONST: str = "i32.const"
OP_ADD: str = "i32.add"
OP_MUL: str = "i32.mul"
OP_CALL: str = "call"
OP_LOCAL_GET: str = "local.get"
OP_LOCAL_SET: str = "local.set"
OP_LOCAL_TEE: str = "local.tee"

OPCODES: tuple[str, ...] = (
    OP_CONST,
    OP_ADD,
    OP_MUL,
    OP_CALL,
    OP_LOCAL_GET,
    OP_LOCAL_SET,
    OP_LOCAL_TEE,
)

LOCAL_OPS: tuple[str, ...] = (OP_LOCAL_GET, OP_LOCAL_SET, OP_LOCAL_TEE)


@dataclass(frozen=True)
class Instr:
    op: str
    arg: int | str | None = None

    def display(self) -> str:
        if self.arg is None:
            return self.op
        return self.op + " " + str(self.arg)


class Program:
    """Append-only instruction sequence built during generation."""

    def __init__(self) -> None:
        self._instrs: list[Instr] = []

    def emit(self, op: str, arg: int | str | None = None) -> None:
        self._instrs.append(Instr(op, arg))

    def __len__(self) -> int:
        return len(self._instrs)

    def freeze(self) -> tuple[Instr, ...]:
        return tuple(self._instrs)


# ============================================================
# MODULE DESCRIPTOR
# ============================================================


@dataclass(frozen=True)
class Import:
    """Host function import: module.name, referenced in code as symbol."""

    module: str
    name: str
    symbol: str
    typ: FuncType


@dataclass(frozen=True)
class Local:
    symbol: str
    typ: str


@dataclass(frozen=True)
class Function:
    symbol: str
    typ: FuncType
    locals: tuple[Local, ...]
    body: tuple[Instr, ...]


@dataclass(frozen=True)
class Export:
    """Exported function; target is a symbol or a function index."""

    name: str
    target: int | str


@dataclass(frozen=True)
class ModuleDescriptor:
    imports: tuple[Import, ...] = ()
    functions: tuple[Function, ...] = ()
    exports: tuple[Export, ...] = ()

    def func_types(self) -> list[FuncType]:
        """Types of the function index space: imports first, then defined functions."""
        return [imp.typ for imp in self.imports] + [fn.typ for fn in self.functions]

    def func_symbols(self) -> list[str]:
        return [imp.symbol for imp in self.imports] + [fn.symbol for fn in self.functions]

    def export(self, name: str) -> Export | None:
        for exp in self.exports:
            if exp.name == name:
                return exp
        return None


# ============================================================
# COMPILED MODULE
# ============================================================


@dataclass(frozen=True)
class CompiledModule:
    """Validated binary module bytes."""

    data: bytes

    def __bytes__(self) -> bytes:
        return self.data

    def __len__(self) -> int:
        return len(self.data)

    def write(self, path: str) -> None:
        """Write the module to path atomically; raises OSError."""
        directory = os.path.dirname(os.path.abspath(path))
        umask = os.umask(0)
        os.umask(umask)
        fd, tmp = tempfile.mkstemp(prefix=".exprwasm-", suffix=".tmp", dir=directory)
        try:
            f = os.fdopen(fd, "wb")
        except BaseException:
            os.close(fd)
            os.unlink(tmp)
            raise
        try:
            with f:
                f.write(self.data)
            # mkstemp creates 0600; give the result the mode open() would
            os.chmod(tmp, 0o666 & ~umask)
            os.replace(tmp, path)
        except BaseException:
            os.unlink(tmp)
            raise
