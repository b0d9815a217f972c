"""Name resolution, static validation, and assembly of module descriptors."""

from __future__ import annotations

import logging
from dataclasses import replace

from .binary import encode_module
from .errors import UnresolvedSymbolError, ValidationError
from .ir import (
    I32,
    I32_MAX,
    I32_MIN,
    LOCAL_OPS,
    LOG_SIGNATURE,
    OP_ADD,
    OP_CALL,
    OP_CONST,
    OP_LOCAL_GET,
    OP_LOCAL_SET,
    OP_LOCAL_TEE,
    OP_MUL,
    VALUE_TYPES,
    CompiledModule,
    Export,
    FuncType,
    Function,
    Instr,
    ModuleDescriptor,
)

logger = logging.getLogger(__name__)


# ============================================================
# NAME RESOLUTION
# ============================================================


def resolve(desc: ModuleDescriptor) -> ModuleDescriptor:
    """Bind call targets, locals and export targets to indices."""
    func_index: dict[str, int] = {}
    for i, symbol in enumerate(desc.func_symbols()):
        if symbol in func_index:
            raise UnresolvedSymbolError(symbol, "module (defined more than once)")
        func_index[symbol] = i
    functions: list[Function] = []
    for fn in desc.functions:
        local_index: dict[str, int] = {}
        n_params = len(fn.typ.params)
        for i, loc in enumerate(fn.locals):
            if loc.symbol in local_index:
                raise UnresolvedSymbolError(loc.symbol, fn.symbol + " (declared more than once)")
            local_index[loc.symbol] = n_params + i
        body: list[Instr] = []
        for i, instr in enumerate(fn.body):
            if not isinstance(instr.arg, str):
                body.append(instr)
                continue
            where = fn.symbol + " at instr " + str(i)
            if instr.op == OP_CALL:
                table = func_index
            elif instr.op in LOCAL_OPS:
                table = local_index
            else:
                raise UnresolvedSymbolError(instr.arg, where + " (" + instr.op + " takes no symbol)")
            if instr.arg not in table:
                raise UnresolvedSymbolError(instr.arg, where)
            body.append(Instr(instr.op, table[instr.arg]))
        functions.append(replace(fn, body=tuple(body)))
    exports: list[Export] = []
    for exp in desc.exports:
        if isinstance(exp.target, str):
            if exp.target not in func_index:
                raise UnresolvedSymbolError(exp.target, "export '" + exp.name + "'")
            exports.append(Export(exp.name, func_index[exp.target]))
        else:
            exports.append(exp)
    return replace(desc, functions=tuple(functions), exports=tuple(exports))


# ============================================================
# STATIC VALIDATION
# ============================================================


class Validator:
    """Abstract-stack validation of a resolved descriptor."""

    def __init__(self, desc: ModuleDescriptor) -> None:
        self.desc = desc
        self.errors: list[ValidationError] = []
        self.func_types: list[FuncType] = desc.func_types()

    def error(self, msg: str, func: str = "", index: int = -1) -> None:
        self.errors.append(ValidationError(msg, func, index))

    def check_module(self, required_imports: tuple[FuncType, ...]) -> None:
        for typ in self.func_types:
            for t in (*typ.params, *typ.results):
                if t not in VALUE_TYPES:
                    self.error("unknown value type '" + str(t) + "'")
        import_types = [imp.typ for imp in self.desc.imports]
        for required in required_imports:
            if required not in import_types:
                self.error("no import with signature " + required.display())
        names: set[str] = set()
        for exp in self.desc.exports:
            if exp.name in names:
                self.error("duplicate export name '" + exp.name + "'")
            names.add(exp.name)
            if not isinstance(exp.target, int) or exp.target < 0 or exp.target >= len(self.func_types):
                self.error("export '" + exp.name + "' targets unknown function " + str(exp.target))
        for fn in self.desc.functions:
            self.check_function(fn)

    def check_function(self, fn: Function) -> None:
        local_types = list(fn.typ.params) + [loc.typ for loc in fn.locals]
        for loc in fn.locals:
            if loc.typ not in VALUE_TYPES:
                self.error("local " + loc.symbol + " has unknown type '" + str(loc.typ) + "'", fn.symbol)
        stack: list[str] = []
        for i, instr in enumerate(fn.body):
            if not self._check_instr(fn, i, instr, stack, local_types):
                return
        expected = list(fn.typ.results)
        if stack != expected:
            self.error(
                "body leaves [" + ", ".join(stack) + "] but signature declares [" + ", ".join(expected) + "]",
                fn.symbol,
                len(fn.body),
            )

    def _check_instr(self, fn: Function, i: int, instr: Instr, stack: list[str], local_types: list[str]) -> bool:
        """Apply instr to the abstract stack. Returns False once the body can't be followed further."""
        op = instr.op
        if op == OP_CONST:
            v = instr.arg
            if not isinstance(v, int) or isinstance(v, bool) or v < I32_MIN or v > I32_MAX:
                self.error("i32.const immediate " + repr(v) + " is not a 32-bit integer", fn.symbol, i)
                return False
            stack.append(I32)
            return True
        if op == OP_ADD or op == OP_MUL:
            return self._pop(fn, i, instr, stack, [I32, I32]) and _push(stack, [I32])
        if op in LOCAL_OPS:
            idx = instr.arg
            if not isinstance(idx, int) or idx < 0 or idx >= len(local_types):
                self.error(op + " refers to unknown local " + repr(idx), fn.symbol, i)
                return False
            typ = local_types[idx]
            if op == OP_LOCAL_GET:
                stack.append(typ)
                return True
            if not self._pop(fn, i, instr, stack, [typ]):
                return False
            if op == OP_LOCAL_TEE:
                stack.append(typ)
            return True
        if op == OP_CALL:
            idx = instr.arg
            if not isinstance(idx, int) or idx < 0 or idx >= len(self.func_types):
                self.error("call to unknown function " + repr(idx), fn.symbol, i)
                return False
            callee = self.func_types[idx]
            return self._pop(fn, i, instr, stack, list(callee.params)) and _push(stack, list(callee.results))
        self.error("unknown instruction '" + op + "'", fn.symbol, i)
        return False

    def _pop(self, fn: Function, i: int, instr: Instr, stack: list[str], want: list[str]) -> bool:
        if len(stack) < len(want):
            self.error(
                instr.op + " needs " + str(len(want)) + " operand(s), found " + str(len(stack)),
                fn.symbol,
                i,
            )
            return False
        have = stack[len(stack) - len(want) :]
        if have != want:
            self.error(
                instr.op + " expects [" + ", ".join(want) + "] but found [" + ", ".join(have) + "]",
                fn.symbol,
                i,
            )
            return False
        del stack[len(stack) - len(want) :]
        return True


def _push(stack: list[str], types: list[str]) -> bool:
    stack.extend(types)
    return True


def validate(
    desc: ModuleDescriptor, required_imports: tuple[FuncType, ...] = (LOG_SIGNATURE,)
) -> list[ValidationError]:
    """Validate a resolved descriptor. Returns a list of errors (empty = ok)."""
    v = Validator(desc)
    v.check_module(required_imports)
    return v.errors


# ============================================================
# ASSEMBLY
# ============================================================


def assemble(
    desc: ModuleDescriptor, required_imports: tuple[FuncType, ...] = (LOG_SIGNATURE,)
) -> CompiledModule:
    """Resolve, validate, then serialize. Each step gates the next."""
    resolved = resolve(desc)
    errors = validate(resolved, required_imports)
    if len(errors) > 0:
        raise errors[0]
    data = encode_module(resolved)
    logger.debug("assembled module: %d bytes", len(data))
    return CompiledModule(data)
