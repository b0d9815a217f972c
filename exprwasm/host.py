"""Host linker and executor: load, link, instantiate and run a binary module.

A `Host` walks one module through

    unloaded -> validated -> linked -> instantiated -> invoked -> returned | trapped

Each transition happens at most once; a failure at any stage is terminal for
that host and later stages are never attempted.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence

from .binary import decode_module
from .check import validate
from .errors import (
    ExportNotFoundError,
    HostStateError,
    InstantiationError,
    InvalidModuleError,
    LinkError,
    SignatureMismatchError,
    Trapped,
    UnresolvedImportError,
)
from .ir import (
    ENTRY_SIGNATURE,
    LOG_SIGNATURE,
    OP_ADD,
    OP_CALL,
    OP_CONST,
    OP_LOCAL_GET,
    OP_LOCAL_SET,
    OP_LOCAL_TEE,
    OP_MUL,
    FuncType,
    Function,
    ModuleDescriptor,
    to_i32,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CALL_DEPTH: int = 1000

ST_UNLOADED: str = "unloaded"
ST_VALIDATED: str = "validated"
ST_LINKED: str = "linked"
ST_INSTANTIATED: str = "instantiated"
ST_INVOKED: str = "invoked"
ST_RETURNED: str = "returned"
ST_TRAPPED: str = "trapped"
ST_FAILED: str = "failed"

TRAP_HOST_ERROR: str = "host_error"
TRAP_HOST_RESULT: str = "host_result"
TRAP_STACK_EXHAUSTED: str = "call_stack_exhausted"
TRAP_UNBOUND_IMPORT: str = "unbound_import"


# ============================================================
# Results
# ============================================================


@dataclass(frozen=True)
class Trap:
    code: str
    reason: str
    cause: BaseException | None = field(default=None, compare=False)


@dataclass(frozen=True)
class ExecutionResult:
    """Either the returned values or the trap that ended the invocation."""

    values: tuple[int, ...] = ()
    trap: Trap | None = None

    @property
    def trapped(self) -> bool:
        return self.trap is not None

    @property
    def value(self) -> int | None:
        if self.trap is not None or len(self.values) == 0:
            return None
        return self.values[0]

    def unwrap(self) -> tuple[int, ...]:
        """Return the values, or raise Trapped."""
        if self.trap is not None:
            raise Trapped(self.trap) from self.trap.cause
        return self.values


# ============================================================
# Linking
# ============================================================


@dataclass(frozen=True)
class ImportBinding:
    module: str
    name: str
    typ: FuncType
    func: Callable[..., object]


class Linker:
    """Host-side definitions offered to a module's imports."""

    def __init__(self) -> None:
        self._defs: dict[tuple[str, str], ImportBinding] = {}

    def define(self, module: str, name: str, func: Callable[..., object], typ: FuncType = LOG_SIGNATURE) -> None:
        key = (module, name)
        if key in self._defs:
            raise LinkError("import " + module + "." + name + " is already defined")
        self._defs[key] = ImportBinding(module, name, typ, func)

    def get(self, module: str, name: str) -> ImportBinding | None:
        return self._defs.get((module, name))

    def bindings(self) -> list[ImportBinding]:
        return list(self._defs.values())


class Store:
    """Execution context owning the instances created in it."""

    def __init__(self, max_call_depth: int = DEFAULT_MAX_CALL_DEPTH) -> None:
        if max_call_depth < 1:
            raise ValueError("max_call_depth must be positive")
        self.max_call_depth = max_call_depth
        self.instances: list[Instance] = []


# ============================================================
# Instance
# ============================================================


@dataclass
class _Frame:
    func: Function
    locals: list[int]
    pc: int = 0


class Instance:
    """A linked module plus its execution state.

    Invocations on one instance are serialized; each gets fresh locals, operand
    stack and call stack, so a trap leaves nothing behind.
    """

    def __init__(self, store: Store, module: ModuleDescriptor, imports: Sequence[ImportBinding | None]) -> None:
        self.store = store
        self.module = module
        self._imports = list(imports)
        self._types = module.func_types()
        self._local_templates = [[0] * len(fn.locals) for fn in module.functions]
        self._lock = threading.Lock()

    def exports(self) -> list[str]:
        return [exp.name for exp in self.module.exports]

    def export_type(self, name: str) -> FuncType:
        return self._types[self._export_index(name)]

    def _export_index(self, name: str) -> int:
        exp = self.module.export(name)
        if exp is None or not isinstance(exp.target, int):
            raise ExportNotFoundError(name)
        return exp.target

    def lookup(self, name: str, args: Sequence[int] = (), expected: FuncType | None = None) -> int:
        """Locate an export and check it can be called with args. Returns its function index."""
        idx = self._export_index(name)
        typ = self._types[idx]
        if expected is not None and typ != expected:
            raise SignatureMismatchError(
                "export '" + name + "' has type " + typ.display() + ", expected " + expected.display(), "invoke"
            )
        if len(args) != len(typ.params):
            raise SignatureMismatchError(
                "export '" + name + "' takes " + str(len(typ.params)) + " argument(s), got " + str(len(args)), "invoke"
            )
        for a in args:
            if not isinstance(a, int) or isinstance(a, bool):
                raise SignatureMismatchError("argument " + repr(a) + " is not an i32", "invoke")
        return idx

    def call(self, name: str, *args: int, expected: FuncType | None = None) -> ExecutionResult:
        idx = self.lookup(name, args, expected)
        return self.execute(idx, args)

    def execute(self, func_idx: int, args: Sequence[int]) -> ExecutionResult:
        with self._lock:
            return self._run(func_idx, [to_i32(a) for a in args])

    # ── Interpreter ─────────────────────────────────────────

    def _run(self, func_idx: int, args: list[int]) -> ExecutionResult:
        stack: list[int] = []
        frames: list[_Frame] = []
        trap = self._enter(func_idx, args, stack, frames)
        while trap is None and frames:
            frame = frames[-1]
            body = frame.func.body
            if frame.pc >= len(body):
                # results are already on top of the operand stack
                frames.pop()
                continue
            instr = body[frame.pc]
            frame.pc += 1
            op = instr.op
            arg = instr.arg
            if op == OP_CONST:
                stack.append(arg)
            elif op == OP_ADD:
                b = stack.pop()
                a = stack.pop()
                stack.append(to_i32(a + b))
            elif op == OP_MUL:
                b = stack.pop()
                a = stack.pop()
                stack.append(to_i32(a * b))
            elif op == OP_LOCAL_GET:
                stack.append(frame.locals[arg])
            elif op == OP_LOCAL_SET:
                frame.locals[arg] = stack.pop()
            elif op == OP_LOCAL_TEE:
                frame.locals[arg] = stack[-1]
            elif op == OP_CALL:
                n = len(self._types[arg].params)
                call_args = stack[len(stack) - n :]
                del stack[len(stack) - n :]
                trap = self._enter(arg, call_args, stack, frames)
            else:
                raise AssertionError("unvalidated instruction " + op)
        if trap is not None:
            logger.debug("trap: %s", trap.reason)
            return ExecutionResult(trap=trap)
        n = len(self._types[func_idx].results)
        return ExecutionResult(values=tuple(stack[len(stack) - n :]))

    def _enter(self, idx: int, args: list[int], stack: list[int], frames: list[_Frame]) -> Trap | None:
        """Start a call: run a host function to completion or push a frame."""
        n_imports = len(self._imports)
        if idx < n_imports:
            binding = self._imports[idx]
            if binding is None:
                imp = self.module.imports[idx]
                return Trap(TRAP_UNBOUND_IMPORT, "call to unbound import " + imp.module + "." + imp.name)
            return _call_host(binding, args, stack)
        if len(frames) >= self.store.max_call_depth:
            return Trap(TRAP_STACK_EXHAUSTED, "call stack exhausted at depth " + str(len(frames)))
        fn_pos = idx - n_imports
        frames.append(_Frame(self.module.functions[fn_pos], args + list(self._local_templates[fn_pos])))
        return None


def _call_host(binding: ImportBinding, args: list[int], stack: list[int]) -> Trap | None:
    label = binding.module + "." + binding.name
    try:
        result = binding.func(*args)
    except Exception as e:
        return Trap(TRAP_HOST_ERROR, "host function " + label + " raised " + type(e).__name__ + ": " + str(e), e)
    results = binding.typ.results
    if len(results) == 0:
        if result is not None:
            return Trap(TRAP_HOST_RESULT, "host function " + label + " returned a value but declares none")
        return None
    values = [result] if len(results) == 1 else result
    if not isinstance(values, (list, tuple)) or len(values) != len(results):
        return Trap(TRAP_HOST_RESULT, "host function " + label + " returned " + repr(result))
    for v in values:
        if not isinstance(v, int) or isinstance(v, bool):
            return Trap(TRAP_HOST_RESULT, "host function " + label + " returned non-integer " + repr(v))
        stack.append(to_i32(v))
    return None


# ============================================================
# State machine
# ============================================================


class Host:
    """One load/link/instantiate/invoke attempt for a binary module."""

    def __init__(self, store: Store | None = None) -> None:
        self.store = store if store is not None else Store()
        self.state: str = ST_UNLOADED
        self.module: ModuleDescriptor | None = None
        self.bindings: list[ImportBinding] = []
        self.instance: Instance | None = None
        self.result: ExecutionResult | None = None

    @contextmanager
    def _transition(self, frm: str, to: str, action: str) -> Iterator[None]:
        if self.state != frm:
            raise HostStateError("cannot " + action + " a module in state '" + self.state + "'")
        try:
            yield
        except Exception:
            logger.debug("%s failed in state %s", action, frm)
            self.state = ST_FAILED
            raise
        logger.debug("%s -> %s", frm, to)
        self.state = to

    def load(self, data: bytes) -> ModuleDescriptor:
        """Decode and re-validate binary module bytes."""
        with self._transition(ST_UNLOADED, ST_VALIDATED, "load"):
            module = decode_module(data)
            errors = validate(module, required_imports=())
            if len(errors) > 0:
                raise InvalidModuleError("module failed validation: " + str(errors[0])) from errors[0]
            self.module = module
        return module

    def link(self, linker: Linker) -> list[ImportBinding]:
        """Match every import by name and exact signature."""
        with self._transition(ST_VALIDATED, ST_LINKED, "link"):
            assert self.module is not None
            bindings: list[ImportBinding] = []
            for imp in self.module.imports:
                binding = linker.get(imp.module, imp.name)
                if binding is None:
                    raise UnresolvedImportError(imp.module, imp.name)
                if binding.typ != imp.typ:
                    raise SignatureMismatchError(
                        "import "
                        + imp.module
                        + "."
                        + imp.name
                        + " has type "
                        + imp.typ.display()
                        + " but the host provides "
                        + binding.typ.display()
                    )
                bindings.append(binding)
            self.bindings = bindings
        return self.bindings

    def instantiate(self) -> Instance:
        with self._transition(ST_LINKED, ST_INSTANTIATED, "instantiate"):
            assert self.module is not None
            for binding in self.bindings:
                if not callable(binding.func):
                    raise InstantiationError(
                        "binding for " + binding.module + "." + binding.name + " is not callable"
                    )
            instance = Instance(self.store, self.module, self.bindings)
            self.store.instances.append(instance)
            self.instance = instance
        return instance

    def invoke(
        self, name: str = "main", args: Sequence[int] = (), expected: FuncType | None = ENTRY_SIGNATURE
    ) -> ExecutionResult:
        """Locate the export, check its signature, then execute it."""
        with self._transition(ST_INSTANTIATED, ST_INVOKED, "invoke"):
            assert self.instance is not None
            idx = self.instance.lookup(name, args, expected)
        assert self.instance is not None
        result = self.instance.execute(idx, args)
        self.result = result
        self.state = ST_TRAPPED if result.trapped else ST_RETURNED
        logger.debug("%s -> %s", ST_INVOKED, self.state)
        return result


def run_module(
    data: bytes,
    linker: Linker,
    store: Store | None = None,
    entry: str = "main",
    args: Sequence[int] = (),
    expected: FuncType | None = ENTRY_SIGNATURE,
) -> ExecutionResult:
    """Drive a module through every host stage and invoke entry."""
    host = Host(store)
    host.load(data)
    host.link(linker)
    host.instantiate()
    return host.invoke(entry, args, expected)
