"""WebAssembly binary encoding and decoding for resolved module descriptors."""

from __future__ import annotations

from .errors import InvalidModuleError
from .ir import (
    I32,
    OP_ADD,
    OP_CALL,
    OP_CONST,
    OP_LOCAL_GET,
    OP_LOCAL_SET,
    OP_LOCAL_TEE,
    OP_MUL,
    Export,
    FuncType,
    Function,
    Import,
    Instr,
    Local,
    ModuleDescriptor,
)

MAGIC: bytes = b"\x00asm"
VERSION: bytes = b"\x01\x00\x00\x00"

SEC_CUSTOM: int = 0
SEC_TYPE: int = 1
SEC_IMPORT: int = 2
SEC_FUNCTION: int = 3
SEC_EXPORT: int = 7
SEC_CODE: int = 10

_KNOWN_SECTIONS: tuple[int, ...] = (SEC_TYPE, SEC_IMPORT, SEC_FUNCTION, SEC_EXPORT, SEC_CODE)

FUNC_FORM: int = 0x60
KIND_FUNC: int = 0x00
END: int = 0x0B

VALTYPE_CODES: dict[str, int] = {I32: 0x7F}
_VALTYPE_NAMES: dict[int, str] = {v: k for k, v in VALTYPE_CODES.items()}

OPCODES: dict[str, int] = {
    OP_CONST: 0x41,
    OP_ADD: 0x6A,
    OP_MUL: 0x6C,
    OP_CALL: 0x10,
    OP_LOCAL_GET: 0x20,
    OP_LOCAL_SET: 0x21,
    OP_LOCAL_TEE: 0x22,
}
_OPCODE_NAMES: dict[int, str] = {v: k for k, v in OPCODES.items()}

_NO_IMMEDIATE: tuple[str, ...] = (OP_ADD, OP_MUL)


# ============================================================
# LEB128
# ============================================================


def encode_u32(n: int) -> bytes:
    if n < 0 or n > 0xFFFFFFFF:
        raise ValueError("u32 out of range: " + str(n))
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n != 0:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_i32(n: int) -> bytes:
    if n < -(2**31) or n > 2**31 - 1:
        raise ValueError("i32 out of range: " + str(n))
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        done = (n == 0 and byte & 0x40 == 0) or (n == -1 and byte & 0x40 != 0)
        if done:
            out.append(byte)
            return bytes(out)
        out.append(byte | 0x80)


# ============================================================
# ENCODING
# ============================================================


def _name(s: str) -> bytes:
    raw = s.encode("utf-8")
    return encode_u32(len(raw)) + raw


def _vec(items: list[bytes]) -> bytes:
    return encode_u32(len(items)) + b"".join(items)


def _section(sec_id: int, payload: bytes) -> bytes:
    return bytes([sec_id]) + encode_u32(len(payload)) + payload


def _functype(typ: FuncType) -> bytes:
    params = [bytes([VALTYPE_CODES[t]]) for t in typ.params]
    results = [bytes([VALTYPE_CODES[t]]) for t in typ.results]
    return bytes([FUNC_FORM]) + _vec(params) + _vec(results)


def _locals(locals_: tuple[Local, ...]) -> bytes:
    groups: list[tuple[int, str]] = []
    for loc in locals_:
        if groups and groups[-1][1] == loc.typ:
            groups[-1] = (groups[-1][0] + 1, loc.typ)
        else:
            groups.append((1, loc.typ))
    return _vec([encode_u32(count) + bytes([VALTYPE_CODES[typ]]) for count, typ in groups])


def _instr(instr: Instr) -> bytes:
    code = bytes([OPCODES[instr.op]])
    if instr.op in _NO_IMMEDIATE:
        return code
    if not isinstance(instr.arg, int):
        raise ValueError("unresolved operand in " + instr.display())
    if instr.op == OP_CONST:
        return code + encode_i32(instr.arg)
    return code + encode_u32(instr.arg)


def encode_module(desc: ModuleDescriptor) -> bytes:
    """Serialize a resolved, validated descriptor. Same input, same bytes."""
    types: list[FuncType] = []
    for typ in desc.func_types():
        if typ not in types:
            types.append(typ)
    out = bytearray(MAGIC + VERSION)
    out += _section(SEC_TYPE, _vec([_functype(t) for t in types]))
    if desc.imports:
        entries = [
            _name(imp.module) + _name(imp.name) + bytes([KIND_FUNC]) + encode_u32(types.index(imp.typ))
            for imp in desc.imports
        ]
        out += _section(SEC_IMPORT, _vec(entries))
    if desc.functions:
        out += _section(SEC_FUNCTION, _vec([encode_u32(types.index(fn.typ)) for fn in desc.functions]))
    if desc.exports:
        entries = []
        for exp in desc.exports:
            if not isinstance(exp.target, int):
                raise ValueError("unresolved export target " + str(exp.target))
            entries.append(_name(exp.name) + bytes([KIND_FUNC]) + encode_u32(exp.target))
        out += _section(SEC_EXPORT, _vec(entries))
    if desc.functions:
        bodies = []
        for fn in desc.functions:
            code = _locals(fn.locals) + b"".join(_instr(i) for i in fn.body) + bytes([END])
            bodies.append(encode_u32(len(code)) + code)
        out += _section(SEC_CODE, _vec(bodies))
    return bytes(out)


# ============================================================
# DECODING
# ============================================================


class _Reader:
    def __init__(self, data: bytes, where: str = "module"):
        self.data = data
        self.pos = 0
        self.where = where

    def fail(self, msg: str) -> InvalidModuleError:
        return InvalidModuleError(msg + " (" + self.where + ", offset " + str(self.pos) + ")")

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def byte(self) -> int:
        if self.pos >= len(self.data):
            raise self.fail("unexpected end of data")
        b = self.data[self.pos]
        self.pos += 1
        return b

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise self.fail("unexpected end of data")
        out = self.data[self.pos : self.pos + n]
        self.pos += n
        return out

    def u32(self) -> int:
        result = 0
        shift = 0
        for i in range(5):
            b = self.byte()
            result |= (b & 0x7F) << shift
            if b & 0x80 == 0:
                if i == 4 and b > 0x0F:
                    raise self.fail("u32 LEB128 overflow")
                return result
            shift += 7
        raise self.fail("u32 LEB128 too long")

    def i32(self) -> int:
        result = 0
        shift = 0
        for i in range(5):
            b = self.byte()
            result |= (b & 0x7F) << shift
            shift += 7
            if b & 0x80 == 0:
                if i == 4 and b & 0x70 not in (0x00, 0x70):
                    raise self.fail("i32 LEB128 overflow")
                if b & 0x40:
                    result -= 1 << shift
                if result < -(2**31) or result > 2**31 - 1:
                    raise self.fail("i32 LEB128 overflow")
                return result
        raise self.fail("i32 LEB128 too long")

    def name(self) -> str:
        raw = self.take(self.u32())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise self.fail("invalid utf-8 in name") from None

    def valtype(self) -> str:
        code = self.byte()
        if code not in _VALTYPE_NAMES:
            raise self.fail("unsupported value type 0x" + format(code, "02x"))
        return _VALTYPE_NAMES[code]


def decode_module(data: bytes) -> ModuleDescriptor:
    """Decode a binary module. Raises InvalidModuleError on malformed input."""
    r = _Reader(bytes(data))
    if r.data[:4] != MAGIC:
        raise r.fail("bad magic number")
    if r.data[4:8] != VERSION:
        raise r.fail("unsupported binary version")
    r.pos = 8
    types: list[FuncType] = []
    imports: list[Import] = []
    func_type_idx: list[int] = []
    exports: list[Export] = []
    bodies: list[tuple[tuple[Local, ...], tuple[Instr, ...]]] = []
    last = 0
    while not r.at_end():
        sec_id = r.byte()
        size = r.u32()
        payload = _Reader(r.take(size), "section " + str(sec_id))
        if sec_id == SEC_CUSTOM:
            payload.name()
            continue
        if sec_id not in _KNOWN_SECTIONS:
            raise r.fail("unsupported section id " + str(sec_id))
        if sec_id <= last:
            raise r.fail("section " + str(sec_id) + " out of order")
        last = sec_id
        if sec_id == SEC_TYPE:
            types = _read_types(payload)
        elif sec_id == SEC_IMPORT:
            imports = _read_imports(payload, types)
        elif sec_id == SEC_FUNCTION:
            func_type_idx = _read_function_section(payload, types)
        elif sec_id == SEC_EXPORT:
            exports = _read_exports(payload)
        elif sec_id == SEC_CODE:
            bodies = _read_code(payload)
        if not payload.at_end():
            raise payload.fail("trailing bytes in section")
    if len(bodies) != len(func_type_idx):
        raise r.fail(
            "function section declares " + str(len(func_type_idx)) + " functions but code section has " + str(len(bodies))
        )
    offset = len(imports)
    functions = tuple(
        Function("$f" + str(offset + i), types[t], bodies[i][0], bodies[i][1]) for i, t in enumerate(func_type_idx)
    )
    return ModuleDescriptor(imports=tuple(imports), functions=functions, exports=tuple(exports))


def _type_at(r: _Reader, types: list[FuncType], idx: int) -> FuncType:
    if idx >= len(types):
        raise r.fail("type index " + str(idx) + " out of range")
    return types[idx]


def _read_types(r: _Reader) -> list[FuncType]:
    types = []
    for _ in range(r.u32()):
        if r.byte() != FUNC_FORM:
            raise r.fail("expected function type")
        params = tuple(r.valtype() for _ in range(r.u32()))
        results = tuple(r.valtype() for _ in range(r.u32()))
        types.append(FuncType(params, results))
    return types


def _read_imports(r: _Reader, types: list[FuncType]) -> list[Import]:
    imports = []
    for i in range(r.u32()):
        module = r.name()
        name = r.name()
        kind = r.byte()
        if kind != KIND_FUNC:
            raise r.fail("unsupported import kind " + str(kind) + " for " + module + "." + name)
        typ = _type_at(r, types, r.u32())
        imports.append(Import(module, name, "$f" + str(i), typ))
    return imports


def _read_function_section(r: _Reader, types: list[FuncType]) -> list[int]:
    out = []
    for _ in range(r.u32()):
        idx = r.u32()
        _type_at(r, types, idx)
        out.append(idx)
    return out


def _read_exports(r: _Reader) -> list[Export]:
    exports = []
    for _ in range(r.u32()):
        name = r.name()
        kind = r.byte()
        if kind != KIND_FUNC:
            raise r.fail("unsupported export kind " + str(kind) + " for '" + name + "'")
        exports.append(Export(name, r.u32()))
    return exports


def _read_code(r: _Reader) -> list[tuple[tuple[Local, ...], tuple[Instr, ...]]]:
    bodies = []
    for i in range(r.u32()):
        body = _Reader(r.take(r.u32()), "code body " + str(i))
        locals_: list[Local] = []
        for _ in range(body.u32()):
            count = body.u32()
            typ = body.valtype()
            if len(locals_) + count > 50000:
                raise body.fail("too many locals")
            for _ in range(count):
                locals_.append(Local("$l" + str(len(locals_)), typ))
        bodies.append((tuple(locals_), _read_expr(body)))
    return bodies


def _read_expr(r: _Reader) -> tuple[Instr, ...]:
    instrs: list[Instr] = []
    while True:
        code = r.byte()
        if code == END:
            if not r.at_end():
                raise r.fail("trailing bytes after end of body")
            return tuple(instrs)
        op = _OPCODE_NAMES.get(code)
        if op is None:
            raise r.fail("unsupported opcode 0x" + format(code, "02x"))
        if op in _NO_IMMEDIATE:
            instrs.append(Instr(op))
        elif op == OP_CONST:
            instrs.append(Instr(op, r.i32()))
        else:
            instrs.append(Instr(op, r.u32()))
