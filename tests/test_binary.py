"""Tests for the WebAssembly binary codec."""

import pytest

from exprwasm.ast import lit
from exprwasm.binary import _Reader, decode_module, encode_i32, encode_u32
from exprwasm.check import assemble, resolve
from exprwasm.codegen import generate
from exprwasm.errors import InvalidModuleError
from exprwasm.ir import ENTRY_SIGNATURE, I32, LOG_SIGNATURE, Instr, Local

DEMO_HEX = (
    "0061736d 01000000"
    # type: (i32) -> (), () -> (i32)
    " 01 09 02 60 01 7f 00 60 00 01 7f"
    # import: env.log_i32, type 0
    " 02 0f 01 03 656e76 07 6c6f675f693332 00 00"
    # function: calculate, main -> type 1
    " 03 03 02 01 01"
    # export: calculate -> 1, main -> 2
    " 07 14 02 09 63616c63756c617465 00 01 04 6d61696e 00 02"
    # code
    " 0a 1c 02"
    " 15 01 01 7f 41 0a 41 02 41 05 6c 6a 22 00 10 00 20 00 41 1e 6a 0b"
    " 04 00 10 01 0b"
)


def _demo_bytes(demo):
    return bytes(assemble(generate(demo)))


# ============================================================
# LEB128
# ============================================================


@pytest.mark.parametrize(
    "value,encoded",
    [(0, "00"), (1, "01"), (127, "7f"), (128, "8001"), (624485, "e58e26"), (0xFFFFFFFF, "ffffffff0f")],
)
def test_encode_u32(value, encoded):
    assert encode_u32(value) == bytes.fromhex(encoded)
    assert _Reader(bytes.fromhex(encoded)).u32() == value


@pytest.mark.parametrize(
    "value,encoded",
    [
        (0, "00"),
        (-1, "7f"),
        (63, "3f"),
        (64, "c000"),
        (-64, "40"),
        (-65, "bf7f"),
        (2**31 - 1, "ffffffff07"),
        (-(2**31), "8080808078"),
    ],
)
def test_encode_i32(value, encoded):
    assert encode_i32(value) == bytes.fromhex(encoded)
    assert _Reader(bytes.fromhex(encoded)).i32() == value


def test_encode_out_of_range():
    with pytest.raises(ValueError):
        encode_u32(-1)
    with pytest.raises(ValueError):
        encode_i32(2**31)


@pytest.mark.parametrize("data", ["ffffffff1f", "8080808080"])
def test_u32_overlong(data):
    with pytest.raises(InvalidModuleError, match="LEB128"):
        _Reader(bytes.fromhex(data)).u32()


def test_leb_truncated():
    with pytest.raises(InvalidModuleError, match="unexpected end"):
        _Reader(b"\x80").u32()


# ============================================================
# encoding
# ============================================================


def test_demo_module_bytes(demo):
    assert _demo_bytes(demo) == bytes.fromhex(DEMO_HEX)


def test_encoding_is_deterministic(demo):
    from exprwasm.cli import demo_tree

    assert _demo_bytes(demo) == _demo_bytes(demo_tree())


def test_large_constant_encoding():
    data = bytes(assemble(generate(lit(-(2**31)))))
    assert bytes.fromhex("41 8080808078") in data


# ============================================================
# decoding
# ============================================================


def test_decode_demo(demo):
    desc = decode_module(bytes.fromhex(DEMO_HEX))
    assert [(i.module, i.name, i.typ) for i in desc.imports] == [("env", "log_i32", LOG_SIGNATURE)]
    assert [f.typ for f in desc.functions] == [ENTRY_SIGNATURE, ENTRY_SIGNATURE]
    assert desc.functions[0].locals == (Local("$l0", I32),)
    assert desc.functions[0].body == resolve(generate(demo)).functions[0].body
    assert desc.functions[1].body == (Instr("call", 1),)
    assert [(e.name, e.target) for e in desc.exports] == [("calculate", 1), ("main", 2)]


def test_decode_synthesizes_symbols():
    desc = decode_module(bytes.fromhex(DEMO_HEX))
    assert desc.func_symbols() == ["$f0", "$f1", "$f2"]


def test_decode_skips_custom_sections():
    data = bytes.fromhex(DEMO_HEX) + bytes.fromhex("00 07 04 6e616d65 0102")
    assert decode_module(data) == decode_module(bytes.fromhex(DEMO_HEX))


def test_decode_empty_module():
    desc = decode_module(bytes.fromhex("0061736d01000000"))
    assert desc.imports == () and desc.functions == () and desc.exports == ()


@pytest.mark.parametrize(
    "data,message",
    [
        (b"", "bad magic"),
        (b"\x7fELF\x01\x00\x00\x00", "bad magic"),
        (b"\x00asm\x02\x00\x00\x00", "version"),
        (b"\x00asm\x01\x00", "version"),
        (bytes.fromhex(DEMO_HEX)[:-3], "unexpected end"),
        (bytes.fromhex(DEMO_HEX) + b"\x0c\x00", "unsupported section id 12"),
        (bytes.fromhex(DEMO_HEX) + bytes.fromhex("01 01 00"), "out of order"),
        (bytes.fromhex("0061736d01000000 01 04 01 60 00 00 03 02 01 00"), "code section has 0"),
        (bytes.fromhex("0061736d01000000 01 04 01 60 00 00 03 02 01 05"), "type index 5 out of range"),
        (bytes.fromhex("0061736d01000000 01 05 01 60 01 7e 00"), "unsupported value type 0x7e"),
        (bytes.fromhex("0061736d01000000 01 05 01 60 00 00 00"), "trailing bytes"),
        (bytes.fromhex("0061736d01000000 02 07 01 01 61 01 62 02 00"), "unsupported import kind"),
        (bytes.fromhex("0061736d01000000 07 05 01 01 ff 00 00"), "invalid utf-8"),
    ],
)
def test_decode_rejects(data, message):
    with pytest.raises(InvalidModuleError, match=message) as exc:
        decode_module(data)
    assert exc.value.stage == "load"


def test_decode_rejects_unknown_opcode():
    data = bytes.fromhex(DEMO_HEX).replace(bytes.fromhex("6c6a"), bytes.fromhex("6c6b"))
    with pytest.raises(InvalidModuleError, match="unsupported opcode 0x6b"):
        decode_module(data)


def test_decode_rejects_code_after_end():
    # body of main grows a second `end`
    data = bytes.fromhex(DEMO_HEX).replace(bytes.fromhex("0a1c02"), bytes.fromhex("0a1d02"))
    data = data[: -len(bytes.fromhex("0400 10 01 0b"))] + bytes.fromhex("05 00 10 01 0b 0b")
    with pytest.raises(InvalidModuleError, match="after end of body"):
        decode_module(data)
