"""Render a module descriptor in WebAssembly text format (WAT)."""

from __future__ import annotations

from .ir import Export, FuncType, Function, Import, ModuleDescriptor


def to_wat(desc: ModuleDescriptor) -> str:
    """Render desc as a WAT module. Works on symbolic and resolved descriptors."""
    return _Emitter().emit_module(desc)


class _Emitter:
    _INDENT: str = "  "

    def __init__(self) -> None:
        self._lines: list[str] = []
        self._indent_level: int = 0

    def emit_module(self, desc: ModuleDescriptor) -> str:
        self._lines = []
        self._indent_level = 0
        self._emit_line("(module")
        self._indent_level += 1
        for imp in desc.imports:
            self._emit_import(imp)
        for fn in desc.functions:
            self._emit_function(fn)
        for exp in desc.exports:
            self._emit_export(exp)
        self._indent_level -= 1
        self._emit_line(")")
        return "\n".join(self._lines) + "\n"

    def _emit_line(self, line: str) -> None:
        self._lines.append(self._INDENT * self._indent_level + line)

    def _emit_import(self, imp: Import) -> None:
        sig = _render_sig(imp.typ)
        head = "(func " + imp.symbol
        if sig != "":
            head += " " + sig
        self._emit_line("(import " + _quote(imp.module) + " " + _quote(imp.name) + " " + head + "))")

    def _emit_function(self, fn: Function) -> None:
        parts = ["(func", fn.symbol]
        sig = _render_sig(fn.typ)
        if sig != "":
            parts.append(sig)
        for loc in fn.locals:
            parts.append("(local " + loc.symbol + " " + loc.typ + ")")
        self._emit_line(" ".join(parts))
        self._indent_level += 1
        for instr in fn.body:
            self._emit_line(instr.display())
        self._indent_level -= 1
        self._emit_line(")")

    def _emit_export(self, exp: Export) -> None:
        self._emit_line("(export " + _quote(exp.name) + " (func " + str(exp.target) + "))")


def _render_sig(typ: FuncType) -> str:
    parts = []
    if typ.params:
        parts.append("(param " + " ".join(typ.params) + ")")
    if typ.results:
        parts.append("(result " + " ".join(typ.results) + ")")
    return " ".join(parts)


def _quote(s: str) -> str:
    out = []
    for c in s:
        if c == '"' or c == "\\":
            out.append("\\" + c)
        elif " " <= c <= "~":
            out.append(c)
        else:
            for b in c.encode("utf-8"):
                out.append("\\" + format(b, "02x"))
    return '"' + "".join(out) + '"'
