"""Command-line tools: compile the demo expression, run a compiled module."""

from __future__ import annotations

import logging
import os
import sys

from .ast import Expr, add, describe, mul, show
from .check import assemble
from .codegen import generate
from .emit import to_wat
from .errors import ExprWasmError
from .host import run_module
from .hostfuncs import default_linker

logger = logging.getLogger(__name__)

DEFAULT_MODULE_PATH: str = os.path.join("compiler", "output", "application.wasm")

COMPILE_USAGE: str = """\
exprwasm-compile [OPTIONS] [OUTPUT]

Compile the built-in expression add(print(add(10, mul(2, 5))), 30) to a
WebAssembly module. OUTPUT defaults to compiler/output/application.wasm.

Options:
  --wat          Print the module in text format instead of writing it
                 (cannot be combined with OUTPUT)
  -v, --verbose  Log progress to stderr (-vv for debug output)
  -h, --help     Show this help message
"""

RUN_USAGE: str = """\
exprwasm-run [OPTIONS] [MODULE]

Load a compiled module, bind env.log_i32, and call its `main` export.
MODULE defaults to compiler/output/application.wasm.

Options:
  -v, --verbose  Log progress to stderr (-vv for debug output)
  -h, --help     Show this help message
"""


def demo_tree() -> Expr:
    """add(print(add(10, mul(2, 5))), 30): logs 20, evaluates to 50."""
    return add(show(add(10, mul(2, 5))), 30)


def _setup_logging(verbosity: int) -> None:
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(name)s: %(message)s", stream=sys.stderr)


def _parse_args(tool: str, usage: str, args: list[str], flags: tuple[str, ...]) -> tuple[int, str, set[str], int]:
    """Returns (exit_code, positional, flags_seen, verbosity); exit_code -1 means continue."""
    positional = ""
    seen: set[str] = set()
    verbosity = 0
    for arg in args:
        if arg == "--help" or arg == "-h":
            print(usage, end="")
            return (0, "", seen, 0)
        if arg == "--verbose" or arg == "-v":
            verbosity += 1
        elif arg == "-vv":
            verbosity += 2
        elif arg in flags:
            seen.add(arg)
        elif arg.startswith("-"):
            print(tool + ": unknown flag '" + arg + "'", file=sys.stderr)
            return (2, "", seen, 0)
        elif positional == "":
            positional = arg
        else:
            print(tool + ": unexpected argument '" + arg + "'", file=sys.stderr)
            return (2, "", seen, 0)
    return (-1, positional, seen, verbosity)


def compiler_main(argv: list[str] | None = None) -> int:
    tool = "exprwasm-compile"
    args = argv if argv is not None else sys.argv[1:]
    code, output, flags, verbosity = _parse_args(tool, COMPILE_USAGE, args, ("--wat",))
    if code >= 0:
        return code
    if "--wat" in flags and output != "":
        print(tool + ": --wat writes to stdout and takes no OUTPUT", file=sys.stderr)
        return 2
    _setup_logging(verbosity)
    if output == "":
        output = DEFAULT_MODULE_PATH
        logger.info("no output path given, defaulting to %s", output)
    root = demo_tree()
    logger.info("expression: %s", describe(root))
    try:
        desc = generate(root)
        module = assemble(desc)
    except ExprWasmError as e:
        print(tool + ": " + e.stage + " error: " + str(e), file=sys.stderr)
        return 1
    logger.info("module assembled (%d bytes)", len(module))
    if "--wat" in flags:
        print(to_wat(desc), end="")
        return 0
    try:
        parent = os.path.dirname(output)
        if parent != "":
            os.makedirs(parent, exist_ok=True)
        module.write(output)
    except OSError as e:
        print(tool + ": cannot write '" + output + "': " + str(e), file=sys.stderr)
        return 1
    logger.info("wrote %s", output)
    return 0


def runner_main(argv: list[str] | None = None) -> int:
    tool = "exprwasm-run"
    args = argv if argv is not None else sys.argv[1:]
    code, path, _, verbosity = _parse_args(tool, RUN_USAGE, args, ())
    if code >= 0:
        return code
    _setup_logging(verbosity)
    if path == "":
        path = DEFAULT_MODULE_PATH
        logger.info("no module path given, defaulting to %s", path)
    try:
        with open(path, "rb") as f:
            data = f.read()
    except FileNotFoundError:
        print(tool + ": " + path + ": No such file or directory", file=sys.stderr)
        return 1
    except OSError as e:
        print(tool + ": " + path + ": " + str(e), file=sys.stderr)
        return 1
    logger.info("loaded %d bytes from %s", len(data), path)
    try:
        result = run_module(data, default_linker())
    except ExprWasmError as e:
        print(tool + ": " + e.stage + " error: " + str(e), file=sys.stderr)
        return 1
    if result.trap is not None:
        print(tool + ": execute error: trap: " + result.trap.reason, file=sys.stderr)
        return 1
    print("main returned: " + str(result.value))
    return 0


def main(argv: list[str] | None = None) -> int:
    """`python -m exprwasm compile|run ...`"""
    args = argv if argv is not None else sys.argv[1:]
    if len(args) == 0 or args[0] not in ("compile", "run"):
        print("usage: python -m exprwasm compile|run [OPTIONS] [PATH]", file=sys.stderr)
        return 2
    if args[0] == "compile":
        return compiler_main(args[1:])
    return runner_main(args[1:])
