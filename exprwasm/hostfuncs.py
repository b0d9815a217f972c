"""Host functions shared by every runner."""

from __future__ import annotations

import sys

from .codegen import DEFAULT_IMPORT_MODULE, DEFAULT_IMPORT_NAME
from .host import Linker
from .ir import LOG_SIGNATURE


def log_i32(value: int) -> None:
    """Write value on its own line to stdout."""
    sys.stdout.write(str(value) + "\n")
    sys.stdout.flush()


def default_linker() -> Linker:
    """A linker with the standard logging import defined."""
    linker = Linker()
    linker.define(DEFAULT_IMPORT_MODULE, DEFAULT_IMPORT_NAME, log_i32, LOG_SIGNATURE)
    return linker
