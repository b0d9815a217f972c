"""Pytest configuration for the exprwasm test suite."""

import sys
from pathlib import Path

import pytest

# Add the repository root to the path so tests run without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from exprwasm.cli import demo_tree  # noqa: E402
from exprwasm.host import Linker  # noqa: E402


class RecordingLog:
    """Host callback that remembers every value it was called with."""

    def __init__(self) -> None:
        self.calls: list[int] = []

    def __call__(self, value: int) -> None:
        self.calls.append(value)


@pytest.fixture
def recorder() -> RecordingLog:
    return RecordingLog()


@pytest.fixture
def linker(recorder: RecordingLog) -> Linker:
    linker = Linker()
    linker.define("env", "log_i32", recorder)
    return linker


@pytest.fixture
def demo():
    """add(print(add(10, mul(2, 5))), 30)."""
    return demo_tree()
