"""CLI tests for the exprwasm entry points.

Test cases live in cli/*.tests files. Format:

    === test name
    write: blocker 00
    args: compile
    args: run
    ---
    exit: 0
    stdout: 20\\nmain returned: 50
    stderr-empty: true
    ---

Directives in the input section, applied in order inside a fresh directory:
    write:          file name followed by hex-encoded contents
    args:           one `python -m exprwasm` invocation; may repeat

Assertion directives in the expected section, checked against the last run:
    exit:             exact exit code
    stdout:           exact stdout content (`\\n` for newlines, trailing newline ignored)
    stdout-contains:  stdout must contain substring
    stdout-empty:     stdout must be empty
    stderr:           exact stderr content (trailing newline ignored)
    stderr-contains:  stderr must contain substring
    stderr-empty:     stderr must be empty
    file-exists:      path must exist after the runs
    file-missing:     path must not exist after the runs
"""

import os
import stat
import subprocess
import sys
from pathlib import Path

import pytest

from exprwasm.cli import compiler_main, demo_tree, main, runner_main
from exprwasm.codegen import compile_tree

CLI_DIR = Path(__file__).parent / "cli"
REPO_DIR = Path(__file__).parent.parent


def parse_cli_test_file(path: Path) -> list[tuple[str, dict]]:
    """Parse a .tests file into (name, spec) tuples."""
    lines = path.read_text().split("\n")
    result: list[tuple[str, dict]] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith("=== "):
            test_name = line[4:].strip()
            i += 1
            input_lines: list[str] = []
            while i < len(lines) and not lines[i].startswith("---"):
                input_lines.append(lines[i])
                i += 1
            if i < len(lines) and lines[i] == "---":
                i += 1
            expected_lines: list[str] = []
            while i < len(lines) and not lines[i].startswith("---"):
                expected_lines.append(lines[i])
                i += 1
            if i < len(lines) and lines[i] == "---":
                i += 1
            result.append((test_name, _parse_spec(input_lines, expected_lines)))
        else:
            i += 1
    return result


def _parse_spec(input_lines: list[str], expected_lines: list[str]) -> dict:
    spec: dict = {"steps": [], "assertions": []}
    for line in input_lines:
        if line.startswith("args:"):
            spec["steps"].append(("args", line[5:].split()))
        elif line.startswith("write:"):
            name, _, hex_str = line[6:].strip().partition(" ")
            spec["steps"].append(("write", (name, bytes.fromhex(hex_str))))
    for line in expected_lines:
        line = line.strip()
        if not line:
            continue
        kind, _, value = line.partition(":")
        value = value.strip()
        if kind == "exit":
            spec["assertions"].append((kind, int(value)))
        elif kind in ("stdout", "stderr"):
            spec["assertions"].append((kind, value.replace("\\n", "\n")))
        elif kind in ("stdout-empty", "stderr-empty"):
            spec["assertions"].append((kind, None))
        else:
            spec["assertions"].append((kind, value))
    return spec


def discover_cli_tests() -> list[tuple[str, dict]]:
    results = []
    for test_file in sorted(CLI_DIR.glob("*.tests")):
        for name, spec in parse_cli_test_file(test_file):
            results.append((f"{test_file.stem}/{name}", spec))
    return results


def run_steps(spec: dict, workdir: Path) -> subprocess.CompletedProcess[bytes]:
    """Apply every step in workdir; return the last invocation's result."""
    env = dict(os.environ)
    env["PYTHONPATH"] = str(REPO_DIR) + os.pathsep + env.get("PYTHONPATH", "")
    result = None
    for kind, payload in spec["steps"]:
        if kind == "write":
            name, data = payload
            (workdir / name).write_bytes(data)
        else:
            result = subprocess.run(
                [sys.executable, "-m", "exprwasm", *payload],
                capture_output=True,
                cwd=workdir,
                env=env,
            )
    assert result is not None, "test case has no args: line"
    return result


def check_assertions(result: subprocess.CompletedProcess[bytes], assertions: list[tuple], workdir: Path) -> None:
    stdout = result.stdout.decode(errors="replace")
    stderr = result.stderr.decode(errors="replace")
    for kind, value in assertions:
        if kind == "exit":
            assert result.returncode == value, f"expected exit {value}, got {result.returncode}\nstderr: {stderr}"
        elif kind == "stdout":
            assert stdout.rstrip("\n") == value, f"expected stdout {value!r}, got {stdout!r}"
        elif kind == "stdout-contains":
            assert value in stdout, f"expected stdout to contain {value!r}, got {stdout!r}"
        elif kind == "stdout-empty":
            assert result.stdout == b"", f"expected empty stdout, got {result.stdout[:200]!r}"
        elif kind == "stderr":
            assert stderr.rstrip("\n") == value, f"expected stderr {value!r}, got {stderr!r}"
        elif kind == "stderr-contains":
            assert value in stderr, f"expected stderr to contain {value!r}, got {stderr!r}"
        elif kind == "stderr-empty":
            assert result.stderr == b"", f"expected empty stderr, got {result.stderr!r}"
        elif kind == "file-exists":
            assert (workdir / value).is_file(), f"expected {value} to exist"
        elif kind == "file-missing":
            assert not (workdir / value).exists(), f"expected {value} to be absent"
        else:
            raise AssertionError("unknown assertion " + kind)


def pytest_generate_tests(metafunc):
    if "cli_spec" in metafunc.fixturenames:
        params = [pytest.param(spec, id=test_id) for test_id, spec in discover_cli_tests()]
        metafunc.parametrize("cli_spec", params)


def test_cli(cli_spec: dict, tmp_path: Path) -> None:
    result = run_steps(cli_spec, tmp_path)
    check_assertions(result, cli_spec["assertions"], tmp_path)


# ============================================================
# in-process entry points
# ============================================================


def test_compiler_main_writes_golden_bytes(tmp_path, capsys):
    out = tmp_path / "app.wasm"
    assert compiler_main([str(out)]) == 0
    data = out.read_bytes()
    assert data.startswith(b"\x00asm\x01\x00\x00\x00")
    assert len(data) == 93
    assert capsys.readouterr().out == ""


def test_runner_main_prints_log_then_result(tmp_path, capsys):
    out = tmp_path / "app.wasm"
    compiler_main([str(out)])
    assert runner_main([str(out)]) == 0
    assert capsys.readouterr().out == "20\nmain returned: 50\n"


def test_no_temp_files_left_behind(tmp_path):
    out = tmp_path / "app.wasm"
    assert compiler_main([str(out)]) == 0
    assert compiler_main([str(out)]) == 0
    assert sorted(p.name for p in tmp_path.iterdir()) == ["app.wasm"]


@pytest.mark.parametrize("umask,mode", [(0o022, 0o644), (0o002, 0o664), (0o077, 0o600)])
def test_output_mode_follows_umask(tmp_path, umask, mode):
    out = tmp_path / "app.wasm"
    old = os.umask(umask)
    try:
        assert compiler_main([str(out)]) == 0
    finally:
        os.umask(old)
    assert stat.S_IMODE(os.stat(out).st_mode) == mode


def test_failed_write_closes_descriptor(tmp_path, monkeypatch):
    import exprwasm.ir as ir

    opened = []

    def fail(fd, mode):
        opened.append(fd)
        raise OSError("cannot wrap descriptor")

    monkeypatch.setattr(ir.os, "fdopen", fail)
    with pytest.raises(OSError, match="cannot wrap"):
        compile_tree(demo_tree()).write(str(tmp_path / "app.wasm"))
    monkeypatch.undo()
    assert len(opened) == 1
    with pytest.raises(OSError):
        os.fstat(opened[0])
    assert list(tmp_path.iterdir()) == []


def test_wat_with_output_path_is_usage_error(tmp_path, capsys):
    out = tmp_path / "app.wasm"
    assert compiler_main(["--wat", str(out)]) == 2
    assert "--wat" in capsys.readouterr().err
    assert not out.exists()


def test_main_rejects_unknown_subcommand(capsys):
    assert main(["link"]) == 2
    assert "usage:" in capsys.readouterr().err


def test_wat_output_matches_module_shape(capsys):
    assert compiler_main(["--wat"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("(module\n")
    assert "    local.tee $temp\n" in out
