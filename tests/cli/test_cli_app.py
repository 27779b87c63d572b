"""Tests for the gpexec command-line interface."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from gpexec import __version__
from gpexec.cli.app import app
from gpexec.execution.environment import task_directory_name

runner = CliRunner()

ECHO_TASK = """\
name: Echo
command_line: echo <greeting>
parameters:
  - {name: greeting}
"""

UPPER_TASK = """\
name: Upper
lsid: urn:lsid:example.org:module:00009:1
command_line: <python> <libdir>upper.py <input.file>
parameters:
  - {name: input.file, type: file}
"""

UPPER_SCRIPT = """\
import sys

with open(sys.argv[1]) as fh:
    text = fh.read()
with open("upper.txt", "w") as out:
    out.write(text.upper())
"""


@pytest.fixture(autouse=True)
def _quiet_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GPEXEC_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("GPEXEC_PYTHON", sys.executable)


@pytest.fixture
def echo_file(tmp_path: Path) -> Path:
    path = tmp_path / "echo.yaml"
    path.write_text(ECHO_TASK)
    return path


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


# ── validate ─────────────────────────────────────────────────────────────


class TestValidate:
    def test_ok(self, echo_file: Path) -> None:
        result = runner.invoke(app, ["validate", str(echo_file)])
        assert result.exit_code == 0
        assert "Echo: ok" in result.stdout

    def test_reports_problems(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("name: Bad\ncommand_line: prog <a>\nparameters:\n  - {name: a}\n  - {name: b}\n")
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 1
        assert "not cited" in result.output

    def test_unreadable_task(self, tmp_path: Path) -> None:
        path = tmp_path / "noname.yaml"
        path.write_text("command_line: prog\n")
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 1


# ── run ──────────────────────────────────────────────────────────────────


@pytest.mark.integration
class TestRun:
    def test_echo_json(self, echo_file: Path, tmp_path: Path) -> None:
        jobs = tmp_path / "jobs"
        result = runner.invoke(
            app,
            ["run", str(echo_file), "-p", "greeting=hello", "--jobs-dir", str(jobs), "--job-id", "5", "--json"],
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["status"] == "Finished"
        assert [o["name"] for o in payload["outputs"]] == ["stdout.txt"]
        assert (jobs / "5" / "stdout.txt").read_text() == "hello\n"

    def test_file_input(self, tmp_path: Path) -> None:
        task_file = tmp_path / "upper.yaml"
        task_file.write_text(UPPER_TASK)
        lib = tmp_path / "lib"
        module_dir = lib / task_directory_name("Upper", "urn:lsid:example.org:module:00009:1")
        module_dir.mkdir(parents=True)
        (module_dir / "upper.py").write_text(UPPER_SCRIPT)
        data = tmp_path / "in.txt"
        data.write_text("abc\n")

        result = runner.invoke(
            app,
            ["run", str(task_file), "-p", f"input.file={data}",
             "--jobs-dir", str(tmp_path / "jobs"), "--task-lib-dir", str(lib)],
        )

        assert result.exit_code == 0, result.output
        assert "Finished" in result.stdout
        assert (tmp_path / "jobs" / "1" / "upper.txt").read_text() == "ABC\n"
        assert data.exists()

    def test_failing_job_exits_nonzero(self, tmp_path: Path) -> None:
        path = tmp_path / "fail.yaml"
        path.write_text("name: Fail\ncommand_line: \"false\"\n")
        result = runner.invoke(app, ["run", str(path), "--jobs-dir", str(tmp_path / "jobs")])
        assert result.exit_code == 1
        assert "Error" in result.stdout

    def test_bad_assignment(self, echo_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(app, ["run", str(echo_file), "-p", "greeting", "--jobs-dir", str(tmp_path)])
        assert result.exit_code != 0


# ── config ───────────────────────────────────────────────────────────────


def test_config_shows_merged_properties(tmp_path: Path) -> None:
    path = tmp_path / "job_config.yaml"
    path.write_text(
        "default.properties: {executor: Local, drm.queue: normal}\n"
        "executors: {Local: local}\n"
        "user.properties: {alice: {drm.queue: fast, drm.workerName: big}}\n"
        "worker.configs: {big: {drm.cpuCount: 8}}\n"
    )
    result = runner.invoke(app, ["config", str(path), "--task", "Echo", "--user", "alice"])
    assert result.exit_code == 0, result.output
    assert "Local" in result.stdout
    assert "fast" in result.stdout
    assert "worker: drm.cpuCount" in result.stdout
