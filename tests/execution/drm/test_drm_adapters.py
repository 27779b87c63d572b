"""Tests for the runner adapter registry and the local process adapter."""

from __future__ import annotations

import sys
import time
from pathlib import Path

import pytest

from gpexec.core.errors import ConfigurationError
from gpexec.execution.drm import (
    DrmJobState,
    DrmJobSubmission,
    LocalProcessAdapter,
    RunnerAdapter,
    UnavailableAdapter,
    create_adapter,
    register_adapter,
)
from gpexec.execution.drm.adapters import available_adapters
from gpexec.execution.drm.mock_adapters import EmptyIdAdapter, ScriptedAdapter


def _submission(tmp_path: Path, code: str, **kwargs) -> DrmJobSubmission:
    return DrmJobSubmission(
        gp_job_id=1,
        command_line=(sys.executable, "-c", code),
        working_dir=tmp_path,
        stdout_file=tmp_path / "stdout.txt",
        stderr_file=tmp_path / "stderr.txt",
        **kwargs,
    )


def _poll_until_terminated(adapter: LocalProcessAdapter, drm_job_id: str, timeout: float = 15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = adapter.poll_status(drm_job_id)
        if status.job_state.is_terminated:
            return status
        time.sleep(0.05)
    raise AssertionError(f"{drm_job_id} did not terminate")


class TestRegistry:
    def test_builtin_adapters(self) -> None:
        assert {"local", "unavailable"} <= set(available_adapters())
        assert isinstance(create_adapter("local"), LocalProcessAdapter)

    def test_unknown_adapter(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown job runner 'pbs'"):
            create_adapter("pbs")

    def test_bad_options(self) -> None:
        with pytest.raises(ConfigurationError, match="invalid options"):
            create_adapter("local", queue_name="x")

    def test_register_custom(self) -> None:
        register_adapter("scripted-test", ScriptedAdapter)
        adapter = create_adapter("scripted-test", states=["DONE"])
        assert isinstance(adapter, ScriptedAdapter)

    @pytest.mark.parametrize(
        "adapter", [LocalProcessAdapter(), UnavailableAdapter(), ScriptedAdapter(), EmptyIdAdapter()]
    )
    def test_protocol(self, adapter) -> None:
        assert isinstance(adapter, RunnerAdapter)


class TestUnavailableAdapter:
    def test_submit_and_cancel_raise(self, tmp_path: Path) -> None:
        adapter = UnavailableAdapter(reason="boom")
        with pytest.raises(ConfigurationError, match="Server configuration error"):
            adapter.submit(_submission(tmp_path, "pass"))
        with pytest.raises(ConfigurationError):
            adapter.cancel("x")
        assert adapter.poll_status("x") is None


@pytest.mark.integration
class TestLocalProcessAdapter:
    def test_success(self, tmp_path: Path) -> None:
        adapter = LocalProcessAdapter()
        drm_job_id = adapter.submit(_submission(tmp_path, "print('hi')", log_filename=".runner.log"))

        status = _poll_until_terminated(adapter, drm_job_id)

        assert drm_job_id.startswith("local-")
        assert status.job_state is DrmJobState.DONE
        assert status.exit_code == 0
        assert status.start_time is not None
        assert (tmp_path / "stdout.txt").read_text() == "hi\n"
        assert drm_job_id in (tmp_path / ".runner.log").read_text()

    def test_failure_exit_code(self, tmp_path: Path) -> None:
        adapter = LocalProcessAdapter()
        drm_job_id = adapter.submit(_submission(tmp_path, "import sys; sys.exit(4)"))
        status = _poll_until_terminated(adapter, drm_job_id)
        assert status.job_state is DrmJobState.FAILED
        assert status.exit_code == 4

    def test_cancel(self, tmp_path: Path) -> None:
        adapter = LocalProcessAdapter()
        drm_job_id = adapter.submit(_submission(tmp_path, "import time; time.sleep(30)"))
        assert adapter.poll_status(drm_job_id).job_state is DrmJobState.RUNNING

        assert adapter.cancel(drm_job_id)
        status = _poll_until_terminated(adapter, drm_job_id)

        assert status.job_state is DrmJobState.CANCELLED
        assert adapter.cancel(drm_job_id) is False

    def test_unknown_id_is_aborted(self) -> None:
        status = LocalProcessAdapter().poll_status("local-deadbeef")
        assert status.job_state is DrmJobState.ABORTED

    def test_spawn_failure_returns_no_id(self, tmp_path: Path) -> None:
        submission = DrmJobSubmission(
            gp_job_id=2, command_line=("/nonexistent/runner-xyz",), working_dir=tmp_path
        )
        assert LocalProcessAdapter().submit(submission) is None

    def test_stop_terminates_running(self, tmp_path: Path) -> None:
        adapter = LocalProcessAdapter()
        drm_job_id = adapter.submit(_submission(tmp_path, "import time; time.sleep(30)"))
        adapter.stop()
        status = _poll_until_terminated(adapter, drm_job_id)
        assert status.job_state is DrmJobState.ABORTED
