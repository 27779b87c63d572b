"""Runner adapters for the DRM executor.

A runner adapter is the thin piece that speaks to one particular queueing
system. Adapters are looked up by name from a small registry so that the
job configuration can say ``runner: local`` without importing anything.

Architecture::

    register_adapter(name, factory)
    create_adapter(name, **options) ─► RunnerAdapter
        ├── LocalProcessAdapter   detached child processes on this host
        └── UnavailableAdapter    stands in when no runner could be built

Tags:
    gpexec, drm, adapter, registry, subprocess
"""

from __future__ import annotations

import logging
import subprocess
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import IO, Any

from gpexec.core.errors import ConfigurationError
from gpexec.execution.drm._types import (
    DrmJobState,
    DrmJobStatus,
    DrmJobSubmission,
    RunnerAdapter,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = (
    "Server configuration error: the job runner was not initialized. "
    "Ask your server administrator to check the executor configuration."
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_ADAPTERS: dict[str, Callable[..., RunnerAdapter]] = {}


def register_adapter(name: str, factory: Callable[..., RunnerAdapter]) -> None:
    """Register (or replace) the factory for a runner name."""
    _ADAPTERS[name] = factory


def available_adapters() -> list[str]:
    return sorted(_ADAPTERS)


def create_adapter(name: str, **options: Any) -> RunnerAdapter:
    """Build the adapter registered as ``name``.

    Raises:
        ConfigurationError: no adapter is registered under that name, or
            the factory rejected ``options``.
    """
    factory = _ADAPTERS.get(name)
    if factory is None:
        raise ConfigurationError(
            f"unknown job runner '{name}'. Available: {', '.join(available_adapters())}"
        )
    try:
        return factory(**options)
    except TypeError as e:
        raise ConfigurationError(f"invalid options for job runner '{name}': {e}", cause=e) from e


# ---------------------------------------------------------------------------
# UnavailableAdapter
# ---------------------------------------------------------------------------


class UnavailableAdapter:
    """Rejects every submission with a configuration error.

    Used when the configured runner could not be created, so that jobs
    routed here fail with a readable message instead of hanging.
    """

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason

    def submit(self, submission: DrmJobSubmission) -> str | None:
        raise ConfigurationError(UNAVAILABLE_MESSAGE).with_context(job_id=submission.gp_job_id)

    def poll_status(self, drm_job_id: str) -> DrmJobStatus | None:
        return None

    def cancel(self, drm_job_id: str) -> bool:
        raise ConfigurationError(UNAVAILABLE_MESSAGE)

    def stop(self) -> None:
        pass


# ---------------------------------------------------------------------------
# LocalProcessAdapter
# ---------------------------------------------------------------------------


class LocalProcessAdapter:
    """Runs each submission as a detached child process of this server.

    Standard streams go straight to the submission's stdout/stderr files.
    Process handles live in memory only, so ids from a previous server
    process poll as ABORTED.
    """

    def __init__(self, *, terminate_on_stop: bool = True) -> None:
        self._terminate_on_stop = terminate_on_stop
        self._processes: dict[str, subprocess.Popen] = {}
        self._started: dict[str, datetime] = {}
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    def submit(self, submission: DrmJobSubmission) -> str | None:
        work_dir = submission.working_dir
        work_dir.mkdir(parents=True, exist_ok=True)
        handles: list[IO] = []
        try:
            stdout = open(submission.stdout_file or work_dir / "stdout.txt", "ab")
            handles.append(stdout)
            stderr = open(submission.stderr_file or work_dir / "stderr.txt", "ab")
            handles.append(stderr)
            stdin: IO | int = subprocess.DEVNULL
            if submission.stdin_file is not None:
                stdin = open(submission.stdin_file, "rb")
                handles.append(stdin)
            process = subprocess.Popen(
                list(submission.command_line),
                cwd=work_dir,
                env=dict(submission.environment) or None,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("local runner could not start job %s: %s", submission.gp_job_id, e)
            return None
        finally:
            for handle in handles:
                handle.close()

        drm_job_id = f"local-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._processes[drm_job_id] = process
            self._started[drm_job_id] = _utcnow()
        if submission.log_filename:
            (work_dir / submission.log_filename).write_text(
                f"job {submission.gp_job_id} submitted as {drm_job_id} (pid {process.pid})\n",
                encoding="utf-8",
            )
        logger.debug("local runner started %s pid=%s", drm_job_id, process.pid)
        return drm_job_id

    def poll_status(self, drm_job_id: str) -> DrmJobStatus | None:
        with self._lock:
            process = self._processes.get(drm_job_id)
            started = self._started.get(drm_job_id)
            cancelled = drm_job_id in self._cancelled
        if process is None:
            return DrmJobStatus(
                drm_job_id,
                DrmJobState.ABORTED,
                status_message="process is not tracked by this server",
            )
        returncode = process.poll()
        if returncode is None:
            return DrmJobStatus(drm_job_id, DrmJobState.RUNNING, start_time=started)

        with self._lock:
            self._processes.pop(drm_job_id, None)
            self._started.pop(drm_job_id, None)
            self._cancelled.discard(drm_job_id)
        if cancelled:
            state = DrmJobState.CANCELLED
        elif returncode == 0:
            state = DrmJobState.DONE
        elif returncode < 0:
            state = DrmJobState.ABORTED
        else:
            state = DrmJobState.FAILED
        return DrmJobStatus(
            drm_job_id,
            state,
            exit_code=returncode,
            start_time=started,
            end_time=_utcnow(),
            status_message="cancelled" if cancelled else "",
        )

    def cancel(self, drm_job_id: str) -> bool:
        with self._lock:
            process = self._processes.get(drm_job_id)
            if process is None:
                return False
            self._cancelled.add(drm_job_id)
        try:
            process.terminate()
        except OSError as e:
            logger.warning("local runner could not cancel %s: %s", drm_job_id, e)
            return False
        return True

    def stop(self) -> None:
        if not self._terminate_on_stop:
            return
        with self._lock:
            running = list(self._processes.items())
        for drm_job_id, process in running:
            if process.poll() is None:
                logger.info("local runner terminating %s on stop", drm_job_id)
                process.terminate()


register_adapter("local", LocalProcessAdapter)
register_adapter("unavailable", UnavailableAdapter)


__all__ = [
    "LocalProcessAdapter",
    "UnavailableAdapter",
    "UNAVAILABLE_MESSAGE",
    "register_adapter",
    "create_adapter",
    "available_adapters",
]
