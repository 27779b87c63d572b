"""Types for the external-queue (DRM) executor.

``DrmJobState`` is a small hierarchy: ``state.is_(DrmJobState.TERMINATED)``
is true for DONE, FAILED, ABORTED and CANCELLED as well as TERMINATED.

``DrmJobSubmission`` is what a ``RunnerAdapter`` receives; it is built from a
prepared command plus per-task resource hints, where the named worker's
config map takes precedence over plain properties.

Architecture:

    .. code-block:: text

        PreparedCommand + properties + worker config
                 │  DrmJobSubmission.build()
                 ▼
        RunnerAdapter.submit(submission) ──► external id
        RunnerAdapter.poll_status(id)    ──► DrmJobStatus(state, exit_code, times)
        RunnerAdapter.cancel(id)
        RunnerAdapter.stop()

Tags:
    gpexec, drm, queue, types, protocol

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from gpexec.core.errors import ConfigurationError
from gpexec.execution.command import PreparedCommand
from gpexec.execution.completion import STDERR_FILE, STDOUT_FILE


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DrmJobState(str, Enum):
    UNDETERMINED = "UNDETERMINED"
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    QUEUED_HELD = "QUEUED_HELD"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    TERMINATED = "TERMINATED"
    DONE = "DONE"
    FAILED = "FAILED"
    ABORTED = "ABORTED"
    CANCELLED = "CANCELLED"

    @property
    def parent(self) -> DrmJobState | None:
        return _PARENTS.get(self)

    def is_(self, other: DrmJobState) -> bool:
        """True if this state is ``other`` or one of its sub-states."""
        state: DrmJobState | None = self
        while state is not None:
            if state is other:
                return True
            state = state.parent
        return False

    @property
    def is_terminated(self) -> bool:
        return self.is_(DrmJobState.TERMINATED)


_PARENTS = {
    DrmJobState.QUEUED_HELD: DrmJobState.QUEUED,
    DrmJobState.SUSPENDED: DrmJobState.RUNNING,
    DrmJobState.DONE: DrmJobState.TERMINATED,
    DrmJobState.FAILED: DrmJobState.TERMINATED,
    DrmJobState.ABORTED: DrmJobState.TERMINATED,
    DrmJobState.CANCELLED: DrmJobState.TERMINATED,
}


@dataclass(frozen=True)
class DrmJobStatus:
    """A poll result reported by a runner adapter."""

    drm_job_id: str
    job_state: DrmJobState
    exit_code: int | None = None
    status_message: str = ""
    submit_time: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    cpu_time: timedelta | None = None
    memory_bytes: int | None = None
    queue_id: str | None = None
    worker_name: str | None = None


@dataclass
class DrmJobRecord:
    """Row of the DRM lookup table: one per dispatched job, updated per poll."""

    gp_job_id: int
    runner_name: str
    job_state: DrmJobState = DrmJobState.PENDING
    drm_job_id: str | None = None
    status_message: str | None = None
    exit_code: int | None = None
    queue_id: str | None = None
    worker_name: str | None = None
    working_dir: str | None = None
    submit_time: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    cpu_time_seconds: int | None = None
    max_memory_bytes: int | None = None
    updated_at: datetime = field(default_factory=_utcnow)

    def apply(self, status: DrmJobStatus) -> None:
        """Fold a poll result into this record."""
        self.drm_job_id = status.drm_job_id or self.drm_job_id
        self.job_state = status.job_state
        self.status_message = status.status_message or self.status_message
        self.exit_code = status.exit_code if status.exit_code is not None else self.exit_code
        self.queue_id = status.queue_id or self.queue_id
        self.worker_name = status.worker_name or self.worker_name
        self.submit_time = status.submit_time or self.submit_time
        self.start_time = status.start_time or self.start_time
        self.end_time = status.end_time or self.end_time
        if status.cpu_time is not None:
            self.cpu_time_seconds = int(status.cpu_time.total_seconds())
        if status.memory_bytes is not None:
            self.max_memory_bytes = status.memory_bytes
        self.updated_at = _utcnow()


# ── Resource hints ───────────────────────────────────────────────────────

QUEUE_KEY = "drm.queue"
MEMORY_KEY = "drm.memory"
WALLTIME_KEY = "drm.walltime"
NODE_COUNT_KEY = "drm.nodeCount"
CPU_COUNT_KEY = "drm.cpuCount"
EXTRA_ARGS_KEY = "drm.extraArgs"
WORKER_NAME_KEY = "drm.workerName"
LOG_FILE_KEY = "drm.logFile"

_WALLTIME_RE = re.compile(r"^(?:(\d+)-)?(\d+):(\d{1,2}):(\d{1,2})$")
_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)b?\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def parse_walltime(text: str) -> timedelta:
    """Parse ``[days-]hh:mm:ss`` (e.g. ``02:00:00``, ``7-00:00:00``)."""
    match = _WALLTIME_RE.match(text.strip())
    if not match:
        raise ValueError(f"invalid walltime '{text}', expected [days-]hh:mm:ss")
    days, hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    return timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)


def parse_memory(text: str) -> int:
    """Parse ``"8 Gb"``, ``"512mb"``, ``"2G"`` into bytes."""
    match = _MEMORY_RE.match(text)
    if not match:
        raise ValueError(f"invalid memory '{text}', expected e.g. '8 Gb'")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


@dataclass(frozen=True)
class DrmJobSubmission:
    """Everything a runner adapter needs to start one job."""

    gp_job_id: int
    command_line: tuple[str, ...]
    working_dir: Path
    environment: Mapping[str, str] = field(default_factory=dict)
    user_id: str = ""
    task_name: str = ""
    lsid: str = ""
    stdout_file: Path | None = None
    stderr_file: Path | None = None
    stdin_file: Path | None = None
    log_filename: str | None = None
    worker_name: str | None = None
    worker_config: Mapping[str, Any] = field(default_factory=dict)
    queue: str | None = None
    memory_bytes: int | None = None
    walltime: timedelta | None = None
    node_count: int | None = None
    cpu_count: int | None = None
    extra_args: tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        prepared: PreparedCommand,
        properties: Mapping[str, Any] | None = None,
        worker_config: Mapping[str, Any] | None = None,
        *,
        log_filename: str | None = None,
    ) -> DrmJobSubmission:
        """Assemble a submission; invalid resource hints raise ``ConfigurationError``."""
        properties = dict(properties or {})
        worker_config = dict(worker_config or {})
        job = prepared.job

        def lookup(key: str) -> Any:
            value = worker_config.get(key, properties.get(key))
            return None if value in (None, "") else value

        def as_int(key: str) -> int | None:
            value = lookup(key)
            if value is None:
                return None
            try:
                return int(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"invalid {key}: {value!r} is not an integer", cause=e
                ).with_context(job_id=job.job_id) from e

        walltime = None
        memory = None
        try:
            if lookup(WALLTIME_KEY) is not None:
                walltime = parse_walltime(str(lookup(WALLTIME_KEY)))
            if lookup(MEMORY_KEY) is not None:
                memory = parse_memory(str(lookup(MEMORY_KEY)))
        except ValueError as e:
            raise ConfigurationError(str(e), cause=e).with_context(job_id=job.job_id) from e

        extra = lookup(EXTRA_ARGS_KEY)
        if isinstance(extra, str):
            extra_args = tuple(extra.split())
        else:
            extra_args = tuple(str(a) for a in extra or ())

        return cls(
            gp_job_id=job.job_id,
            command_line=tuple(prepared.argv),
            working_dir=prepared.work_dir,
            environment=dict(prepared.environment),
            user_id=job.user_id,
            task_name=prepared.template.name,
            lsid=prepared.template.lsid or job.lsid,
            stdout_file=prepared.work_dir / STDOUT_FILE,
            stderr_file=prepared.work_dir / STDERR_FILE,
            stdin_file=prepared.stdin_file,
            log_filename=lookup(LOG_FILE_KEY) or log_filename,
            worker_name=lookup(WORKER_NAME_KEY),
            worker_config=worker_config,
            queue=lookup(QUEUE_KEY),
            memory_bytes=memory,
            walltime=walltime,
            node_count=as_int(NODE_COUNT_KEY),
            cpu_count=as_int(CPU_COUNT_KEY),
            extra_args=extra_args,
        )


@runtime_checkable
class RunnerAdapter(Protocol):
    """Contract between the DRM executor and a specific queueing system."""

    def submit(self, submission: DrmJobSubmission) -> str | None:
        """Start the job; return its external id (``None``/empty on failure)."""
        ...

    def poll_status(self, drm_job_id: str) -> DrmJobStatus | None: ...

    def cancel(self, drm_job_id: str) -> bool: ...

    def stop(self) -> None: ...


__all__ = [
    "DrmJobState",
    "DrmJobStatus",
    "DrmJobRecord",
    "DrmJobSubmission",
    "RunnerAdapter",
    "parse_walltime",
    "parse_memory",
]
