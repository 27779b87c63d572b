"""Job completion: the single place a job reaches its terminal state.

Both the local executor (after its process exits) and the DRM executor
(when a poll reports TERMINATED) call ``JobCompletionHandler.complete``:

    .. code-block:: text

        restore borrowed inputs ──► WARNING lines for modified inputs
                 │
        write stdout.txt / stderr.txt (non-empty only)
                 │
        harvest job directory ──► output parameters, oldest first
                 │
        persist parameters + FINISHED / ERROR
                 │
        parent? ──► pipeline.on_child_complete(child)
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from gpexec.core.logging import get_logger
from gpexec.core.models import Job, JobStatus, Parameter
from gpexec.core.settings import GpExecSettings
from gpexec.core.stores import JobStore
from gpexec.execution.environment import job_directory
from gpexec.execution.staging import FileStager

logger = get_logger(__name__)

STDOUT_FILE = "stdout.txt"
STDERR_FILE = "stderr.txt"
CAPTURE_FILES = frozenset({STDOUT_FILE, STDERR_FILE})


class ChildCompletionListener(Protocol):
    def on_child_complete(self, child: Job) -> None: ...


def harvest_outputs(
    job_id: int, work_dir: Path, exclude: frozenset[str] = CAPTURE_FILES
) -> list[Parameter]:
    """Output parameters for every file in ``work_dir``, oldest first.

    Files with equal mtimes keep directory enumeration order.
    """
    if not work_dir.is_dir():
        return []
    entries = [
        entry for entry in work_dir.iterdir()
        if entry.is_file() and entry.name not in exclude
    ]
    entries.sort(key=lambda p: p.stat().st_mtime_ns)
    return [Parameter.output_file(job_id, entry.name) for entry in entries]


def _append_text(path: Path, text: str) -> None:
    with open(path, "a", encoding="utf-8") as fh:
        if path.stat().st_size > 0 and not text.startswith("\n"):
            fh.write("\n")
        fh.write(text)


class JobCompletionHandler:
    """Maps a finished execution onto the job record."""

    def __init__(
        self,
        job_store: JobStore,
        settings: GpExecSettings,
        stager: FileStager | None = None,
        pipeline: ChildCompletionListener | None = None,
    ) -> None:
        self._job_store = job_store
        self._settings = settings
        self._stager = stager or FileStager(settings)
        self.pipeline = pipeline

    def complete(
        self,
        job_id: int,
        *,
        exit_code: int | None = 0,
        stdout: str | None = None,
        stderr: str | None = None,
        error_message: str | None = None,
        status: JobStatus | None = None,
        exclude_files: Iterable[str] = (),
    ) -> Job:
        """Record the outcome of an execution and notify the parent pipeline.

        ``status`` defaults to FINISHED for exit code 0 without an error
        message, ERROR otherwise. ``exclude_files`` names files (such as a
        queueing system log) that are not harvested as outputs.
        """
        job = self._job_store.get(job_id)
        work_dir = job.working_dir or job_directory(self._settings, job_id)
        work_dir.mkdir(parents=True, exist_ok=True)

        restored = self._stager.restore_inputs(
            [p for p in job.parameters if not p.is_output],
            task_name=job.task_name,
            job_id=job_id,
        )
        parameters = restored.parameters

        messages = [m for m in (error_message, *restored.warnings) if m]
        failed = bool(error_message) or exit_code != 0

        try:
            if stdout:
                (work_dir / STDOUT_FILE).write_text(stdout, encoding="utf-8")
            err_text = "\n".join(([stderr] if stderr else []) + messages)
            if err_text:
                _append_text(work_dir / STDERR_FILE, err_text + "\n")

            outputs = harvest_outputs(job_id, work_dir, CAPTURE_FILES | frozenset(exclude_files))
            for name in (STDOUT_FILE, STDERR_FILE):
                path = work_dir / name
                if path.is_file() and path.stat().st_size > 0:
                    outputs.append(Parameter.output_file(job_id, name))
        except OSError as e:
            logger.error("harvest_failed", job_id=job_id, error=str(e))
            failed = True
            outputs = []
        parameters = parameters + outputs

        if status is None:
            status = JobStatus.ERROR if failed else JobStatus.FINISHED
        updated = self._job_store.update(job_id, parameters, status)
        logger.info(
            "job_completed",
            job_id=job_id,
            status=status.value,
            exit_code=exit_code,
            outputs=len(outputs),
        )

        if updated.parent_id is not None and self.pipeline is not None:
            self.pipeline.on_child_complete(updated)
        return updated

    def fail(self, job_id: int, message: str) -> Job:
        """Terminate a job that never ran, with ``message`` as its stderr."""
        logger.warning("job_failed", job_id=job_id, error=message)
        return self.complete(job_id, exit_code=None, error_message=message, status=JobStatus.ERROR)


__all__ = [
    "JobCompletionHandler",
    "harvest_outputs",
    "STDOUT_FILE",
    "STDERR_FILE",
]
