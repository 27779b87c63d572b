"""Job builders and wait helpers shared by executor tests."""

from __future__ import annotations

import time

from gpexec.core.models import Job, JobStatus, Parameter, TaskTemplate
from gpexec.core.stores import JobStore


def make_job(
    job_id: int,
    input_value: str,
    *,
    task: TaskTemplate | None = None,
    parent_id: int | None = None,
    status: JobStatus = JobStatus.DISPATCHING,
) -> Job:
    return Job(
        job_id=job_id,
        task_name=task.name if task else "WriteUpper",
        lsid=task.lsid if task else "",
        task_id=task.task_id if task else 0,
        parameters=[Parameter("input.file", input_value, is_file=True)],
        parent_id=parent_id,
        status=status,
    )


def wait_for_terminal(store: JobStore, job_id: int, timeout: float = 15.0) -> Job:
    """Poll ``store`` until the job reaches FINISHED or ERROR."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = store.get(job_id)
        if job.status.is_terminal:
            return job
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish within {timeout}s")


def output_names(job: Job) -> list[str]:
    return [p.name for p in job.output_parameters]
