"""CommandExecutor Protocol — the interface every job backend satisfies.

ARCHITECTURE
────────────
::

    CommandExecutor (Protocol)
      ├── .start()                    ─ acquire threads / adapters
      ├── .stop()                     ─ release them, never blocks on jobs
      ├── .run_job(job)               ─ accept a job; returns immediately
      ├── .terminate_job(job)         ─ best-effort cancellation
      └── .handle_running_job(job)    ─ startup recovery hook

    Implementations:
      LocalCommandExecutor  ─ subprocess per job on a thread pool
      DrmJobExecutor        ─ external queue via a RunnerAdapter
      PipelineExecutor      ─ composite jobs, runs no process itself

Tags:
    gpexec, execution, executor, protocol
"""

from typing import Protocol, runtime_checkable

from gpexec.core.models import Job, JobStatus


@runtime_checkable
class CommandExecutor(Protocol):
    """How a job gets executed.

    ``handle_running_job`` is called once per non-terminal job after a
    restart. It returns the job's new status, or ``None`` when the job is
    still in flight and its status should not change.
    """

    executor_id: str

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def run_job(self, job: Job) -> None: ...

    def terminate_job(self, job: Job) -> None: ...

    def handle_running_job(self, job: Job) -> JobStatus | None: ...
