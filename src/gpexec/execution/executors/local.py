"""Local Executor — one child process per job on a thread pool.

ARCHITECTURE
────────────
::

    LocalCommandExecutor(max_workers=4)
      ├── .run_job(job)        ─ submit execute(job) to the pool
      ├── .execute(job)        ─ STAGING → RUNNING → FINISHED | ERROR (blocking)
      ├── .terminate_job(job)  ─ kill the process / cancel the pending future
      └── .stop()              ─ kill everything still running, drop the pool

The running-process map is owned by the executor instance; two executors
never share processes.

Tags:
    gpexec, execution, executor, local, subprocess, thread-pool
"""

from __future__ import annotations

import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from gpexec.core.errors import DispatchError, ExecutionError, GpExecError, JobNotFoundError, StoreError
from gpexec.core.logging import LogContext, get_logger
from gpexec.core.models import Job, JobStatus
from gpexec.core.stores import JobStore, TaskCatalog
from gpexec.execution.command import CommandPreparer
from gpexec.execution.completion import JobCompletionHandler
from gpexec.execution.process import run_command

logger = get_logger(__name__)

TERMINATED_MESSAGE = "Job was terminated"
RESTART_MESSAGE = "Job was running when the server stopped; its process is gone"


class LocalCommandExecutor:
    """Runs jobs as local child processes."""

    kind = "local"

    def __init__(
        self,
        executor_id: str,
        *,
        job_store: JobStore,
        catalog: TaskCatalog,
        preparer: CommandPreparer,
        completion: JobCompletionHandler,
        max_workers: int = 4,
    ) -> None:
        self.executor_id = executor_id
        self._job_store = job_store
        self._catalog = catalog
        self._preparer = preparer
        self._completion = completion
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None
        self._futures: dict[int, Future] = {}
        self._processes: dict[int, subprocess.Popen] = {}
        self._terminated: set[int] = set()
        self._halted: StoreError | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        self._halted = None
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix=f"gpexec-{self.executor_id}",
            )
        logger.info("executor_started", executor_id=self.executor_id, max_workers=self._max_workers)

    def stop(self) -> None:
        with self._lock:
            running = list(self._processes.items())
            pool, self._pool = self._pool, None
        for job_id, process in running:
            logger.info("terminating_on_stop", executor_id=self.executor_id, job_id=job_id)
            self._kill(job_id, process)
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)
        logger.info("executor_stopped", executor_id=self.executor_id)

    # ------------------------------------------------------------------ #
    # Jobs
    # ------------------------------------------------------------------ #

    def run_job(self, job: Job) -> None:
        with self._lock:
            if self._halted is not None:
                raise DispatchError(
                    f"executor {self.executor_id} halted: {self._halted.message}", cause=self._halted
                ).with_context(job_id=job.job_id, executor_id=self.executor_id)
            if self._pool is None:
                raise DispatchError(f"executor {self.executor_id} is not running").with_context(
                    job_id=job.job_id, executor_id=self.executor_id
                )
            future = self._pool.submit(self.execute, job)
            self._futures[job.job_id] = future
        future.add_done_callback(lambda f, job_id=job.job_id: self._on_done(job_id, f))

    def _on_done(self, job_id: int, future: Future) -> None:
        with self._lock:
            self._futures.pop(job_id, None)
        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            return
        details = error.to_dict() if isinstance(error, GpExecError) else {"message": str(error)}
        logger.error(
            "job_execution_failed",
            job_id=job_id,
            executor_id=self.executor_id,
            error_type=type(error).__name__,
            error=details,
        )
        if isinstance(error, StoreError) and not isinstance(error, JobNotFoundError):
            # job status can no longer be persisted: refuse further work
            with self._lock:
                self._halted = error
            logger.critical("executor_halted", executor_id=self.executor_id, error=error.message)

    @property
    def halted_error(self) -> StoreError | None:
        """The store failure that stopped this executor accepting jobs, if any."""
        return self._halted

    def execute(self, job: Job) -> Job:
        """Run ``job`` to completion on the calling thread and return the final record."""
        with LogContext(job_id=job.job_id, executor_id=self.executor_id):
            try:
                return self._execute(job)
            except GpExecError:
                raise
            except Exception as e:
                logger.exception("job_execution_crashed")
                return self._completion.fail(job.job_id, f"{type(e).__name__}: {e}")

    def _execute(self, job: Job) -> Job:
        try:
            template = self._catalog.for_job(job)
            prepared = self._preparer.prepare(job, template)
        except GpExecError as e:
            return self._completion.fail(job.job_id, e.message)

        self._job_store.update(job.job_id, prepared.job.parameters, JobStatus.PROCESSING)
        logger.info("job_running", command_line=prepared.command_line)

        try:
            result = run_command(
                prepared.argv,
                cwd=prepared.work_dir,
                env=prepared.environment,
                stdin_file=prepared.stdin_file,
                on_start=lambda process: self._register(job.job_id, process),
            )
        except ExecutionError as e:
            return self._completion.complete(job.job_id, exit_code=None, error_message=e.message)
        finally:
            with self._lock:
                self._processes.pop(job.job_id, None)

        with self._lock:
            terminated = job.job_id in self._terminated
            self._terminated.discard(job.job_id)
        return self._completion.complete(
            job.job_id,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            error_message=TERMINATED_MESSAGE if terminated else None,
        )

    def _register(self, job_id: int, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes[job_id] = process
            terminate_now = job_id in self._terminated
        if terminate_now:
            self._kill(job_id, process)

    def _kill(self, job_id: int, process: subprocess.Popen) -> None:
        with self._lock:
            self._terminated.add(job_id)
        try:
            process.terminate()
        except OSError as e:
            logger.warning("terminate_failed", job_id=job_id, error=str(e))

    def terminate_job(self, job: Job) -> None:
        with self._lock:
            process = self._processes.get(job.job_id)
            future = self._futures.get(job.job_id)
        if process is not None:
            self._kill(job.job_id, process)
            return
        if future is not None and future.cancel():
            self._completion.fail(job.job_id, TERMINATED_MESSAGE)
            return
        if future is not None:
            # Still staging; kill the process as soon as it is registered.
            with self._lock:
                self._terminated.add(job.job_id)
            return
        logger.warning("terminate_unknown_job", job_id=job.job_id, executor_id=self.executor_id)

    def handle_running_job(self, job: Job) -> JobStatus | None:
        """A local process cannot survive a restart: restore inputs and fail the job."""
        self._completion.fail(job.job_id, RESTART_MESSAGE)
        return JobStatus.ERROR

    def running_job_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._processes)


__all__ = ["LocalCommandExecutor"]
