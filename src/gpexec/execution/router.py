"""Command router — the executor registry that decides who runs each job.

ARCHITECTURE
────────────
::

    CommandRouter — Executor Registry + Router
    ┌──────────────────────────────────────────────────────────────┐
    │  Registry (insertion ordered)                                │
    │  register(id, executor)   → DuplicateExecutorError on reuse  │
    │  set_pipeline_executor(id)                                   │
    │                                                              │
    │  Routing                                                     │
    │  resolve(job)                                                │
    │    ├── composite job     → pipeline executor                 │
    │    ├── configured id     → that executor                     │
    │    └── nothing configured→ first registered executor         │
    │  unknown id → ExecutorNotFoundError                          │
    │                                                              │
    │  Lifecycle                                                   │
    │  start_all()  → others first, pipeline executor last         │
    │  stop_all()   → pipeline executor first, then others         │
    │  recover_running_jobs() → handle_running_job per job         │
    └──────────────────────────────────────────────────────────────┘

Example:
    >>> router = CommandRouter(job_store=store, completion=completion, config=config)
    >>> router.register("RuntimeExec", local_executor)
    >>> router.start_all()
    >>> router.dispatch(job)
"""

from __future__ import annotations

from collections.abc import Callable

from gpexec.core.errors import (
    DuplicateExecutorError,
    ExecutorNotFoundError,
    GpExecError,
    StoreError,
    TaskNotFoundError,
)
from gpexec.core.job_config import JobConfiguration
from gpexec.core.logging import LogContext, get_logger
from gpexec.core.models import Job, JobStatus
from gpexec.core.stores import JobStore
from gpexec.execution.completion import JobCompletionHandler
from gpexec.execution.executors.pipeline import DEFAULT_PIPELINE_EXECUTOR_ID, PipelineExecutor
from gpexec.execution.executors.protocol import CommandExecutor

logger = get_logger(__name__)


class CommandRouter:
    """Registry and router for command executors.

    Registration happens at startup; lookups afterwards are read-only.
    """

    def __init__(
        self,
        *,
        job_store: JobStore,
        completion: JobCompletionHandler,
        config: JobConfiguration | None = None,
        pipeline_factory: Callable[[str], PipelineExecutor] | None = None,
    ) -> None:
        self._job_store = job_store
        self._completion = completion
        self._config = config or JobConfiguration()
        self._executors: dict[str, CommandExecutor] = {}
        self._pipeline_id = self._config.pipeline_executor_id or DEFAULT_PIPELINE_EXECUTOR_ID
        self._pipeline_factory = pipeline_factory or (
            lambda executor_id: PipelineExecutor(executor_id, job_store=job_store)
        )
        self._started = False

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, executor_id: str, executor: CommandExecutor) -> None:
        if executor_id in self._executors:
            raise DuplicateExecutorError(
                f"duplicate executor id: {executor_id}"
            ).with_context(executor_id=executor_id)
        self._executors[executor_id] = executor
        if isinstance(executor, PipelineExecutor):
            executor.bind(self.dispatch, self.terminate)
        logger.info("executor_registered", executor_id=executor_id)

    def set_pipeline_executor(self, executor_id: str) -> None:
        self._pipeline_id = executor_id

    def get(self, executor_id: str) -> CommandExecutor | None:
        return self._executors.get(executor_id)

    def list_executors(self) -> list[str]:
        return list(self._executors)

    def __contains__(self, executor_id: str) -> bool:
        return executor_id in self._executors

    @property
    def pipeline_executor_id(self) -> str:
        return self._pipeline_id

    @property
    def pipeline_executor(self) -> CommandExecutor:
        """The pipeline executor, created on first use when none was registered."""
        executor = self._executors.get(self._pipeline_id)
        if executor is None:
            executor = self._pipeline_factory(self._pipeline_id)
            self.register(self._pipeline_id, executor)
            logger.info("default_pipeline_executor_created", executor_id=self._pipeline_id)
        return executor

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def resolve_id(self, job: Job) -> str:
        if job.is_pipeline:
            return self._pipeline_id
        executor_id = self._config.executor_id_for(job)
        if executor_id:
            return executor_id
        for candidate in self._executors:
            if candidate != self._pipeline_id:
                return candidate
        raise ExecutorNotFoundError("no command executors are registered").with_context(
            job_id=job.job_id
        )

    def resolve(self, job: Job) -> CommandExecutor:
        if job.is_pipeline:
            return self.pipeline_executor
        executor_id = self.resolve_id(job)
        executor = self._executors.get(executor_id)
        if executor is None:
            available = ", ".join(self._executors) or "(none)"
            raise ExecutorNotFoundError(
                f"no command executor registered as '{executor_id}'. Available: {available}"
            ).with_context(job_id=job.job_id, executor_id=executor_id)
        return executor

    def dispatch(self, job: Job) -> None:
        """Hand ``job`` to its executor; per-job failures end the job in ERROR."""
        with LogContext(job_id=job.job_id):
            try:
                executor = self.resolve(job)
                logger.info("job_dispatched", executor_id=executor.executor_id)
                executor.run_job(job)
            except StoreError as e:
                # An unknown task is a per-job problem; anything else is systemic.
                if not isinstance(e, TaskNotFoundError):
                    raise
                self._dispatch_failed(job, e)
            except GpExecError as e:
                self._dispatch_failed(job, e)

    def _dispatch_failed(self, job: Job, error: GpExecError) -> None:
        logger.error("job_dispatch_failed", error=error.to_dict())
        current = self._job_store.get(job.job_id)
        if not current.status.is_terminal:
            self._completion.fail(job.job_id, error.message)

    def terminate(self, job: Job) -> None:
        try:
            self.resolve(job).terminate_job(job)
        except ExecutorNotFoundError as e:
            logger.error("job_terminate_failed", job_id=job.job_id, error=e.message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_all(self) -> None:
        """Start every executor; the pipeline executor starts last."""
        pipeline = self.pipeline_executor
        for executor_id, executor in list(self._executors.items()):
            if executor is pipeline:
                continue
            try:
                executor.start()
            except Exception:
                logger.exception("executor_start_failed", executor_id=executor_id)
        try:
            pipeline.start()
        except Exception:
            logger.exception("executor_start_failed", executor_id=self._pipeline_id)
        self._started = True

    def stop_all(self) -> None:
        """Stop every executor; the pipeline executor stops first."""
        pipeline = self._executors.get(self._pipeline_id)
        if pipeline is not None:
            try:
                pipeline.stop()
            except Exception:
                logger.exception("executor_stop_failed", executor_id=self._pipeline_id)
        for executor_id, executor in list(self._executors.items()):
            if executor is pipeline:
                continue
            try:
                executor.stop()
            except Exception:
                logger.exception("executor_stop_failed", executor_id=executor_id)
        self._started = False

    def recover_running_jobs(self) -> int:
        """Reconcile jobs left Dispatching/Processing by a previous process.

        Returns the number of jobs whose status changed.
        """
        changed = 0
        for job in self._job_store.list_non_terminal_jobs():
            with LogContext(job_id=job.job_id):
                try:
                    executor = self.resolve(job)
                    new_status = executor.handle_running_job(job)
                except Exception as e:
                    logger.error("job_recovery_failed", error=str(e))
                    new_status = JobStatus.ERROR
                if new_status is None or new_status == job.status:
                    continue
                # The hook may already have persisted the new status.
                if self._job_store.get(job.job_id).status != new_status:
                    self._job_store.update(job.job_id, status=new_status)
                changed += 1
                logger.info("job_recovered", status=new_status.value)
        return changed


__all__ = ["CommandRouter"]
