"""Pipeline Executor — coordinates composite jobs; never runs a process.

A pipeline job's children are ordinary jobs whose ``parent_id`` points at
it. The executor dispatches them one at a time, oldest first, through the
router, and folds each child's outputs into the parent when it completes.

ARCHITECTURE
────────────
::

    run_job(pipeline) ─► Processing ─► dispatch child #1
                                            │
          on_child_complete(child) ◄────────┘  (from JobCompletionHandler)
            ├── parent.parameters += child outputs
            ├── persist parent with its own status
            └── sequencing:
                  child ERROR      → pipeline ERROR
                  pending children → dispatch next
                  none left        → pipeline FINISHED

Nested pipelines work the same way: a finished pipeline that has a parent
is itself reported through ``on_child_complete``.

Tags:
    gpexec, execution, executor, pipeline, composite
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import replace

from gpexec.core.logging import get_logger
from gpexec.core.models import RUNNING_STATUSES, Job, JobStatus, Parameter
from gpexec.core.stores import JobStore

logger = get_logger(__name__)

DEFAULT_PIPELINE_EXECUTOR_ID = "pipeline"


class PipelineExecutor:
    """Composite-job executor."""

    kind = "pipeline"

    def __init__(
        self,
        executor_id: str = DEFAULT_PIPELINE_EXECUTOR_ID,
        *,
        job_store: JobStore,
        dispatch: Callable[[Job], None] | None = None,
        terminate: Callable[[Job], None] | None = None,
    ) -> None:
        self.executor_id = executor_id
        self._job_store = job_store
        self._dispatch = dispatch
        self._terminate = terminate
        self._active: set[int] = set()
        self._lock = threading.RLock()

    def bind(self, dispatch: Callable[[Job], None], terminate: Callable[[Job], None]) -> None:
        """Attach the router callbacks children are dispatched through."""
        self._dispatch = dispatch
        self._terminate = terminate

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        logger.info("executor_started", executor_id=self.executor_id)

    def stop(self) -> None:
        with self._lock:
            self._active.clear()
        logger.info("executor_stopped", executor_id=self.executor_id)

    # ------------------------------------------------------------------ #
    # Child bookkeeping
    # ------------------------------------------------------------------ #

    def on_child_complete(self, child: Job) -> None:
        """Append the child's outputs to its parent and re-persist the parent."""
        if child.parent_id is None:
            return
        self.update_pipeline_status(
            child.parent_id,
            extra_parameters=[replace(p, attributes=dict(p.attributes)) for p in child.output_parameters],
        )
        with self._lock:
            sequencing = child.parent_id in self._active
        if sequencing:
            self._advance(child.parent_id)

    def update_pipeline_status(
        self,
        job_id: int,
        status: JobStatus | None = None,
        extra_parameters: Iterable[Parameter] = (),
    ) -> Job:
        """Append parameters and set ``status``; ``None`` keeps the persisted status."""
        with self._lock:
            parent = self._job_store.get(job_id)
            parameters = parent.parameters + list(extra_parameters)
            return self._job_store.update(job_id, parameters, status or parent.status)

    # ------------------------------------------------------------------ #
    # Sequencing
    # ------------------------------------------------------------------ #

    def run_job(self, job: Job) -> None:
        self._job_store.update(job.job_id, status=JobStatus.PROCESSING)
        with self._lock:
            self._active.add(job.job_id)
        logger.info("pipeline_started", job_id=job.job_id)
        self._advance(job.job_id)

    def _advance(self, pipeline_id: int) -> None:
        outcome: JobStatus | None = None
        with self._lock:
            if pipeline_id not in self._active:
                return
            children = self._job_store.list_children(pipeline_id)
            if any(c.status == JobStatus.ERROR for c in children):
                outcome = JobStatus.ERROR
            elif any(c.status in RUNNING_STATUSES for c in children):
                return
            else:
                pending = [c for c in children if c.status == JobStatus.PENDING]
                if pending:
                    # marked under the lock so a concurrent advance sees it running
                    child = self._job_store.update(pending[0].job_id, status=JobStatus.DISPATCHING)
                else:
                    outcome = JobStatus.FINISHED
            if outcome is not None:
                self._active.discard(pipeline_id)
        if outcome is not None:
            self._finish(pipeline_id, outcome)
            return
        logger.info("pipeline_dispatching_child", job_id=pipeline_id, child_job_id=child.job_id)
        if self._dispatch is None:
            raise RuntimeError(f"pipeline executor {self.executor_id} is not bound to a router")
        self._dispatch(child)

    def _finish(self, pipeline_id: int, status: JobStatus) -> None:
        finished = self.update_pipeline_status(pipeline_id, status)
        logger.info("pipeline_completed", job_id=pipeline_id, status=status.value)
        if finished.parent_id is not None:
            self.on_child_complete(finished)

    def terminate_job(self, job: Job) -> None:
        with self._lock:
            self._active.discard(job.job_id)
            children = self._job_store.list_children(job.job_id)
        for child in children:
            if child.status in RUNNING_STATUSES and self._terminate is not None:
                self._terminate(child)
        self.update_pipeline_status(job.job_id, JobStatus.ERROR)

    def handle_running_job(self, job: Job) -> JobStatus | None:
        """Resume sequencing after a restart; children recover through their own executors."""
        with self._lock:
            self._active.add(job.job_id)
        self._advance(job.job_id)
        return None

    def is_sequencing(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._active


__all__ = ["PipelineExecutor", "DEFAULT_PIPELINE_EXECUTOR_ID"]
