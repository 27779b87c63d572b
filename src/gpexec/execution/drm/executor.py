"""DRM Job Executor — off-loads jobs to an external queueing system.

ARCHITECTURE
────────────
::

    run_job(job)  (any caller thread)
      ├── prepare command (staging + templating)
      ├── persist parameters, job → Processing
      ├── lookup.insert_job_record(PENDING)       before the adapter sees it
      ├── adapter.submit(submission)
      │     ├── no id  → record FAILED, job ERROR, DispatchError
      │     └── id     → record QUEUED, enqueue id
      ▼
    bounded queue.Queue ──► poll worker (one daemon thread)
                              ├── adapter.poll_status(id)
                              ├── TERMINATED → completion.complete, then
                              │                lookup.update_job_status
                              └── otherwise  → lookup.update_job_status,
                                               threading.Timer(delay) → enqueue

The worker never sleeps out a delay; re-queues are timers, so many can be
pending while the worker keeps polling other ids. Each worker has its own
stop event, so a restart never leaves two workers draining the queue.

Tags:
    gpexec, execution, executor, drm, queue, polling, backoff
"""

from __future__ import annotations

import queue
import threading
from datetime import UTC, datetime

from gpexec.core.errors import DispatchError, GpExecError
from gpexec.core.job_config import JobConfiguration
from gpexec.core.logging import LogContext, get_logger
from gpexec.core.models import Job, JobStatus
from gpexec.core.settings import GpExecSettings
from gpexec.core.stores import JobStore, TaskCatalog
from gpexec.execution.command import CommandPreparer
from gpexec.execution.completion import JobCompletionHandler
from gpexec.execution.drm._types import (
    DrmJobRecord,
    DrmJobState,
    DrmJobStatus,
    DrmJobSubmission,
    RunnerAdapter,
)
from gpexec.execution.drm.lookup import DrmLookup

logger = get_logger(__name__)

_SENTINEL = object()

# (elapsed seconds upper bound, delay seconds)
REQUEUE_SCHEDULE = ((60, 1.0), (120, 2.0), (300, 10.0), (600, 30.0))
LONG_RUNNING_DELAY = 60.0

# seconds the worker waits on an empty queue before re-checking its stop event
QUEUE_WAIT = 0.5
WORKER_JOIN_TIMEOUT = 2.0

NO_ID_MESSAGE = "the job runner did not return a job id"
LOST_MESSAGE = "no status available from the job runner after restart"


def compute_requeue_delay(
    start_time: datetime | None,
    submit_time: datetime | None = None,
    *,
    now: datetime | None = None,
    max_delay: float = LONG_RUNNING_DELAY,
) -> float:
    """Seconds to wait before polling a job again.

    Measured from ``start_time`` (or ``submit_time`` while still queued);
    the longer a job has been around the less often it is polled. Unknown
    timing polls again after 1 s.
    """
    reference = start_time or submit_time
    if reference is None:
        return min(1.0, max_delay)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    elapsed = (now - reference).total_seconds()
    for bound, delay in REQUEUE_SCHEDULE:
        if elapsed < bound:
            return min(delay, max_delay)
    return min(LONG_RUNNING_DELAY, max_delay)


class DrmJobExecutor:
    """Command executor backed by a ``RunnerAdapter`` and a ``DrmLookup``."""

    kind = "drm"

    def __init__(
        self,
        executor_id: str,
        *,
        job_store: JobStore,
        catalog: TaskCatalog,
        preparer: CommandPreparer,
        completion: JobCompletionHandler,
        adapter: RunnerAdapter,
        lookup: DrmLookup,
        settings: GpExecSettings,
        config: JobConfiguration | None = None,
        log_filename: str | None = None,
    ) -> None:
        self.executor_id = executor_id
        self.adapter = adapter
        self.lookup = lookup
        self._job_store = job_store
        self._catalog = catalog
        self._preparer = preparer
        self._completion = completion
        self._config = config or JobConfiguration()
        self._log_filename = log_filename
        self._max_delay = settings.drm_max_poll_delay

        self._queue: queue.Queue = queue.Queue(maxsize=settings.drm_queue_capacity)
        self._timers: dict[str, threading.Timer] = {}
        self._log_files: dict[int, str] = {}
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._accepting = False
        self._worker: threading.Thread | None = None
        # stop event owned by the current worker; a replaced worker keeps its own
        self._worker_stop = threading.Event()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self, *, poll: bool = True) -> None:
        """Re-queue every job still tracked in the lookup table, then start polling.

        With ``poll=False`` no worker thread is started; the caller drives
        ``poll_once`` itself.
        """
        # at most one worker polls: a previous one, if any, retires after its current poll
        self._worker_stop.set()
        self._stopping.clear()
        self._drain_queue()
        recovered = self.recover()
        self._accepting = True
        if poll:
            self._worker_stop = threading.Event()
            self._worker = threading.Thread(
                target=self._poll_loop,
                args=(self._worker_stop,),
                name=f"gpexec-drm-{self.executor_id}",
                daemon=True,
            )
            self._worker.start()
        logger.info("executor_started", executor_id=self.executor_id, recovered=len(recovered))

    def recover(self) -> list[str]:
        """Enqueue the external ids of all non-terminal lookup rows."""
        drm_job_ids = self.lookup.get_running_drm_job_ids()
        for drm_job_id in drm_job_ids:
            self._enqueue(drm_job_id)
        return drm_job_ids

    def stop(self) -> None:
        """Stop accepting jobs, cancel pending re-queues and release the adapter.

        Jobs still running externally stay in the lookup table and are picked
        up again by the next ``start``.
        """
        self._accepting = False
        self._stopping.set()
        self._worker_stop.set()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        try:
            self._queue.put_nowait(_SENTINEL)
        except queue.Full:
            pass
        try:
            self.adapter.stop()
        except Exception:
            logger.exception("adapter_stop_failed", executor_id=self.executor_id)
        worker, self._worker = self._worker, None
        if worker is not None and worker is not threading.current_thread():
            # a worker blocked inside an adapter call exits after that call returns
            worker.join(timeout=WORKER_JOIN_TIMEOUT)
            if worker.is_alive():
                logger.warning("drm_poll_worker_still_busy", executor_id=self.executor_id)
        logger.info("executor_stopped", executor_id=self.executor_id)

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #

    def run_job(self, job: Job) -> None:
        if not self._accepting:
            raise DispatchError(f"executor {self.executor_id} is not accepting jobs").with_context(
                job_id=job.job_id, executor_id=self.executor_id
            )
        with LogContext(job_id=job.job_id, executor_id=self.executor_id):
            template = self._catalog.for_job(job)
            prepared = self._preparer.prepare(job, template)
            self._job_store.update(job.job_id, prepared.job.parameters, JobStatus.PROCESSING)

            submission = DrmJobSubmission.build(
                prepared,
                self._config.properties_for(job),
                self._config.worker_config_for(job),
                log_filename=self._log_filename,
            )
            record = DrmJobRecord(
                gp_job_id=job.job_id,
                runner_name=self.lookup.runner_name,
                job_state=DrmJobState.PENDING,
                working_dir=str(prepared.work_dir),
                queue_id=submission.queue,
                worker_name=submission.worker_name,
                submit_time=datetime.now(UTC),
            )
            self.lookup.insert_job_record(record)
            if submission.log_filename:
                with self._lock:
                    self._log_files[job.job_id] = submission.log_filename

            error: Exception | None = None
            drm_job_id: str | None = None
            try:
                drm_job_id = self.adapter.submit(submission)
            except Exception as e:
                error = e

            if not drm_job_id:
                self._submission_failed(job, record, error)

            self.lookup.update_job_status(
                job.job_id,
                DrmJobStatus(
                    drm_job_id,
                    DrmJobState.QUEUED,
                    submit_time=record.submit_time,
                    queue_id=submission.queue,
                    worker_name=submission.worker_name,
                ),
            )
            logger.info("drm_job_submitted", drm_job_id=drm_job_id, command_line=prepared.command_line)
            self._enqueue(drm_job_id)

    def _submission_failed(self, job: Job, record: DrmJobRecord, error: Exception | None) -> None:
        if isinstance(error, GpExecError):
            message = error.message
        elif error is not None:
            message = f"{NO_ID_MESSAGE}: {type(error).__name__}: {error}"
        else:
            message = NO_ID_MESSAGE
        record.job_state = DrmJobState.FAILED
        record.status_message = message
        self.lookup.insert_job_record(record)
        logger.error("drm_submit_failed", error=message)
        self._completion.fail(job.job_id, message)
        raise DispatchError(message, cause=error).with_context(
            job_id=job.job_id, executor_id=self.executor_id
        )

    # ------------------------------------------------------------------ #
    # Polling
    # ------------------------------------------------------------------ #

    def _enqueue(self, drm_job_id: str) -> None:
        try:
            self._queue.put_nowait(drm_job_id)
        except queue.Full:
            logger.error("drm_queue_full_dropped", drm_job_id=drm_job_id, executor_id=self.executor_id)

    def _requeue(self, drm_job_id: str, delay: float) -> None:
        if self._stopping.is_set():
            return
        timer = threading.Timer(delay, self._fire_requeue, args=(drm_job_id,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(drm_job_id, None)
            self._timers[drm_job_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _fire_requeue(self, drm_job_id: str) -> None:
        with self._lock:
            self._timers.pop(drm_job_id, None)
        if not self._stopping.is_set():
            self._enqueue(drm_job_id)

    def _poll_loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                item = self._queue.get(timeout=QUEUE_WAIT)
            except queue.Empty:
                continue
            if item is _SENTINEL:
                continue
            if stop.is_set():
                # hand the id to the replacement worker (or the next start's recovery)
                self._enqueue(item)
                break
            try:
                self.poll_once(item)
            except Exception:
                logger.exception("drm_poll_failed", drm_job_id=item, executor_id=self.executor_id)
                self._requeue(item, min(1.0, self._max_delay))
        logger.debug("drm_poll_worker_exited", executor_id=self.executor_id)

    def poll_once(self, drm_job_id: str) -> DrmJobStatus | None:
        """Poll one external job and act on the result.

        Returns the adapter status, or ``None`` when there was nothing to act on.
        """
        gp_job_id = self.lookup.lookup_gp_job_id(drm_job_id)
        if gp_job_id is None:
            logger.error("drm_unknown_job_dropped", drm_job_id=drm_job_id)
            return None
        record = self.lookup.get_record(gp_job_id)
        if record is not None and record.job_state.is_terminated:
            return None

        with LogContext(job_id=gp_job_id, drm_job_id=drm_job_id):
            status = self.adapter.poll_status(drm_job_id)
            if status is None:
                logger.warning("drm_poll_no_status")
                delay = compute_requeue_delay(
                    record.start_time if record else None,
                    record.submit_time if record else None,
                    max_delay=self._max_delay,
                )
                self._requeue(drm_job_id, delay)
                return None

            if status.job_state.is_terminated:
                # the lookup row stays watched until the job record is final
                self._complete(gp_job_id, status)
                self.lookup.update_job_status(gp_job_id, status)
                return status

            record = self.lookup.update_job_status(gp_job_id, status)

            if status.job_state is DrmJobState.UNDETERMINED:
                logger.warning("drm_state_undetermined", message=status.status_message)
            self._requeue(
                drm_job_id,
                compute_requeue_delay(record.start_time, record.submit_time, max_delay=self._max_delay),
            )
            return status

    def _complete(self, gp_job_id: int, status: DrmJobStatus) -> Job:
        current = self._job_store.get(gp_job_id)
        if current.status.is_terminal:
            return current
        exit_code = status.exit_code if status.exit_code is not None else -1
        message = None
        if exit_code != 0 or status.job_state in (DrmJobState.ABORTED, DrmJobState.CANCELLED):
            message = status.status_message or (
                f"job {status.job_state.value.lower()} with exit code {exit_code}"
            )
        with self._lock:
            log_file = self._log_files.pop(gp_job_id, None) or self._log_filename
        return self._completion.complete(
            gp_job_id,
            exit_code=exit_code,
            error_message=message,
            exclude_files=[log_file] if log_file else (),
        )

    # ------------------------------------------------------------------ #
    # Cancellation and recovery
    # ------------------------------------------------------------------ #

    def terminate_job(self, job: Job) -> None:
        drm_job_id = self.lookup.lookup_drm_job_id(job.job_id)
        if not drm_job_id:
            logger.warning("drm_terminate_unknown_job", job_id=job.job_id, executor_id=self.executor_id)
            return
        try:
            cancelled = self.adapter.cancel(drm_job_id)
        except GpExecError as e:
            logger.error("drm_cancel_failed", job_id=job.job_id, error=e.message)
            return
        logger.info("drm_job_cancel_requested", job_id=job.job_id, drm_job_id=drm_job_id, cancelled=cancelled)

    def handle_running_job(self, job: Job) -> JobStatus | None:
        """Reconcile a job that was Dispatching/Processing when the server stopped."""
        drm_job_id = self.lookup.lookup_drm_job_id(job.job_id)
        if not drm_job_id:
            self._completion.fail(job.job_id, f"{LOST_MESSAGE}: no external job id recorded")
            return JobStatus.ERROR
        status = self.adapter.poll_status(drm_job_id)
        if status is None:
            self._completion.fail(job.job_id, LOST_MESSAGE)
            return JobStatus.ERROR
        if status.job_state.is_terminated:
            finished = self._complete(job.job_id, status)
            self.lookup.update_job_status(job.job_id, status)
            return finished.status
        self.lookup.update_job_status(job.job_id, status)
        return None

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def queued_job_ids(self) -> list[str]:
        """Snapshot of the external ids waiting in the poll queue."""
        with self._queue.mutex:
            return [item for item in self._queue.queue if item is not _SENTINEL]

    def pending_requeues(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    @property
    def is_accepting(self) -> bool:
        return self._accepting


__all__ = ["DrmJobExecutor", "compute_requeue_delay", "REQUEUE_SCHEDULE"]
