"""Mock runner adapters — test doubles for the DRM executor.

Architecture::

    RunnerAdapter
    ├── LocalProcessAdapter   (adapters.py — real child processes)
    ├── UnavailableAdapter    (adapters.py — configuration error on submit)
    ├── ScriptedAdapter       scripted state progression per external id
    └── EmptyIdAdapter        accepts the submission but returns no id

Example::

    from gpexec.execution.drm.mock_adapters import ScriptedAdapter

    # queued → running → done with exit code 0
    adapter = ScriptedAdapter(states=["QUEUED", "RUNNING", "DONE"])
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from gpexec.execution.drm._types import DrmJobState, DrmJobStatus, DrmJobSubmission

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ScriptedAdapter: scripted state progression
# ---------------------------------------------------------------------------


class ScriptedAdapter:
    """Walks every submitted job through a fixed list of states.

    Each ``poll_status`` call advances one step; the last state repeats.
    ``on_submit`` runs against the submission (e.g. to write output files
    into the working directory the way a real job would).

    Args:
        states: DrmJobState names, e.g. ``["QUEUED", "RUNNING", "DONE"]``.
        exit_code: Reported with the final TERMINATED-family state.
        status_message: Reported with the final state.
        start_time: Reported while RUNNING or later; drives re-queue delays.
    """

    def __init__(
        self,
        *,
        states: Sequence[str | DrmJobState] = ("QUEUED", "RUNNING", "DONE"),
        exit_code: int | None = 0,
        status_message: str = "",
        start_time: datetime | None = None,
        on_submit: Callable[[DrmJobSubmission], None] | None = None,
    ) -> None:
        self.states = [DrmJobState(s) for s in states]
        self.exit_code = exit_code
        self.status_message = status_message
        self.start_time = start_time
        self.on_submit = on_submit
        self.submissions: dict[str, DrmJobSubmission] = {}
        self.cancelled: list[str] = []
        self.poll_count: dict[str, int] = {}
        self.stopped = False
        self._counter = 0
        self._lock = threading.Lock()

    def submit(self, submission: DrmJobSubmission) -> str | None:
        with self._lock:
            self._counter += 1
            drm_job_id = f"scripted-{self._counter}"
            self.submissions[drm_job_id] = submission
            self.poll_count[drm_job_id] = 0
        if self.on_submit is not None:
            self.on_submit(submission)
        return drm_job_id

    def poll_status(self, drm_job_id: str) -> DrmJobStatus | None:
        with self._lock:
            step = self.poll_count.get(drm_job_id, 0)
            self.poll_count[drm_job_id] = step + 1
            cancelled = drm_job_id in self.cancelled
        if cancelled:
            return DrmJobStatus(drm_job_id, DrmJobState.CANCELLED, exit_code=-1, status_message="cancelled")
        state = self.states[min(step, len(self.states) - 1)]
        final = state.is_terminated
        return DrmJobStatus(
            drm_job_id,
            state,
            exit_code=self.exit_code if final else None,
            status_message=self.status_message if final else "",
            start_time=self.start_time if state.is_(DrmJobState.RUNNING) or final else None,
            end_time=datetime.now(UTC) if final else None,
        )

    def cancel(self, drm_job_id: str) -> bool:
        with self._lock:
            self.cancelled.append(drm_job_id)
        return True

    def stop(self) -> None:
        self.stopped = True


# ---------------------------------------------------------------------------
# EmptyIdAdapter: submission "succeeds" without an id
# ---------------------------------------------------------------------------


class EmptyIdAdapter:
    """Returns ``""`` from every submit; models a runner that lost the job."""

    def __init__(self) -> None:
        self.submissions: list[DrmJobSubmission] = []

    def submit(self, submission: DrmJobSubmission) -> str | None:
        self.submissions.append(submission)
        logger.debug("empty-id adapter swallowed job %s", submission.gp_job_id)
        return ""

    def poll_status(self, drm_job_id: str) -> DrmJobStatus | None:
        return None

    def cancel(self, drm_job_id: str) -> bool:
        return False

    def stop(self) -> None:
        pass


__all__ = ["ScriptedAdapter", "EmptyIdAdapter"]
