"""External-queue (DRM) execution: runner adapters, lookup table, poll loop."""

from gpexec.execution.drm._types import (
    DrmJobRecord,
    DrmJobState,
    DrmJobStatus,
    DrmJobSubmission,
    RunnerAdapter,
)
from gpexec.execution.drm.adapters import (
    LocalProcessAdapter,
    UnavailableAdapter,
    create_adapter,
    register_adapter,
)
from gpexec.execution.drm.executor import DrmJobExecutor, compute_requeue_delay
from gpexec.execution.drm.lookup import DrmLookup, InMemoryDrmLookup, SqlDrmLookup

__all__ = [
    "DrmJobExecutor",
    "DrmJobRecord",
    "DrmJobState",
    "DrmJobStatus",
    "DrmJobSubmission",
    "DrmLookup",
    "InMemoryDrmLookup",
    "LocalProcessAdapter",
    "RunnerAdapter",
    "SqlDrmLookup",
    "UnavailableAdapter",
    "compute_requeue_delay",
    "create_adapter",
    "register_adapter",
]
