"""SQLAlchemy persistence for job records and DRM lookup rows."""

from gpexec.core.orm.base import GpExecBase
from gpexec.core.orm.session import (
    GpExecSession,
    create_gpexec_engine,
    gpexec_session_factory,
)
from gpexec.core.orm.tables import DrmJobRecordTable, JobTable

__all__ = [
    "GpExecBase",
    "GpExecSession",
    "create_gpexec_engine",
    "gpexec_session_factory",
    "JobTable",
    "DrmJobRecordTable",
]
