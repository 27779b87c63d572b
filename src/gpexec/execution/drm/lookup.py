"""DRM lookup table: maps job ids to external ids and tracks their state.

Every DRM executor owns a lookup scoped by its runner name, so two
executors sharing one database never see each other's rows. The table is
what lets a restarted server find the jobs it still has to watch.

Tags:
    gpexec, drm, lookup, persistence, recovery
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Protocol, runtime_checkable

from sqlalchemy import Engine, select

from gpexec.core.errors import StoreError
from gpexec.core.orm import DrmJobRecordTable, gpexec_session_factory
from gpexec.execution.drm._types import DrmJobRecord, DrmJobState, DrmJobStatus

# States whose jobs are still being watched after a restart.
WATCHED_STATES = frozenset({
    DrmJobState.PENDING,
    DrmJobState.QUEUED,
    DrmJobState.QUEUED_HELD,
    DrmJobState.RUNNING,
    DrmJobState.SUSPENDED,
    DrmJobState.UNDETERMINED,
})


@runtime_checkable
class DrmLookup(Protocol):
    runner_name: str

    def insert_job_record(self, record: DrmJobRecord) -> None: ...

    def update_job_status(self, gp_job_id: int, status: DrmJobStatus) -> DrmJobRecord: ...

    def get_record(self, gp_job_id: int) -> DrmJobRecord | None: ...

    def lookup_drm_job_id(self, gp_job_id: int) -> str | None: ...

    def lookup_gp_job_id(self, drm_job_id: str) -> int | None: ...

    def get_running_drm_job_ids(self) -> list[str]: ...


class InMemoryDrmLookup:
    """Dict-backed lookup for tests and single-process deployments."""

    def __init__(self, runner_name: str) -> None:
        self.runner_name = runner_name
        self._records: dict[int, DrmJobRecord] = {}
        self._lock = threading.Lock()

    def insert_job_record(self, record: DrmJobRecord) -> None:
        with self._lock:
            self._records[record.gp_job_id] = replace(record, runner_name=self.runner_name)

    def update_job_status(self, gp_job_id: int, status: DrmJobStatus) -> DrmJobRecord:
        with self._lock:
            record = self._records.get(gp_job_id)
            if record is None:
                raise StoreError(f"no DRM record for job {gp_job_id}").with_context(job_id=gp_job_id)
            record.apply(status)
            return replace(record)

    def get_record(self, gp_job_id: int) -> DrmJobRecord | None:
        with self._lock:
            record = self._records.get(gp_job_id)
            return replace(record) if record else None

    def lookup_drm_job_id(self, gp_job_id: int) -> str | None:
        record = self.get_record(gp_job_id)
        return record.drm_job_id if record else None

    def lookup_gp_job_id(self, drm_job_id: str) -> int | None:
        with self._lock:
            for record in self._records.values():
                if record.drm_job_id == drm_job_id:
                    return record.gp_job_id
        return None

    def get_running_drm_job_ids(self) -> list[str]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.gp_job_id)
            return [
                r.drm_job_id for r in records
                if r.drm_job_id and r.job_state in WATCHED_STATES
            ]


class SqlDrmLookup:
    """Lookup backed by the ``drm_job_records`` table."""

    def __init__(self, engine: Engine, runner_name: str) -> None:
        self.runner_name = runner_name
        self._session_factory = gpexec_session_factory(engine)

    def _row(self, session, gp_job_id: int) -> DrmJobRecordTable | None:
        return session.scalars(
            select(DrmJobRecordTable).where(
                DrmJobRecordTable.gp_job_id == gp_job_id,
                DrmJobRecordTable.runner_name == self.runner_name,
            )
        ).first()

    def _to_record(self, row: DrmJobRecordTable) -> DrmJobRecord:
        return DrmJobRecord(
            gp_job_id=row.gp_job_id,
            runner_name=row.runner_name,
            job_state=DrmJobState(row.job_state),
            drm_job_id=row.drm_job_id,
            status_message=row.status_message,
            exit_code=row.exit_code,
            queue_id=row.queue_id,
            worker_name=row.worker_name,
            working_dir=row.working_dir,
            submit_time=row.submit_time,
            start_time=row.start_time,
            end_time=row.end_time,
            cpu_time_seconds=row.cpu_time_seconds,
            max_memory_bytes=row.max_memory_bytes,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _copy_into(row: DrmJobRecordTable, record: DrmJobRecord) -> None:
        row.drm_job_id = record.drm_job_id
        row.job_state = record.job_state.value
        row.status_message = record.status_message
        row.exit_code = record.exit_code
        row.queue_id = record.queue_id
        row.worker_name = record.worker_name
        row.working_dir = record.working_dir
        row.submit_time = record.submit_time
        row.start_time = record.start_time
        row.end_time = record.end_time
        row.cpu_time_seconds = record.cpu_time_seconds
        row.max_memory_bytes = record.max_memory_bytes
        row.updated_at = record.updated_at

    def insert_job_record(self, record: DrmJobRecord) -> None:
        """Insert, or overwrite the existing row for the same job and runner."""
        try:
            with self._session_factory() as session:
                row = self._row(session, record.gp_job_id)
                if row is None:
                    row = DrmJobRecordTable(gp_job_id=record.gp_job_id, runner_name=self.runner_name)
                    session.add(row)
                self._copy_into(row, record)
                session.commit()
        except Exception as e:
            raise StoreError(f"cannot record DRM job {record.gp_job_id}: {e}", cause=e).with_context(
                job_id=record.gp_job_id
            ) from e

    def update_job_status(self, gp_job_id: int, status: DrmJobStatus) -> DrmJobRecord:
        with self._session_factory() as session:
            row = self._row(session, gp_job_id)
            if row is None:
                raise StoreError(f"no DRM record for job {gp_job_id}").with_context(job_id=gp_job_id)
            record = self._to_record(row)
            record.apply(status)
            self._copy_into(row, record)
            session.commit()
            return record

    def get_record(self, gp_job_id: int) -> DrmJobRecord | None:
        with self._session_factory() as session:
            row = self._row(session, gp_job_id)
            return self._to_record(row) if row is not None else None

    def lookup_drm_job_id(self, gp_job_id: int) -> str | None:
        record = self.get_record(gp_job_id)
        return record.drm_job_id if record else None

    def lookup_gp_job_id(self, drm_job_id: str) -> int | None:
        with self._session_factory() as session:
            return session.scalars(
                select(DrmJobRecordTable.gp_job_id).where(
                    DrmJobRecordTable.drm_job_id == drm_job_id,
                    DrmJobRecordTable.runner_name == self.runner_name,
                )
            ).first()

    def get_running_drm_job_ids(self) -> list[str]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(DrmJobRecordTable.drm_job_id)
                .where(
                    DrmJobRecordTable.runner_name == self.runner_name,
                    DrmJobRecordTable.job_state.in_([s.value for s in WATCHED_STATES]),
                    DrmJobRecordTable.drm_job_id.is_not(None),
                )
                .order_by(DrmJobRecordTable.gp_job_id)
            ).all()
            return [r for r in rows if r]


__all__ = ["DrmLookup", "InMemoryDrmLookup", "SqlDrmLookup", "WATCHED_STATES"]
