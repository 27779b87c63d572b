"""Table definitions: job records and the DRM job lookup table.

Tags:
    gpexec, orm, sqlalchemy, tables

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from gpexec.core.orm.base import GpExecBase


class JobTable(GpExecBase):
    __tablename__ = "jobs"

    job_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    parent_id: Mapped[int | None] = mapped_column(Integer, default=None, index=True)
    task_name: Mapped[str] = mapped_column(Text, nullable=False)
    lsid: Mapped[str] = mapped_column(Text, default="", nullable=False)
    task_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    user_id: Mapped[str] = mapped_column(Text, default="", nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    is_pipeline: Mapped[bool] = mapped_column(Integer, default=0, nullable=False)
    working_dir: Mapped[str | None] = mapped_column(Text)
    parameters: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    submitted_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)


class DrmJobRecordTable(GpExecBase):
    """One row per job dispatched to an external queue; never deleted."""

    __tablename__ = "drm_job_records"
    __table_args__ = (
        UniqueConstraint("gp_job_id", "runner_name", name="uq_drm_job_runner"),
        Index("ix_drm_job_records_drm_job_id", "drm_job_id", "runner_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    gp_job_id: Mapped[int] = mapped_column(Integer, nullable=False)
    runner_name: Mapped[str] = mapped_column(Text, nullable=False)
    drm_job_id: Mapped[str | None] = mapped_column(Text)
    job_state: Mapped[str] = mapped_column(Text, nullable=False)
    status_message: Mapped[str | None] = mapped_column(Text)
    exit_code: Mapped[int | None] = mapped_column(Integer)
    queue_id: Mapped[str | None] = mapped_column(Text)
    worker_name: Mapped[str | None] = mapped_column(Text)
    working_dir: Mapped[str | None] = mapped_column(Text)
    submit_time: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    start_time: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    end_time: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    cpu_time_seconds: Mapped[int | None] = mapped_column(Integer)
    max_memory_bytes: Mapped[int | None] = mapped_column(Integer)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
