"""Job store and task catalog: the engine's view of persistent state.

The engine never deletes jobs and writes status only through
``JobStore.update``. Two implementations are provided for each interface:
an in-memory one (tests, the CLI's one-shot ``run``) and a SQLAlchemy one.

Architecture:

    .. code-block:: text

        JobStore (Protocol)
        ├── InMemoryJobStore   dict + lock, returns copies
        └── SqlJobStore        ``jobs`` table, parameters as JSON

        TaskCatalog (Protocol)
        └── InMemoryTaskCatalog   keyed by task id, LSID and name
              ▲
              └── load_task_template(path)  YAML task file

Tags:
    gpexec, store, catalog, persistence

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.engine import Engine

from gpexec.core.errors import JobNotFoundError, StoreError, TaskNotFoundError
from gpexec.core.models import (
    RUNNING_STATUSES,
    Job,
    JobStatus,
    Parameter,
    TaskTemplate,
)
from gpexec.core.orm.session import gpexec_session_factory
from gpexec.core.orm.tables import JobTable


@runtime_checkable
class JobStore(Protocol):
    def get(self, job_id: int) -> Job: ...

    def update(
        self,
        job_id: int,
        parameters: Sequence[Parameter] | None = None,
        status: JobStatus | None = None,
    ) -> Job: ...

    def get_parent(self, job_id: int) -> Job | None: ...

    def list_non_terminal_jobs(self) -> list[Job]: ...

    def list_children(self, parent_id: int) -> list[Job]: ...

    def add(self, job: Job) -> Job: ...


@runtime_checkable
class TaskCatalog(Protocol):
    def get(self, key: int | str) -> TaskTemplate: ...

    def for_job(self, job: Job) -> TaskTemplate: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryJobStore:
    """Thread-safe dict-backed store. Readers always get copies."""

    def __init__(self, jobs: Iterable[Job] = ()) -> None:
        self._jobs: dict[int, Job] = {}
        self._lock = threading.Lock()
        for job in jobs:
            self.add(job)

    def add(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.job_id] = job.copy()
        return job

    def get(self, job_id: int) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"no job with id {job_id}").with_context(job_id=job_id)
            return job.copy()

    def update(
        self,
        job_id: int,
        parameters: Sequence[Parameter] | None = None,
        status: JobStatus | None = None,
    ) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"no job with id {job_id}").with_context(job_id=job_id)
            if parameters is not None:
                job.parameters = [Parameter.from_dict(p.to_dict()) for p in parameters]
            if status is not None:
                job.status = status
            return job.copy()

    def get_parent(self, job_id: int) -> Job | None:
        job = self.get(job_id)
        if job.parent_id is None:
            return None
        return self.get(job.parent_id)

    def list_non_terminal_jobs(self) -> list[Job]:
        with self._lock:
            return [
                j.copy() for j in sorted(self._jobs.values(), key=lambda j: j.job_id)
                if j.status in RUNNING_STATUSES
            ]

    def list_children(self, parent_id: int) -> list[Job]:
        with self._lock:
            return [
                j.copy() for j in sorted(self._jobs.values(), key=lambda j: j.job_id)
                if j.parent_id == parent_id
            ]


class InMemoryTaskCatalog:
    """Catalog answering lookups by task id, LSID or task name."""

    def __init__(self, templates: Iterable[TaskTemplate] = ()) -> None:
        self._templates: dict[int | str, TaskTemplate] = {}
        for template in templates:
            self.add(template)

    def add(self, template: TaskTemplate) -> None:
        self._templates[template.name] = template
        if template.lsid:
            self._templates[template.lsid] = template
        if template.task_id:
            self._templates[template.task_id] = template

    def get(self, key: int | str) -> TaskTemplate:
        template = self._templates.get(key)
        if template is None:
            raise TaskNotFoundError(f"no task registered as {key!r}")
        return template

    def for_job(self, job: Job) -> TaskTemplate:
        """Resolve the template of a job by task id, then LSID, then name."""
        for key in (job.task_id, job.lsid, job.task_name):
            if key and key in self._templates:
                return self._templates[key]
        raise TaskNotFoundError(f"no task registered for job {job.job_id}").with_context(
            job_id=job.job_id, task_name=job.task_name
        )


def load_task_template(path: str | Path) -> TaskTemplate:
    """Read a task template from a YAML file.

    Expected shape::

        name: ConvertLineEndings
        lsid: urn:lsid:example.org:module:00002:1
        command_line: <python> <libdir>convert.py <input.file> <output.prefix>.txt
        parameters:
          - {name: input.file, type: file}
          - {name: output.prefix, optional: true, default_value: out}
    """
    import yaml

    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise TaskNotFoundError(f"cannot read task file {path}: {e}", cause=e) from e
    if not isinstance(data, dict) or "name" not in data:
        raise TaskNotFoundError(f"task file {path} has no 'name'")
    return TaskTemplate.from_dict(data)


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------


class SqlJobStore:
    """Job store backed by the ``jobs`` table."""

    def __init__(self, engine: Engine) -> None:
        self._session_factory = gpexec_session_factory(engine)

    @staticmethod
    def _to_job(row: JobTable) -> Job:
        return Job(
            job_id=row.job_id,
            parent_id=row.parent_id,
            task_name=row.task_name,
            lsid=row.lsid,
            task_id=row.task_id,
            user_id=row.user_id,
            status=JobStatus(row.status),
            is_pipeline=bool(row.is_pipeline),
            working_dir=Path(row.working_dir) if row.working_dir else None,
            parameters=[Parameter.from_dict(p) for p in row.parameters or []],
            submitted_at=row.submitted_at,
        )

    def add(self, job: Job) -> Job:
        with self._session_factory() as session:
            session.add(JobTable(
                job_id=job.job_id,
                parent_id=job.parent_id,
                task_name=job.task_name,
                lsid=job.lsid,
                task_id=job.task_id,
                user_id=job.user_id,
                status=job.status.value,
                is_pipeline=int(job.is_pipeline),
                working_dir=str(job.working_dir) if job.working_dir else None,
                parameters=[p.to_dict() for p in job.parameters],
                submitted_at=job.submitted_at,
            ))
            session.commit()
        return job

    def get(self, job_id: int) -> Job:
        with self._session_factory() as session:
            row = session.get(JobTable, job_id)
            if row is None:
                raise JobNotFoundError(f"no job with id {job_id}").with_context(job_id=job_id)
            return self._to_job(row)

    def update(
        self,
        job_id: int,
        parameters: Sequence[Parameter] | None = None,
        status: JobStatus | None = None,
    ) -> Job:
        try:
            with self._session_factory() as session:
                row = session.get(JobTable, job_id)
                if row is None:
                    raise JobNotFoundError(f"no job with id {job_id}").with_context(job_id=job_id)
                if parameters is not None:
                    row.parameters = [p.to_dict() for p in parameters]
                if status is not None:
                    row.status = status.value
                    if status.is_terminal:
                        row.completed_at = datetime.now(UTC)
                session.commit()
                return self._to_job(row)
        except JobNotFoundError:
            raise
        except Exception as e:
            raise StoreError(f"cannot update job {job_id}: {e}", cause=e).with_context(
                job_id=job_id
            ) from e

    def get_parent(self, job_id: int) -> Job | None:
        job = self.get(job_id)
        if job.parent_id is None:
            return None
        return self.get(job.parent_id)

    def list_non_terminal_jobs(self) -> list[Job]:
        statuses = [s.value for s in RUNNING_STATUSES]
        with self._session_factory() as session:
            rows = session.scalars(
                select(JobTable).where(JobTable.status.in_(statuses)).order_by(JobTable.job_id)
            ).all()
            return [self._to_job(r) for r in rows]

    def list_children(self, parent_id: int) -> list[Job]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(JobTable).where(JobTable.parent_id == parent_id).order_by(JobTable.job_id)
            ).all()
            return [self._to_job(r) for r in rows]


__all__ = [
    "JobStore",
    "TaskCatalog",
    "InMemoryJobStore",
    "InMemoryTaskCatalog",
    "SqlJobStore",
    "load_task_template",
]
