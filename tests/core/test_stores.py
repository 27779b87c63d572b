"""Tests for job stores and the task catalog."""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import Engine

from gpexec.core.errors import JobNotFoundError, TaskNotFoundError
from gpexec.core.models import Job, JobStatus, Parameter, TaskTemplate
from gpexec.core.stores import InMemoryJobStore, InMemoryTaskCatalog, JobStore, SqlJobStore, load_task_template


@pytest.fixture(params=["memory", "sql"])
def store(request: pytest.FixtureRequest, engine: Engine) -> JobStore:
    if request.param == "memory":
        return InMemoryJobStore()
    return SqlJobStore(engine)


class TestJobStore:
    def test_add_get_update(self, store: JobStore, tmp_path: Path) -> None:
        store.add(Job(1, "Demo", parameters=[Parameter("a", "1")], working_dir=tmp_path, user_id="u"))

        updated = store.update(1, [Parameter("a", "2"), Parameter.output_file(1, "o.txt")], JobStatus.FINISHED)

        assert updated.status == JobStatus.FINISHED
        fetched = store.get(1)
        assert fetched.working_dir == tmp_path
        assert fetched.user_id == "u"
        assert [(p.name, p.value) for p in fetched.parameters] == [("a", "2"), ("o.txt", "1/o.txt")]
        assert fetched.output_parameters[0].is_output

    def test_update_status_only_keeps_parameters(self, store: JobStore) -> None:
        store.add(Job(2, "Demo", parameters=[Parameter("a", "1")]))
        store.update(2, status=JobStatus.PROCESSING)
        assert store.get(2).parameters[0].value == "1"

    def test_missing_job(self, store: JobStore) -> None:
        with pytest.raises(JobNotFoundError):
            store.get(99)
        with pytest.raises(JobNotFoundError):
            store.update(99, status=JobStatus.ERROR)

    def test_reads_are_copies(self, store: JobStore) -> None:
        store.add(Job(3, "Demo", parameters=[Parameter("a", "1")]))
        job = store.get(3)
        job.parameters[0].value = "changed"
        assert store.get(3).parameters[0].value == "1"

    def test_parent_and_children(self, store: JobStore) -> None:
        store.add(Job(10, "Pipe", is_pipeline=True))
        store.add(Job(12, "Step", parent_id=10))
        store.add(Job(11, "Step", parent_id=10))

        assert [c.job_id for c in store.list_children(10)] == [11, 12]
        assert store.get_parent(11).job_id == 10
        assert store.get_parent(10) is None
        assert store.get(10).is_pipeline

    def test_non_terminal_jobs(self, store: JobStore) -> None:
        for job_id, status in enumerate(
            [JobStatus.PENDING, JobStatus.DISPATCHING, JobStatus.PROCESSING, JobStatus.FINISHED, JobStatus.ERROR]
        ):
            store.add(Job(job_id, "Demo", status=status))
        assert [j.job_id for j in store.list_non_terminal_jobs()] == [1, 2]


class TestTaskCatalog:
    def test_lookup_order(self) -> None:
        by_id = TaskTemplate(name="A", command_line="a", task_id=5)
        by_lsid = TaskTemplate(name="B", command_line="b", lsid="urn:lsid:x:y:7:1")
        catalog = InMemoryTaskCatalog([by_id, by_lsid])

        assert catalog.for_job(Job(1, "B", task_id=5)) is by_id
        assert catalog.for_job(Job(2, "A", lsid="urn:lsid:x:y:7:1")) is by_lsid
        assert catalog.for_job(Job(3, "A")) is by_id
        assert catalog.get("urn:lsid:x:y:7:1") is by_lsid

    def test_unknown(self) -> None:
        catalog = InMemoryTaskCatalog()
        with pytest.raises(TaskNotFoundError):
            catalog.for_job(Job(1, "Nope"))
        with pytest.raises(TaskNotFoundError):
            catalog.get(7)


class TestLoadTaskTemplate:
    def test_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "task.yaml"
        path.write_text(
            "name: ConvertLineEndings\n"
            "command_line: <python> <libdir>convert.py <input.file>\n"
            "parameters:\n"
            "  - {name: input.file, type: file}\n"
        )
        template = load_task_template(path)
        assert template.name == "ConvertLineEndings"
        assert template.formal("input.file").is_file

    def test_missing_name(self, tmp_path: Path) -> None:
        path = tmp_path / "task.yaml"
        path.write_text("command_line: prog\n")
        with pytest.raises(TaskNotFoundError, match="has no 'name'"):
            load_task_template(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(TaskNotFoundError, match="cannot read task file"):
            load_task_template(tmp_path / "absent.yaml")
