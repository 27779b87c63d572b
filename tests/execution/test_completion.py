"""Tests for JobCompletionHandler and output harvesting."""

from __future__ import annotations

import os
from pathlib import Path

from gpexec.core.models import Job, JobStatus
from gpexec.core.settings import GpExecSettings
from gpexec.core.stores import InMemoryJobStore
from gpexec.execution.completion import JobCompletionHandler, harvest_outputs
from gpexec.execution.staging import FileStager
from tests._support.jobs import make_job, output_names


def _touch(path: Path, text: str, mtime_ns: int) -> None:
    path.write_text(text)
    os.utime(path, ns=(mtime_ns, mtime_ns))


class RecordingPipeline:
    def __init__(self) -> None:
        self.children: list[Job] = []

    def on_child_complete(self, child: Job) -> None:
        self.children.append(child)


class TestHarvestOutputs:
    def test_oldest_first(self, tmp_path: Path) -> None:
        _touch(tmp_path / "b.txt", "b", 2_000_000_000)
        _touch(tmp_path / "a.txt", "a", 3_000_000_000)
        _touch(tmp_path / "c.txt", "c", 1_000_000_000)
        (tmp_path / "subdir").mkdir()

        outputs = harvest_outputs(12, tmp_path)

        assert [p.name for p in outputs] == ["c.txt", "b.txt", "a.txt"]
        assert outputs[0].value == "12/c.txt"
        assert all(p.is_output and p.is_file for p in outputs)

    def test_capture_files_excluded(self, tmp_path: Path) -> None:
        (tmp_path / "stdout.txt").write_text("x")
        (tmp_path / "stderr.txt").write_text("y")
        assert harvest_outputs(1, tmp_path) == []

    def test_missing_directory(self, tmp_path: Path) -> None:
        assert harvest_outputs(1, tmp_path / "absent") == []


class TestComplete:
    def test_success_writes_stdout_and_harvests(
        self, settings: GpExecSettings, job_store: InMemoryJobStore
    ) -> None:
        job_store.add(Job(20, "Demo", status=JobStatus.PROCESSING))
        work_dir = Path(settings.jobs_dir) / "20"
        work_dir.mkdir()
        (work_dir / "result.txt").write_text("r")

        done = JobCompletionHandler(job_store, settings).complete(20, exit_code=0, stdout="hi\n")

        assert done.status == JobStatus.FINISHED
        assert output_names(done) == ["result.txt", "stdout.txt"]
        assert (work_dir / "stdout.txt").read_text() == "hi\n"
        assert not (work_dir / "stderr.txt").exists()
        assert job_store.get(20).status == JobStatus.FINISHED

    def test_nonzero_exit_is_error(
        self, settings: GpExecSettings, job_store: InMemoryJobStore
    ) -> None:
        job_store.add(Job(21, "Demo", status=JobStatus.PROCESSING))
        done = JobCompletionHandler(job_store, settings).complete(21, exit_code=3, stderr="boom")
        assert done.status == JobStatus.ERROR
        assert output_names(done) == ["stderr.txt"]
        assert (Path(settings.jobs_dir) / "21" / "stderr.txt").read_text() == "boom\n"

    def test_exclude_files(self, settings: GpExecSettings, job_store: InMemoryJobStore) -> None:
        job_store.add(Job(22, "Demo", status=JobStatus.PROCESSING))
        work_dir = Path(settings.jobs_dir) / "22"
        work_dir.mkdir()
        (work_dir / ".lsf.out").write_text("log")
        (work_dir / "out.txt").write_text("o")

        done = JobCompletionHandler(job_store, settings).complete(22, exclude_files=[".lsf.out"])

        assert output_names(done) == ["out.txt"]

    def test_fail_appends_to_existing_stderr(
        self, settings: GpExecSettings, job_store: InMemoryJobStore
    ) -> None:
        job_store.add(Job(23, "Demo", status=JobStatus.DISPATCHING))
        work_dir = Path(settings.jobs_dir) / "23"
        work_dir.mkdir()
        (work_dir / "stderr.txt").write_text("earlier output")

        done = JobCompletionHandler(job_store, settings).fail(23, "Server configuration error")

        assert done.status == JobStatus.ERROR
        assert (work_dir / "stderr.txt").read_text() == "earlier output\nServer configuration error\n"

    def test_restores_inputs_and_reports_overwrite(
        self,
        settings: GpExecSettings,
        job_store: InMemoryJobStore,
        input_file: Path,
        write_upper_task,
    ) -> None:
        stager = FileStager(settings)
        work_dir = Path(settings.jobs_dir) / "24"
        work_dir.mkdir()
        job = make_job(24, str(input_file), task=write_upper_task)
        formals = write_upper_task.formal_parameters
        job.parameters = stager.stage_inputs(job.parameters, formals, work_dir)
        job_store.add(job)
        (work_dir / "sample.txt").write_text("clobbered by the task\n")

        done = JobCompletionHandler(job_store, settings, stager).complete(24, exit_code=0)

        assert done.status == JobStatus.FINISHED
        assert done.parameter("input.file").value == str(input_file)
        assert input_file.read_text() == "clobbered by the task\n"
        stderr = (work_dir / "stderr.txt").read_text()
        assert stderr.startswith(f"WARNING: {input_file} may have been overwritten")
        assert output_names(done) == ["stderr.txt"]

    def test_child_completion_notifies_pipeline(
        self, settings: GpExecSettings, job_store: InMemoryJobStore
    ) -> None:
        job_store.add(Job(30, "Pipe", is_pipeline=True, status=JobStatus.PROCESSING))
        job_store.add(Job(31, "Demo", parent_id=30, status=JobStatus.PROCESSING))
        pipeline = RecordingPipeline()

        JobCompletionHandler(job_store, settings, pipeline=pipeline).complete(31)

        assert [c.job_id for c in pipeline.children] == [31]
