"""Tests for PipelineExecutor sequencing and output propagation."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from gpexec.core.models import Job, JobStatus
from gpexec.core.settings import GpExecSettings
from gpexec.core.stores import InMemoryJobStore
from gpexec.execution.completion import JobCompletionHandler
from gpexec.execution.executors.pipeline import PipelineExecutor
from gpexec.execution.router import CommandRouter
from tests._support.executors import RecordingExecutor
from tests._support.jobs import output_names


@pytest.fixture
def completion(settings: GpExecSettings, job_store: InMemoryJobStore) -> JobCompletionHandler:
    return JobCompletionHandler(job_store, settings)


def _router(
    job_store: InMemoryJobStore,
    completion: JobCompletionHandler,
    worker: RecordingExecutor,
) -> tuple[CommandRouter, PipelineExecutor]:
    router = CommandRouter(job_store=job_store, completion=completion)
    router.register("RuntimeExec", worker)
    pipeline = router.pipeline_executor
    assert isinstance(pipeline, PipelineExecutor)
    completion.pipeline = pipeline
    return router, pipeline


def _pipeline_with_children(store: InMemoryJobStore, parent_id: int, child_ids: list[int]) -> Job:
    parent = Job(parent_id, "Pipe", is_pipeline=True, status=JobStatus.DISPATCHING)
    store.add(parent)
    for child_id in child_ids:
        store.add(Job(child_id, "Step", parent_id=parent_id))
    return parent


class TestSequencing:
    def test_children_run_in_order_and_outputs_propagate(
        self,
        settings: GpExecSettings,
        job_store: InMemoryJobStore,
        completion: JobCompletionHandler,
    ) -> None:
        worker = RecordingExecutor(
            "RuntimeExec",
            completion,
            jobs_dir=Path(settings.jobs_dir),
            outputs={101: ["a.txt"], 102: ["b.txt"]},
        )
        router, _ = _router(job_store, completion, worker)
        parent = _pipeline_with_children(job_store, 100, [101, 102])

        router.dispatch(parent)

        assert worker.run_ids() == [101, 102]
        finished = job_store.get(100)
        assert finished.status == JobStatus.FINISHED
        assert output_names(finished) == ["a.txt", "b.txt"]
        assert [p.value for p in finished.output_parameters] == ["101/a.txt", "102/b.txt"]

    def test_child_error_fails_pipeline(
        self,
        settings: GpExecSettings,
        job_store: InMemoryJobStore,
        completion: JobCompletionHandler,
    ) -> None:
        worker = RecordingExecutor("RuntimeExec", completion, jobs_dir=Path(settings.jobs_dir), failing={201})
        router, _ = _router(job_store, completion, worker)
        parent = _pipeline_with_children(job_store, 200, [201, 202])

        router.dispatch(parent)

        assert worker.run_ids() == [201]
        assert job_store.get(200).status == JobStatus.ERROR
        assert job_store.get(202).status == JobStatus.PENDING

    def test_empty_pipeline_finishes(
        self, job_store: InMemoryJobStore, completion: JobCompletionHandler
    ) -> None:
        router, _ = _router(job_store, completion, RecordingExecutor("RuntimeExec", completion))
        router.dispatch(_pipeline_with_children(job_store, 300, []))
        assert job_store.get(300).status == JobStatus.FINISHED

    def test_nested_pipeline(
        self,
        settings: GpExecSettings,
        job_store: InMemoryJobStore,
        completion: JobCompletionHandler,
    ) -> None:
        worker = RecordingExecutor(
            "RuntimeExec", completion, jobs_dir=Path(settings.jobs_dir), outputs={402: ["deep.txt"]}
        )
        router, _ = _router(job_store, completion, worker)
        outer = _pipeline_with_children(job_store, 400, [])
        job_store.add(Job(401, "Inner", is_pipeline=True, parent_id=400))
        job_store.add(Job(402, "Step", parent_id=401))

        router.dispatch(outer)

        assert job_store.get(401).status == JobStatus.FINISHED
        outer_done = job_store.get(400)
        assert outer_done.status == JobStatus.FINISHED
        assert output_names(outer_done) == ["deep.txt"]


class TestBookkeeping:
    def test_update_pipeline_status_appends_and_keeps_status(
        self, job_store: InMemoryJobStore
    ) -> None:
        job_store.add(Job(500, "Pipe", is_pipeline=True, status=JobStatus.PROCESSING))
        job_store.add(Job(501, "Step", parent_id=500))
        executor = PipelineExecutor(job_store=job_store)
        child = job_store.update(501, status=JobStatus.FINISHED)
        child.parameters = []

        executor.on_child_complete(child)
        updated = executor.update_pipeline_status(500, JobStatus.FINISHED)

        assert updated.status == JobStatus.FINISHED

    def test_terminate_stops_running_children(
        self, job_store: InMemoryJobStore, completion: JobCompletionHandler
    ) -> None:
        worker = RecordingExecutor("RuntimeExec")
        router, pipeline = _router(job_store, completion, worker)
        parent = _pipeline_with_children(job_store, 600, [601, 602])

        router.dispatch(parent)
        assert worker.run_ids() == [601]
        assert pipeline.is_sequencing(600)

        router.terminate(job_store.get(600))

        assert ("terminate", 601) in worker.calls
        assert job_store.get(600).status == JobStatus.ERROR
        assert not pipeline.is_sequencing(600)

    def test_unbound_executor_refuses_to_dispatch(self, job_store: InMemoryJobStore) -> None:
        parent = _pipeline_with_children(job_store, 700, [701])
        with pytest.raises(RuntimeError, match="not bound"):
            PipelineExecutor(job_store=job_store).run_job(parent)

    def test_child_is_dispatched_without_holding_the_lock(self, job_store: InMemoryJobStore) -> None:
        parent = _pipeline_with_children(job_store, 800, [801])
        lock_free: list[bool] = []

        def dispatch(child: Job) -> None:
            def try_lock() -> None:
                acquired = pipeline._lock.acquire(blocking=False)
                lock_free.append(acquired)
                if acquired:
                    pipeline._lock.release()

            other = threading.Thread(target=try_lock)
            other.start()
            other.join()
            assert job_store.get(child.job_id).status == JobStatus.DISPATCHING

        pipeline = PipelineExecutor(job_store=job_store, dispatch=dispatch)
        pipeline.run_job(parent)

        assert lock_free == [True]
        assert pipeline.is_sequencing(800)
