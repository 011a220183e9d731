from __future__ import annotations

import time

from src.runtime.worker import ExecutionOutcome, JobRunner, WorkerConfig
from src.wf.backend import WorkflowBackend
from src.wf.factory import Factory
from src.wf.types import ChainResult, Execution, Job


def _ok_executor(job: Job) -> ExecutionOutcome:
    return ExecutionOutcome(chain_results=[ChainResult(result="OK", error="") for _ in job.chain])


def test_run_once_claims_and_finishes(backend: WorkflowBackend, factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job({"workflow": wf.uuid, "target": "/foo/bar"})

    runner = JobRunner(backend, _ok_executor, runner_id="r1")
    done = runner.run_once()

    assert done is not None and done.uuid == job.uuid
    assert done.execution == Execution.SUCCEEDED
    assert done.runner_id is None
    assert done.chain_results == [ChainResult(result="OK", error="")]
    assert backend.get_runner("r1") == backend.now()
    assert runner.run_once() is None
    assert runner.status_snapshot()["processed"] == 1


def test_executor_exception_fails_job(backend: WorkflowBackend, factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    factory.job({"workflow": wf.uuid, "target": "/foo/bar"})

    def boom(_job: Job) -> ExecutionOutcome:
        raise RuntimeError("task exploded")

    done = JobRunner(backend, boom, runner_id="r1").run_once()
    assert done is not None
    assert done.execution == Execution.FAILED
    assert "task exploded" in done.chain_results[-1].error


def test_requeue_outcome_delays_job(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict, clock
) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job({"workflow": wf.uuid, "target": "/foo/bar"})

    def retry_later(_job: Job) -> ExecutionOutcome:
        return ExecutionOutcome(chain_results=[ChainResult(result="", error="busy")], requeue_after=30)

    runner = JobRunner(backend, retry_later, runner_id="r1")
    queued = runner.run_once()
    assert queued is not None
    assert queued.execution == Execution.QUEUED
    assert queued.exec_after == clock.now + 30
    assert runner.run_once() is None

    clock.advance(30)
    runner._executor = _ok_executor
    done = runner.run_once()
    assert done is not None and done.uuid == job.uuid
    assert done.execution == Execution.SUCCEEDED


def test_claim_next_skips_jobs_taken_by_others(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict, clock
) -> None:
    wf = factory.workflow(workflow_def)
    first = factory.job({"workflow": wf.uuid, "target": "/a"})
    clock.advance(1)
    second = factory.job({"workflow": wf.uuid, "target": "/b"})

    backend.run_job(str(first.uuid), "other")
    claimed = JobRunner(backend, _ok_executor, runner_id="r1").claim_next()
    assert claimed is not None and claimed.uuid == second.uuid
    assert claimed.runner_id == "r1"


def test_recover_requeues_jobs_left_running(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict
) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job({"workflow": wf.uuid, "target": "/foo/bar"})
    backend.run_job(str(job.uuid), "r1")

    runner = JobRunner(backend, _ok_executor, runner_id="r1")
    assert runner.recover() == [job.uuid]
    assert backend.get_job(str(job.uuid)).execution == Execution.QUEUED
    assert runner.status_snapshot()["recovered"] == [job.uuid]


def test_background_thread_processes_queue(backend: WorkflowBackend, factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    jobs = [factory.job({"workflow": wf.uuid, "target": f"/t/{i}"}) for i in range(3)]

    runner = JobRunner(backend, _ok_executor, runner_id="r1", config=WorkerConfig(poll_interval_s=0.01))
    runner.start()
    try:
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline and backend.count_jobs()["succeeded"] < len(jobs):
            time.sleep(0.02)
    finally:
        runner.stop()

    assert not runner.running
    assert backend.count_jobs()["succeeded"] == len(jobs)


def test_bad_executor_results_fail_the_job_and_keep_runner_alive(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict
) -> None:
    wf = factory.workflow(workflow_def)
    returns_nothing = factory.job({"workflow": wf.uuid, "target": "/none"})

    runner = JobRunner(backend, lambda _job: None, runner_id="r1", config=WorkerConfig(poll_interval_s=0.01))
    runner.start()
    try:
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline and backend.count_jobs()["failed"] < 1:
            time.sleep(0.02)
        assert runner.running
    finally:
        runner.stop()

    done = backend.get_job(str(returns_nothing.uuid))
    assert done.execution == Execution.FAILED
    assert done.runner_id is None
    assert "ExecutionOutcome" in done.chain_results[-1].error
    assert backend.get_runner_jobs("r1") == []


def test_unstorable_results_fail_the_job(backend: WorkflowBackend, factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job({"workflow": wf.uuid, "target": "/foo/bar"})

    def unserializable(_job: Job) -> ExecutionOutcome:
        return ExecutionOutcome(chain_results=[ChainResult(result=object(), error="")])

    done = JobRunner(backend, unserializable, runner_id="r1").run_once()
    assert done is not None and done.uuid == job.uuid
    assert done.execution == Execution.FAILED
    assert done.runner_id is None
