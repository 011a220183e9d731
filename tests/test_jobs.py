from __future__ import annotations

import threading
import uuid

import pytest

from src.wf.backend import WorkflowBackend
from src.wf.errors import (
    DuplicateJobError,
    InvalidArgumentError,
    InvalidPropertyError,
    NotFoundError,
)
from src.wf.factory import Factory
from src.wf.types import ChainResult, Execution, Job, Task


def _job_spec(workflow_uuid: str, **kw: object) -> dict:
    spec = {"workflow": workflow_uuid, "target": "/foo/bar", "params": {"a": "1", "b": "2"}}
    spec.update(kw)
    return spec


def test_create_job(backend: WorkflowBackend, factory: Factory, workflow_def: dict, clock) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))

    assert job.uuid
    assert job.execution == Execution.QUEUED
    assert job.exec_after == clock.now
    assert job.runner_id is None
    assert job.chain_results == []
    assert job.name == wf.name
    assert job.timeout == 180
    assert isinstance(job.chain, list) and job.chain[0].uuid == wf.chain[0].uuid
    assert isinstance(job.onerror, list) and job.onerror[0].name == "Fallback task"
    assert job.params == {"a": "1", "b": "2"}

    assert backend.get_job_property(str(job.uuid), "target") == "/foo/bar"


def test_duplicated_job_target(factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    factory.job(_job_spec(str(wf.uuid)))
    with pytest.raises(DuplicateJobError):
        factory.job(_job_spec(str(wf.uuid)))


def test_params_equality_ignores_key_order(factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    factory.job(_job_spec(str(wf.uuid), params={"a": "1", "b": "2"}))
    with pytest.raises(DuplicateJobError):
        factory.job(_job_spec(str(wf.uuid), params={"b": "2", "a": "1"}))


def test_job_with_different_params(factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    first = factory.job(_job_spec(str(wf.uuid)))
    second = factory.job(_job_spec(str(wf.uuid), params={"a": "2", "b": "1"}))
    assert second.uuid != first.uuid
    assert second.execution == Execution.QUEUED
    assert second.exec_after is not None


def test_same_triple_on_another_workflow_is_allowed(factory: Factory, workflow_def: dict) -> None:
    wf1 = factory.workflow(workflow_def)
    wf2 = factory.workflow(dict(workflow_def, name="Second"))
    factory.job(_job_spec(str(wf1.uuid)))
    assert factory.job(_job_spec(str(wf2.uuid))).workflow_uuid == wf2.uuid


def test_job_for_missing_workflow(backend: WorkflowBackend, factory: Factory) -> None:
    missing = str(uuid.uuid4())
    with pytest.raises(NotFoundError) as e:
        factory.job(_job_spec(missing))
    assert missing in e.value.message
    assert backend.get_jobs() == []


def test_factory_rejects_non_string_params(factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    with pytest.raises(InvalidArgumentError):
        factory.job(_job_spec(str(wf.uuid), params={"a": 1}))
    with pytest.raises(InvalidArgumentError):
        factory.job(_job_spec(str(wf.uuid), target=""))


def test_exec_after_accepts_iso_strings(factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid), exec_after="2030-01-01T00:00:00Z"))
    assert job.exec_after == 1893456000.0


def test_job_chain_is_isolated_from_workflow_edits(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict
) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))

    wf.chain[0].body = "changed"
    wf.chain.append(Task(name="Later task", body="x"))
    backend.update_workflow(wf)

    stored = backend.get_job(str(job.uuid))
    assert len(stored.chain) == 1
    assert stored.chain[0].body == workflow_def["chain"][0]["body"]


def test_get_job_missing_and_invalid_property(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict
) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))

    missing = str(uuid.uuid4())
    with pytest.raises(NotFoundError):
        backend.get_job(missing)
    with pytest.raises(NotFoundError):
        backend.get_job_property(missing, "target")
    with pytest.raises(InvalidPropertyError):
        backend.get_job_property(str(job.uuid), "no_such_field")

    assert backend.get_job_property(str(job.uuid), "runner_id") is None
    assert backend.get_job_property(str(job.uuid), "params") == {"a": "1", "b": "2"}
    assert backend.get_job_property(str(job.uuid), "execution") == "queued"


def test_update_job_replaces_record(backend: WorkflowBackend, factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))

    job.chain_results = [ChainResult(result="OK", error=""), ChainResult(result="OK", error="")]
    job.execution = Execution.RUNNING
    job.runner_id = "r1"
    updated = backend.update_job(job)

    assert updated.execution == Execution.RUNNING
    assert updated.runner_id == "r1"
    assert len(updated.chain_results) == 2
    assert updated.etag != job.etag
    assert backend.get_job(str(job.uuid)).chain_results == job.chain_results


def test_update_job_property_round_trip(backend: WorkflowBackend, factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))
    before = backend.get_job(str(job.uuid))

    backend.update_job_property(str(job.uuid), "target", "/foo/baz")

    after = backend.get_job(str(job.uuid))
    assert after.target == "/foo/baz"
    after.target = before.target
    after.etag = before.etag
    assert after == before


def test_update_job_property_rejects_unknown_and_identity(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict
) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))

    with pytest.raises(InvalidPropertyError):
        backend.update_job_property(str(job.uuid), "bogus", 1)
    with pytest.raises(InvalidPropertyError):
        backend.update_job_property(str(job.uuid), "uuid", "x")
    with pytest.raises(InvalidArgumentError):
        backend.update_job_property(str(job.uuid), "execution", "paused")
    with pytest.raises(NotFoundError):
        backend.update_job_property(str(uuid.uuid4()), "target", "x")


def test_get_jobs_and_counts(backend: WorkflowBackend, factory: Factory, workflow_def: dict, clock) -> None:
    wf = factory.workflow(workflow_def)
    j1 = factory.job(_job_spec(str(wf.uuid), target="/a"))
    clock.advance(1)
    factory.job(_job_spec(str(wf.uuid), target="/b"))
    backend.run_job(str(j1.uuid), "r1")

    assert [j.target for j in backend.get_jobs()] == ["/a", "/b"]
    assert [j.uuid for j in backend.get_jobs(execution="running")] == [j1.uuid]
    assert backend.count_jobs() == {"queued": 1, "running": 1, "succeeded": 0, "failed": 0}


def test_update_job_property_normalizes_exec_after(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict, clock
) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid), exec_after=clock.now + 3600))
    assert backend.next_jobs(0, 10) == []

    backend.update_job_property(str(job.uuid), "exec_after", "2000-01-01T00:00:00Z")

    assert backend.get_job_property(str(job.uuid), "exec_after") == 946684800.0
    assert backend.next_jobs(0, 10) == [job.uuid]
    with pytest.raises(InvalidArgumentError):
        backend.update_job_property(str(job.uuid), "exec_after", "next tuesday")


def test_updates_keep_job_triples_unique(backend: WorkflowBackend, factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    first = factory.job(_job_spec(str(wf.uuid), target="/a"))
    second = factory.job(_job_spec(str(wf.uuid), target="/b"))

    with pytest.raises(DuplicateJobError):
        backend.update_job_property(str(second.uuid), "target", "/a")
    assert backend.get_job(str(second.uuid)).target == "/b"

    moved = backend.get_job(str(second.uuid))
    moved.target = "/a"
    with pytest.raises(DuplicateJobError):
        backend.update_job(moved)

    # Different params make the triple distinct again.
    backend.update_job_property(str(second.uuid), "params", {"a": "9"})
    assert backend.update_job_property(str(second.uuid), "target", "/a").target == "/a"
    # Re-writing a job's own triple is not a collision.
    assert backend.update_job(backend.get_job(str(first.uuid))).target == "/a"


def test_concurrent_duplicate_jobs_yield_one_job(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict
) -> None:
    wf = factory.workflow(workflow_def)
    barrier = threading.Barrier(4)
    created: list[str] = []
    rejected: list[Exception] = []
    lock = threading.Lock()

    def create() -> None:
        barrier.wait()
        try:
            job = factory.job(_job_spec(str(wf.uuid)))
        except DuplicateJobError as e:
            with lock:
                rejected.append(e)
        else:
            with lock:
                created.append(str(job.uuid))

    threads = [threading.Thread(target=create) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(created) == 1
    assert len(rejected) == 3
    assert [j.uuid for j in backend.get_jobs()] == created


def test_missing_job_is_reported_before_unknown_property(backend: WorkflowBackend) -> None:
    with pytest.raises(NotFoundError):
        backend.get_job_property(str(uuid.uuid4()), "no_such_field")


def test_create_job_rejects_existing_uuid(backend: WorkflowBackend, factory: Factory, workflow_def: dict) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))

    with pytest.raises(InvalidArgumentError):
        backend.create_job(Job(workflow_uuid=str(wf.uuid), target="/elsewhere", uuid=job.uuid))
    assert backend.get_job(str(job.uuid)).target == "/foo/bar"


def test_chain_results_keep_extra_keys_and_accept_json(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict
) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))
    running = backend.run_job(str(job.uuid), "r1")

    running.chain_results = '[{"success": true, "error": ""}]'
    queued = backend.queue_job(running)

    assert queued.execution == Execution.QUEUED
    assert queued.chain_results == [ChainResult(result="", error="", extra={"success": True})]
    assert backend.get_job_property(str(job.uuid), "chain_results") == [
        {"success": True, "result": "", "error": ""}
    ]


def test_malformed_chain_results_are_rejected(
    backend: WorkflowBackend, factory: Factory, workflow_def: dict
) -> None:
    wf = factory.workflow(workflow_def)
    job = factory.job(_job_spec(str(wf.uuid)))
    running = backend.run_job(str(job.uuid), "r1")

    for bad in (["not a result"], "{not json", {"result": "OK"}):
        running.chain_results = bad
        with pytest.raises(InvalidArgumentError):
            backend.finish_job(running)
    with pytest.raises(InvalidArgumentError):
        backend.update_job_property(str(job.uuid), "chain_results", [42])

    stored = backend.get_job(str(job.uuid))
    assert stored.execution == Execution.RUNNING
    assert stored.chain_results == []
