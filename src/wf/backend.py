"""Durable workflow/job backend on top of a bucketed key/value store.

Runners share one store and coordinate only through it: a job is claimed by a
compare-and-swap write keyed by the etag read just before, so at most one
runner's claim can land for any given revision of the job.
"""

from __future__ import annotations

import copy
import logging
import time
import uuid as uuidlib
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from src.storage.kv_store import (
    BucketNotFoundError,
    EtagConflictError,
    ObjectNotFoundError,
    SQLiteKVStore,
    StoreTransportError,
)
from src.wf.errors import (
    ConcurrentClaimError,
    DuplicateJobError,
    DuplicateNameError,
    InvalidArgumentError,
    InvalidPropertyError,
    InvalidStateError,
    NotFoundError,
    StoreUnavailableError,
)
from src.wf.types import JOB_PROPERTIES, Execution, Job, Task, Workflow, parse_chain_results


logger = logging.getLogger(__name__)


WORKFLOWS_SCHEMA: dict[str, Any] = {
    "index": {
        "name": {"type": "string"},
    }
}

JOBS_SCHEMA: dict[str, Any] = {
    "index": {
        "execution": {"type": "string"},
        "exec_after": {"type": "number"},
        "runner_id": {"type": "string"},
        "workflow_uuid": {"type": "string"},
        "target": {"type": "string"},
        "created_at": {"type": "number"},
    }
}

RUNNERS_SCHEMA: dict[str, Any] = {
    "index": {
        "active_at": {"type": "number"},
    }
}

_UNIQUE_JOB_FIELDS = frozenset({"workflow_uuid", "target", "params"})
_TIMESTAMP_FIELDS = frozenset({"exec_after", "created_at", "started"})


@dataclass(frozen=True)
class BucketNames:
    workflows: str = "wf_workflows"
    jobs: str = "wf_jobs"
    runners: str = "wf_runners"

    def all(self) -> tuple[str, str, str]:
        return (self.workflows, self.jobs, self.runners)


def _new_uuid() -> str:
    return str(uuidlib.uuid4())


def to_timestamp(value: Any) -> float:
    """Normalize epoch seconds, datetimes and ISO-8601 strings to epoch seconds."""
    if isinstance(value, bool):
        raise InvalidArgumentError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError as e:
            raise InvalidArgumentError(f"Invalid timestamp: {value!r}") from e
    else:
        raise InvalidArgumentError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _assign_task_uuids(tasks: Iterable[Task]) -> None:
    for task in tasks:
        if not task.uuid:
            task.uuid = _new_uuid()


def _check_params(params: Any) -> dict[str, str]:
    if params is None:
        return {}
    if not isinstance(params, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in params.items()
    ):
        raise InvalidArgumentError(f"params must map strings to strings, got {params!r}")
    return dict(params)


def _normalize_property(prop: str, value: Any) -> Any:
    """Coerce one job field to the form it is stored in."""
    if prop == "execution":
        try:
            return Execution(value).value
        except ValueError as e:
            raise InvalidArgumentError(f"Invalid execution value: {value!r}") from e
    if prop in _TIMESTAMP_FIELDS:
        return to_timestamp(value) if value is not None else None
    if prop == "params":
        return _check_params(value)
    if prop in {"chain_results", "onerror_results"}:
        return [r.to_dict() for r in parse_chain_results(value, key=prop)]
    if prop in {"workflow_uuid", "target"} and (not isinstance(value, str) or not value):
        raise InvalidArgumentError(f"{prop} must be a non-empty string")
    return value


class WorkflowBackend:
    """Workflow and job persistence plus the job claiming protocol."""

    def __init__(
        self,
        store: SQLiteKVStore,
        *,
        buckets: BucketNames | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.buckets = buckets or BucketNames()
        self._clock = clock or time.time

    @classmethod
    def open(
        cls,
        db_path: str | Path | None = None,
        *,
        buckets: BucketNames | None = None,
        clock: Callable[[], float] | None = None,
        busy_timeout_s: float = 5.0,
    ) -> "WorkflowBackend":
        try:
            store = SQLiteKVStore(db_path, busy_timeout_s=busy_timeout_s)
        except StoreTransportError as e:
            raise StoreUnavailableError(str(e)) from e
        backend = cls(store, buckets=buckets, clock=clock)
        try:
            backend.init()
        except Exception:
            store.close()
            raise
        return backend

    def now(self) -> float:
        return float(self._clock())

    @contextmanager
    def _store_errors(self) -> Iterable[None]:
        try:
            yield
        except StoreTransportError as e:
            raise StoreUnavailableError(f"Store unavailable: {e}") from e
        except BucketNotFoundError as e:
            raise NotFoundError(str(e), details={"bucket": e.bucket}) from e

    # --- Lifecycle
    def init(self) -> None:
        with self._store_errors():
            self.store.ensure_bucket(self.buckets.workflows, WORKFLOWS_SCHEMA)
            self.store.ensure_bucket(self.buckets.jobs, JOBS_SCHEMA)
            self.store.ensure_bucket(self.buckets.runners, RUNNERS_SCHEMA)

    def quit(self) -> None:
        self.store.close()

    # --- Workflows
    def _find_workflows_named(self, name: str) -> list[Workflow]:
        with self._store_errors():
            objs = self.store.query(self.buckets.workflows, [("name", "eq", name)])
        return [Workflow.from_record(o.value, etag=o.etag) for o in objs]

    def _exists(self, bucket: str, key: str) -> bool:
        try:
            with self._store_errors():
                self.store.get(bucket, key)
        except ObjectNotFoundError:
            return False
        return True

    def create_workflow(self, workflow: Workflow) -> Workflow:
        wf = copy.deepcopy(workflow)
        wf.uuid = wf.uuid or _new_uuid()
        wf.created_at = wf.created_at or self.now()
        _assign_task_uuids(wf.chain)
        _assign_task_uuids(wf.onerror)

        # Check and insert under one write transaction so concurrent creates serialize.
        with self._store_errors(), self.store.atomic():
            if self._find_workflows_named(wf.name):
                raise DuplicateNameError(
                    f"Workflow.name must be unique. A workflow with name '{wf.name}' already exists",
                    details={"name": wf.name},
                )
            if self._exists(self.buckets.workflows, wf.uuid):
                raise InvalidArgumentError(
                    f"Workflow with uuid '{wf.uuid}' already exists", details={"uuid": wf.uuid}
                )
            wf.etag = self.store.put(self.buckets.workflows, wf.uuid, wf.to_record())
        logger.info("workflow created: uuid=%s name=%r", wf.uuid, wf.name)
        return wf

    def get_workflow(self, workflow_uuid: str) -> Workflow:
        try:
            with self._store_errors():
                obj = self.store.get(self.buckets.workflows, workflow_uuid)
        except ObjectNotFoundError as e:
            raise NotFoundError(
                f"Workflow with uuid '{workflow_uuid}' does not exist",
                details={"uuid": workflow_uuid},
            ) from e
        return Workflow.from_record(obj.value, etag=obj.etag)

    def get_workflows(self) -> list[Workflow]:
        with self._store_errors():
            objs = self.store.query(self.buckets.workflows, order_by=[("name", "asc")])
        return [Workflow.from_record(o.value, etag=o.etag) for o in objs]

    def update_workflow(self, workflow: Workflow) -> Workflow:
        if not workflow.uuid:
            raise InvalidArgumentError("Workflow.uuid is required for updates")

        wf = copy.deepcopy(workflow)
        _assign_task_uuids(wf.chain)
        _assign_task_uuids(wf.onerror)

        with self._store_errors(), self.store.atomic():
            existing = self.get_workflow(workflow.uuid)
            if any(other.uuid != wf.uuid for other in self._find_workflows_named(wf.name)):
                raise DuplicateNameError(
                    f"Workflow.name must be unique. A workflow with name '{wf.name}' already exists",
                    details={"name": wf.name},
                )
            wf.created_at = existing.created_at
            wf.etag = self.store.put(self.buckets.workflows, wf.uuid, wf.to_record())
        logger.info("workflow updated: uuid=%s name=%r", wf.uuid, wf.name)
        return wf

    # --- Jobs
    def _job_not_found(self, job_uuid: str) -> NotFoundError:
        return NotFoundError(f"Job with uuid '{job_uuid}' does not exist", details={"uuid": job_uuid})

    def _read_job(self, job_uuid: str) -> Job:
        try:
            with self._store_errors():
                obj = self.store.get(self.buckets.jobs, job_uuid)
        except ObjectNotFoundError as e:
            raise self._job_not_found(job_uuid) from e
        return Job.from_record(obj.value, etag=obj.etag)

    def _write_job(self, job: Job, *, etag: str | None = None) -> Job:
        out = copy.deepcopy(job)
        with self._store_errors():
            out.etag = self.store.put(self.buckets.jobs, str(out.uuid), out.to_record(), etag=etag)
        return out

    def _is_duplicate_job(
        self,
        workflow_uuid: str,
        target: str,
        params: dict[str, str],
        *,
        exclude: str | None = None,
    ) -> bool:
        with self._store_errors():
            objs = self.store.query(
                self.buckets.jobs,
                [("workflow_uuid", "eq", workflow_uuid), ("target", "eq", target)],
            )
        return any(o.key != exclude and dict(o.value.get("params") or {}) == params for o in objs)

    def _check_unique_job(self, job_uuid: str | None, workflow_uuid: str, target: str, params: dict[str, str]) -> None:
        if self._is_duplicate_job(workflow_uuid, target, params, exclude=job_uuid):
            raise DuplicateJobError(
                "Another job with the same target and params is already queued",
                details={"workflow_uuid": workflow_uuid, "target": target, "params": params},
            )

    def create_job(self, job: Job) -> Job:
        """Persist a new queued job for an existing workflow.

        The workflow's chain/onerror/timeout are copied into the job, so later
        workflow edits never reach jobs that already exist.
        """
        workflow = self.get_workflow(job.workflow_uuid)
        params = _check_params(job.params)

        now = self.now()
        new = Job(
            workflow_uuid=str(workflow.uuid),
            target=job.target,
            params=params,
            name=workflow.name,
            chain=copy.deepcopy(workflow.chain),
            onerror=copy.deepcopy(workflow.onerror),
            timeout=workflow.timeout,
            execution=Execution.QUEUED,
            exec_after=(to_timestamp(job.exec_after) if job.exec_after is not None else now),
            runner_id=None,
            chain_results=[],
            onerror_results=[],
            created_at=now,
            uuid=job.uuid or _new_uuid(),
        )
        with self._store_errors(), self.store.atomic():
            self._check_unique_job(None, new.workflow_uuid, new.target, params)
            if self._exists(self.buckets.jobs, str(new.uuid)):
                raise InvalidArgumentError(f"Job with uuid '{new.uuid}' already exists", details={"uuid": new.uuid})
            created = self._write_job(new)
        logger.info(
            "job created: uuid=%s workflow=%s target=%r exec_after=%s",
            created.uuid,
            created.workflow_uuid,
            created.target,
            created.exec_after,
        )
        return created

    def get_job(self, job_uuid: str) -> Job:
        return self._read_job(job_uuid)

    def get_job_property(self, job_uuid: str, prop: str) -> Any:
        if prop not in JOB_PROPERTIES:
            # A missing job is reported before an unknown property.
            self._read_job(job_uuid)
            raise InvalidPropertyError(
                f"Job does not define property '{prop}'", details={"uuid": job_uuid, "property": prop}
            )
        try:
            with self._store_errors():
                present, value = self.store.get_field(self.buckets.jobs, job_uuid, prop)
        except ObjectNotFoundError as e:
            raise self._job_not_found(job_uuid) from e
        if not present:
            raise InvalidPropertyError(
                f"Job does not define property '{prop}'", details={"uuid": job_uuid, "property": prop}
            )
        return value

    def get_jobs(self, *, execution: Execution | str | None = None, offset: int = 0, limit: int = 100) -> list[Job]:
        filters: list[tuple[str, str, Any]] = []
        if execution is not None:
            filters.append(("execution", "eq", Execution(execution).value))
        with self._store_errors():
            objs = self.store.query(
                self.buckets.jobs,
                filters,
                order_by=[("created_at", "asc")],
                offset=offset,
                limit=limit,
            )
        return [Job.from_record(o.value, etag=o.etag) for o in objs]

    def count_jobs(self) -> dict[str, int]:
        with self._store_errors():
            return {
                state.value: self.store.count(self.buckets.jobs, [("execution", "eq", state.value)])
                for state in Execution
            }

    def update_job(self, job: Job) -> Job:
        """Full replacement write. No state checks; `execution`/`runner_id` are kept as passed.

        The `(workflow_uuid, target, params)` triple must stay unique among jobs.
        """
        if not job.uuid:
            raise InvalidArgumentError("Job.uuid is required for updates")
        job = copy.deepcopy(job)
        job.params = _check_params(job.params)
        if job.exec_after is not None:
            job.exec_after = to_timestamp(job.exec_after)

        with self._store_errors(), self.store.atomic():
            self._read_job(job.uuid)
            self._check_unique_job(job.uuid, job.workflow_uuid, job.target, job.params)
            return self._write_job(job)

    def update_job_property(self, job_uuid: str, prop: str, value: Any) -> Job:
        """Set one field, leaving every other field exactly as stored.

        The read and the conditional write share one transaction, so a concurrent
        writer's changes to other fields are never overwritten.
        """
        if prop not in JOB_PROPERTIES or prop == "uuid":
            raise InvalidPropertyError(
                f"Job property '{prop}' cannot be updated", details={"uuid": job_uuid, "property": prop}
            )
        value = _normalize_property(prop, value)

        with self._store_errors(), self.store.atomic():
            try:
                obj = self.store.get(self.buckets.jobs, job_uuid)
            except ObjectNotFoundError as e:
                raise self._job_not_found(job_uuid) from e

            record = dict(obj.value)
            record[prop] = value
            if prop in _UNIQUE_JOB_FIELDS:
                self._check_unique_job(
                    job_uuid,
                    str(record.get("workflow_uuid") or ""),
                    str(record.get("target") or ""),
                    dict(record.get("params") or {}),
                )
            try:
                etag = self.store.put(self.buckets.jobs, job_uuid, record, etag=obj.etag)
            except EtagConflictError as e:
                raise ConcurrentClaimError(
                    f"Job '{job_uuid}' changed while updating property '{prop}'",
                    details={"uuid": job_uuid, "property": prop},
                ) from e
        return Job.from_record(record, etag=etag)

    # --- State machine
    def run_job(self, job_uuid: str, runner_id: str) -> Job:
        """Claim a queued job for `runner_id`.

        Read the job with its etag, flip it to running in memory and write it back
        conditioned on that etag. If anything wrote the job in between, the store
        rejects the write and the claim is lost.
        """
        if not runner_id:
            raise InvalidArgumentError("runner_id is required to run a job")

        job = self._read_job(job_uuid)
        read_etag = job.etag
        if job.execution != Execution.QUEUED:
            raise InvalidStateError(
                f"Job '{job_uuid}' is {job.execution.value}, only queued jobs can be run",
                details={"uuid": job_uuid, "execution": job.execution.value},
            )
        now = self.now()
        if job.exec_after is not None and float(job.exec_after) > now:
            raise InvalidStateError(
                f"Job '{job_uuid}' is not eligible before {job.exec_after}",
                details={"uuid": job_uuid, "exec_after": job.exec_after},
            )

        job.execution = Execution.RUNNING
        job.runner_id = runner_id
        job.started = now
        try:
            claimed = self._write_job(job, etag=read_etag)
        except EtagConflictError as e:
            logger.info("claim lost: job=%s runner=%s", job_uuid, runner_id)
            raise ConcurrentClaimError(
                f"Job '{job_uuid}' was modified by another runner",
                details={"uuid": job_uuid, "runner_id": runner_id},
            ) from e
        logger.info("job claimed: job=%s runner=%s", job_uuid, runner_id)
        return claimed

    def finish_job(self, job: Job) -> Job:
        """Move a running job to its terminal state and release the runner.

        A terminal `execution` set by the caller is kept; otherwise the job
        failed if any chain result carries an error, and succeeded if none do.
        """
        if not job.uuid:
            raise InvalidArgumentError("Job.uuid is required to finish a job")
        stored = self._read_job(job.uuid)
        if stored.execution != Execution.RUNNING:
            raise InvalidStateError(
                f"Job '{job.uuid}' is {stored.execution.value}, only running jobs can be finished",
                details={"uuid": job.uuid, "execution": stored.execution.value},
            )

        done = copy.deepcopy(job)
        done.chain_results = parse_chain_results(done.chain_results, key="chain_results")
        done.onerror_results = parse_chain_results(done.onerror_results, key="onerror_results")
        done.execution = Execution(done.execution)
        if not done.execution.terminal:
            failed = any(r.failed for r in done.chain_results)
            done.execution = Execution.FAILED if failed else Execution.SUCCEEDED
        done.runner_id = None
        started = stored.started if stored.started is not None else done.started
        if started is not None:
            done.elapsed = max(0.0, self.now() - float(started))

        finished = self._write_job(done)
        logger.info("job finished: job=%s execution=%s", finished.uuid, finished.execution.value)
        return finished

    def queue_job(self, job: Job) -> Job:
        """Return a job to the queue, releasing any runner that held it."""
        if not job.uuid:
            raise InvalidArgumentError("Job.uuid is required to queue a job")
        stored = self._read_job(job.uuid)
        if stored.execution not in {Execution.RUNNING, Execution.QUEUED}:
            raise InvalidStateError(
                f"Job '{job.uuid}' is {stored.execution.value}, only running or queued jobs can be re-queued",
                details={"uuid": job.uuid, "execution": stored.execution.value},
            )

        queued = copy.deepcopy(job)
        queued.chain_results = parse_chain_results(queued.chain_results, key="chain_results")
        queued.onerror_results = parse_chain_results(queued.onerror_results, key="onerror_results")
        queued.execution = Execution.QUEUED
        queued.runner_id = None
        queued.started = None
        if queued.exec_after is None:
            queued.exec_after = self.now()
        else:
            queued.exec_after = to_timestamp(queued.exec_after)

        out = self._write_job(queued)
        logger.info("job re-queued: job=%s exec_after=%s", out.uuid, out.exec_after)
        return out

    # --- Queue selection
    def next_jobs(self, offset: int = 0, limit: int | None = 1) -> list[str]:
        """Uuids of claimable jobs, oldest `exec_after` first, ties broken by uuid."""
        with self._store_errors():
            objs = self.store.query(
                self.buckets.jobs,
                [("execution", "eq", Execution.QUEUED.value), ("exec_after", "le", self.now())],
                order_by=[("exec_after", "asc")],
                offset=offset,
                limit=limit,
            )
        return [o.key for o in objs]

    def next_job(self, offset: int = 0) -> Job | None:
        with self._store_errors():
            objs = self.store.query(
                self.buckets.jobs,
                [("execution", "eq", Execution.QUEUED.value), ("exec_after", "le", self.now())],
                order_by=[("exec_after", "asc")],
                offset=offset,
                limit=1,
            )
        if not objs:
            return None
        return Job.from_record(objs[0].value, etag=objs[0].etag)

    # --- Runners
    def get_runner_jobs(self, runner_id: str) -> list[str]:
        with self._store_errors():
            objs = self.store.query(
                self.buckets.jobs,
                [("runner_id", "eq", runner_id), ("execution", "eq", Execution.RUNNING.value)],
                order_by=[("started", "asc")],
            )
        return [o.key for o in objs]

    def requeue_runner_jobs(self, runner_id: str) -> list[str]:
        """Put every job held by `runner_id` back on the queue (crash recovery)."""
        requeued: list[str] = []
        for job_uuid in self.get_runner_jobs(runner_id):
            job = self._read_job(job_uuid)
            job.exec_after = None
            self.queue_job(job)
            requeued.append(job_uuid)
        if requeued:
            logger.warning("re-queued %d job(s) held by runner %s", len(requeued), runner_id)
        return requeued

    def register_runner(self, runner_id: str, active_at: Any = None) -> float:
        if not runner_id:
            raise InvalidArgumentError("runner_id is required")
        ts = to_timestamp(active_at) if active_at is not None else self.now()
        with self._store_errors():
            self.store.put(self.buckets.runners, runner_id, {"runner_id": runner_id, "active_at": ts})
        return ts

    def get_runner(self, runner_id: str) -> float:
        try:
            with self._store_errors():
                obj = self.store.get(self.buckets.runners, runner_id)
        except ObjectNotFoundError as e:
            raise NotFoundError(
                f"Runner with id '{runner_id}' does not exist", details={"runner_id": runner_id}
            ) from e
        return float(obj.value["active_at"])

    def get_runners(self) -> dict[str, float]:
        with self._store_errors():
            objs = self.store.query(self.buckets.runners, order_by=[("active_at", "desc")])
        return {o.key: float(o.value["active_at"]) for o in objs}
