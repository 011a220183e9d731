from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from src.api.dependencies import get_backend
from src.wf.backend import WorkflowBackend
from src.wf.factory import Factory
from src.wf.types import ChainResult, Execution, Job


router = APIRouter()


class ChainResultInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    result: Any = Field(default="")
    error: Any = Field(default="")


class CreateJobRequest(BaseModel):
    workflow: str = Field(min_length=1, description="Workflow uuid.")
    target: str = Field(min_length=1)
    params: dict[str, str] = Field(default_factory=dict)
    exec_after: float | str | None = Field(default=None, description="Epoch seconds or ISO-8601.")


class UpdateJobRequest(BaseModel):
    """Fields left out keep their stored value; the write itself replaces the whole record."""

    target: str | None = None
    params: dict[str, str] | None = None
    execution: Execution | None = None
    exec_after: float | str | None = None
    runner_id: str | None = None
    chain_results: list[ChainResultInput] | None = None
    onerror_results: list[ChainResultInput] | None = None


class UpdatePropertyRequest(BaseModel):
    value: Any = None


class RunJobRequest(BaseModel):
    runner_id: str = Field(min_length=1)


class FinishJobRequest(BaseModel):
    chain_results: list[ChainResultInput] | None = None
    onerror_results: list[ChainResultInput] | None = None
    execution: Literal["succeeded", "failed"] | None = Field(
        default=None,
        description="Terminal state; derived from chain_results errors when omitted.",
    )


class QueueJobRequest(BaseModel):
    chain_results: list[ChainResultInput] | None = None
    exec_after: float | str | None = None


def job_out(job: Job) -> dict[str, Any]:
    out = job.to_record()
    out["etag"] = job.etag
    return out


def _apply(job: Job, body: BaseModel) -> Job:
    for key, value in body.model_dump(exclude_unset=True).items():
        if key in {"chain_results", "onerror_results"}:
            value = [ChainResult.from_dict(r) for r in value or []]
        setattr(job, key, value)
    return job


@router.post("/jobs")
def create_job(body: CreateJobRequest, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    job = Factory(backend).job(body.model_dump())
    return {"job": job_out(job)}


@router.get("/jobs")
def list_jobs(
    execution: Execution | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    backend: WorkflowBackend = Depends(get_backend),
) -> dict[str, Any]:
    jobs = backend.get_jobs(execution=execution, offset=offset, limit=limit)
    return {"items": [job_out(j) for j in jobs], "offset": offset, "limit": limit}


@router.get("/jobs/{job_uuid}")
def get_job(job_uuid: str, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {"job": job_out(backend.get_job(job_uuid))}


@router.put("/jobs/{job_uuid}")
def update_job(
    job_uuid: str,
    body: UpdateJobRequest,
    backend: WorkflowBackend = Depends(get_backend),
) -> dict[str, Any]:
    job = _apply(backend.get_job(job_uuid), body)
    return {"job": job_out(backend.update_job(job))}


@router.get("/jobs/{job_uuid}/properties/{prop}")
def get_job_property(job_uuid: str, prop: str, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {"uuid": job_uuid, "property": prop, "value": backend.get_job_property(job_uuid, prop)}


@router.put("/jobs/{job_uuid}/properties/{prop}")
def update_job_property(
    job_uuid: str,
    prop: str,
    body: UpdatePropertyRequest,
    backend: WorkflowBackend = Depends(get_backend),
) -> dict[str, Any]:
    return {"job": job_out(backend.update_job_property(job_uuid, prop, body.value))}


@router.post("/jobs/{job_uuid}/run")
def run_job(job_uuid: str, body: RunJobRequest, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {"job": job_out(backend.run_job(job_uuid, body.runner_id))}


@router.post("/jobs/{job_uuid}/finish")
def finish_job(job_uuid: str, body: FinishJobRequest, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    job = _apply(backend.get_job(job_uuid), body)
    return {"job": job_out(backend.finish_job(job))}


@router.post("/jobs/{job_uuid}/queue")
def queue_job(job_uuid: str, body: QueueJobRequest, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    job = backend.get_job(job_uuid)
    job.exec_after = None
    return {"job": job_out(backend.queue_job(_apply(job, body)))}


@router.get("/queue")
def next_jobs(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=10, ge=1, le=500),
    backend: WorkflowBackend = Depends(get_backend),
) -> dict[str, Any]:
    return {"items": backend.next_jobs(offset, limit), "offset": offset, "limit": limit}


@router.get("/queue/next")
def next_job(offset: int = Query(default=0, ge=0), backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    job = backend.next_job(offset)
    return {"job": job_out(job) if job is not None else None}
