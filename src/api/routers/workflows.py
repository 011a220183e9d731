from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field

from src.api.dependencies import get_backend
from src.wf.backend import WorkflowBackend
from src.wf.factory import Factory
from src.wf.types import Task, Workflow


router = APIRouter()


class TaskInput(BaseModel):
    name: str = Field(min_length=1)
    body: str = Field(min_length=1, description="Opaque task source; executed by the engine, never here.")
    uuid: str | None = Field(default=None)
    timeout: int | None = Field(default=None, gt=0)
    retry: int | None = Field(default=None, gt=0)


class WorkflowRequest(BaseModel):
    name: str = Field(min_length=1)
    chain: list[TaskInput] = Field(default_factory=list)
    onerror: list[TaskInput] = Field(
        default_factory=list,
        validation_alias=AliasChoices("onerror", "onError"),
    )
    timeout: int | None = Field(default=None, gt=0)


def workflow_out(wf: Workflow) -> dict[str, Any]:
    out = wf.to_record()
    out["etag"] = wf.etag
    return out


@router.post("/workflows")
def create_workflow(body: WorkflowRequest, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    wf = Factory(backend).workflow(body.model_dump())
    return {"workflow": workflow_out(wf)}


@router.get("/workflows")
def list_workflows(backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {"items": [workflow_out(wf) for wf in backend.get_workflows()]}


@router.get("/workflows/{workflow_uuid}")
def get_workflow(workflow_uuid: str, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {"workflow": workflow_out(backend.get_workflow(workflow_uuid))}


@router.put("/workflows/{workflow_uuid}")
def update_workflow(
    workflow_uuid: str,
    body: WorkflowRequest,
    backend: WorkflowBackend = Depends(get_backend),
) -> dict[str, Any]:
    wf = Workflow(
        uuid=workflow_uuid,
        name=body.name,
        chain=[Task(**t.model_dump()) for t in body.chain],
        onerror=[Task(**t.model_dump()) for t in body.onerror],
        timeout=body.timeout,
    )
    return {"workflow": workflow_out(backend.update_workflow(wf))}
