from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.api.dependencies import get_backend
from src.wf.backend import WorkflowBackend


router = APIRouter()


class RegisterRunnerRequest(BaseModel):
    active_at: float | str | None = Field(default=None, description="Defaults to now.")


@router.get("/runners")
def list_runners(backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {"runners": backend.get_runners()}


@router.put("/runners/{runner_id}")
def register_runner(
    runner_id: str,
    body: RegisterRunnerRequest,
    backend: WorkflowBackend = Depends(get_backend),
) -> dict[str, Any]:
    return {"runner_id": runner_id, "active_at": backend.register_runner(runner_id, body.active_at)}


@router.get("/runners/{runner_id}")
def get_runner(runner_id: str, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {"runner_id": runner_id, "active_at": backend.get_runner(runner_id)}


@router.get("/runners/{runner_id}/jobs")
def get_runner_jobs(runner_id: str, backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {"runner_id": runner_id, "items": backend.get_runner_jobs(runner_id)}
