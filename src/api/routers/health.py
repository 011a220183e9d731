from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends

from src.api.dependencies import get_backend
from src.wf.backend import WorkflowBackend


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "wf-backend",
        "api": "v1",
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "pydantic": _pkg_version("pydantic"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system/queue")
def system_queue(backend: WorkflowBackend = Depends(get_backend)) -> dict[str, Any]:
    return {
        "ts": backend.now(),
        "jobs_by_execution": backend.count_jobs(),
        "eligible": len(backend.next_jobs(0, None)),
        "runners": backend.get_runners(),
    }
