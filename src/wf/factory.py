from __future__ import annotations

from typing import Any, Mapping

from src.wf.backend import WorkflowBackend
from src.wf.errors import InvalidArgumentError
from src.wf.types import Job, Task, Workflow


def _positive_int(value: Any, *, key: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgumentError(f"{key} must be a positive integer, got {value!r}")
    return value


def _required_str(value: Any, *, key: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"{key} is required")
    return value


def _parse_tasks(raw: Any, *, key: str) -> list[Task]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise InvalidArgumentError(f"{key} must be a list of tasks")

    tasks: list[Task] = []
    for i, item in enumerate(raw):
        if isinstance(item, Task):
            item = {
                "uuid": item.uuid,
                "name": item.name,
                "body": item.body,
                "timeout": item.timeout,
                "retry": item.retry,
            }
        if not isinstance(item, Mapping):
            raise InvalidArgumentError(f"{key}[{i}] must be a task object")
        body = item.get("body")
        if not isinstance(body, str) or not body.strip():
            raise InvalidArgumentError(f"{key}[{i}].body must be a non-empty string")
        tasks.append(
            Task(
                name=_required_str(item.get("name"), key=f"{key}[{i}].name"),
                body=body,
                uuid=(str(item["uuid"]) if item.get("uuid") else None),
                timeout=_positive_int(item.get("timeout"), key=f"{key}[{i}].timeout"),
                retry=_positive_int(item.get("retry"), key=f"{key}[{i}].retry"),
            )
        )
    return tasks


class Factory:
    """Builds well-formed workflows and jobs, then hands them to the backend.

    Shape problems are reported as `InvalidArgumentError` before anything is
    written; uniqueness is left to the backend, which owns the data.
    """

    def __init__(self, backend: WorkflowBackend) -> None:
        self.backend = backend

    def workflow(self, definition: Mapping[str, Any]) -> Workflow:
        if not isinstance(definition, Mapping):
            raise InvalidArgumentError("Workflow definition must be an object")
        onerror = definition.get("onerror")
        if onerror is None:
            onerror = definition.get("onError")

        wf = Workflow(
            name=_required_str(definition.get("name"), key="name"),
            chain=_parse_tasks(definition.get("chain"), key="chain"),
            onerror=_parse_tasks(onerror, key="onerror"),
            timeout=_positive_int(definition.get("timeout"), key="timeout"),
        )
        return self.backend.create_workflow(wf)

    def job(self, spec: Mapping[str, Any]) -> Job:
        if not isinstance(spec, Mapping):
            raise InvalidArgumentError("Job spec must be an object")

        params = spec.get("params") or {}
        if not isinstance(params, Mapping):
            raise InvalidArgumentError("params must be an object")
        for k, v in params.items():
            if not isinstance(k, str) or not isinstance(v, str):
                raise InvalidArgumentError(f"params must map strings to strings, got {k!r}: {v!r}")

        job = Job(
            workflow_uuid=_required_str(spec.get("workflow"), key="workflow"),
            target=_required_str(spec.get("target"), key="target"),
            params=dict(params),
            exec_after=spec.get("exec_after"),
        )
        return self.backend.create_job(job)
