from __future__ import annotations

import copy
import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Mapping

from src.wf.errors import InvalidArgumentError


class Execution(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {Execution.SUCCEEDED, Execution.FAILED}


@dataclass
class Task:
    name: str
    body: str
    uuid: str | None = None
    timeout: int | None = None
    retry: int | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Task":
        return cls(
            name=str(raw.get("name") or ""),
            body=str(raw.get("body") or ""),
            uuid=(str(raw["uuid"]) if raw.get("uuid") else None),
            timeout=raw.get("timeout"),
            retry=raw.get("retry"),
        )


@dataclass
class ChainResult:
    result: Any = ""
    error: Any = ""
    # Any other keys the engine reported for the step, kept as given.
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ChainResult":
        if not isinstance(raw, Mapping):
            raise InvalidArgumentError(f"Chain result must be an object, got {raw!r}")
        extra = {k: v for k, v in raw.items() if k not in {"result", "error"}}
        return cls(result=raw.get("result", ""), error=raw.get("error", ""), extra=extra)

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        out["result"] = self.result
        out["error"] = self.error
        return out

    @property
    def failed(self) -> bool:
        return bool(self.error)


def parse_chain_results(raw: Any, *, key: str) -> list[ChainResult]:
    """Accept a list of results (records or mappings) or its JSON-encoded form."""
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise InvalidArgumentError(f"{key} is not valid JSON") from e
    if not isinstance(raw, (list, tuple)):
        raise InvalidArgumentError(f"{key} must be a list of results")
    return [r if isinstance(r, ChainResult) else ChainResult.from_dict(r) for r in raw]


@dataclass
class Workflow:
    name: str
    chain: list[Task] = field(default_factory=list)
    onerror: list[Task] = field(default_factory=list)
    timeout: int | None = None
    uuid: str | None = None
    created_at: float | None = None
    etag: str | None = None

    def to_record(self) -> dict[str, Any]:
        """Stored representation (the etag belongs to the store, not the record)."""
        out = asdict(self)
        out.pop("etag", None)
        return out

    @classmethod
    def from_record(cls, raw: dict[str, Any], *, etag: str | None = None) -> "Workflow":
        return cls(
            name=str(raw.get("name") or ""),
            chain=[Task.from_dict(t) for t in raw.get("chain") or []],
            onerror=[Task.from_dict(t) for t in raw.get("onerror") or []],
            timeout=raw.get("timeout"),
            uuid=raw.get("uuid"),
            created_at=raw.get("created_at"),
            etag=etag,
        )


@dataclass
class Job:
    workflow_uuid: str
    target: str
    params: dict[str, str] = field(default_factory=dict)
    name: str = ""
    chain: list[Task] = field(default_factory=list)
    onerror: list[Task] = field(default_factory=list)
    timeout: int | None = None
    execution: Execution = Execution.QUEUED
    exec_after: float | None = None
    runner_id: str | None = None
    chain_results: list[ChainResult] = field(default_factory=list)
    onerror_results: list[ChainResult] = field(default_factory=list)
    created_at: float | None = None
    started: float | None = None
    elapsed: float | None = None
    uuid: str | None = None
    etag: str | None = None

    def to_record(self) -> dict[str, Any]:
        out = asdict(self)
        out.pop("etag", None)
        out["execution"] = Execution(self.execution).value
        out["chain_results"] = [r.to_dict() for r in parse_chain_results(self.chain_results, key="chain_results")]
        out["onerror_results"] = [r.to_dict() for r in parse_chain_results(self.onerror_results, key="onerror_results")]
        return out

    @classmethod
    def from_record(cls, raw: dict[str, Any], *, etag: str | None = None) -> "Job":
        return cls(
            workflow_uuid=str(raw.get("workflow_uuid") or ""),
            target=str(raw.get("target") or ""),
            params=dict(raw.get("params") or {}),
            name=str(raw.get("name") or ""),
            chain=[Task.from_dict(t) for t in raw.get("chain") or []],
            onerror=[Task.from_dict(t) for t in raw.get("onerror") or []],
            timeout=raw.get("timeout"),
            execution=Execution(raw.get("execution") or Execution.QUEUED.value),
            exec_after=raw.get("exec_after"),
            runner_id=raw.get("runner_id"),
            chain_results=parse_chain_results(raw.get("chain_results"), key="chain_results"),
            onerror_results=parse_chain_results(raw.get("onerror_results"), key="onerror_results"),
            created_at=raw.get("created_at"),
            started=raw.get("started"),
            elapsed=raw.get("elapsed"),
            uuid=raw.get("uuid"),
            etag=etag,
        )

    def copy(self) -> "Job":
        return copy.deepcopy(self)


JOB_PROPERTIES = frozenset(f.name for f in fields(Job)) - {"etag"}
