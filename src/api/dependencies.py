from __future__ import annotations

import threading

from fastapi import Request

from src.config.load_config import ConfigError, load_app_config
from src.storage.kv_store import default_db_path
from src.wf.backend import WorkflowBackend


_BACKEND_INIT_LOCK = threading.Lock()


def open_backend() -> WorkflowBackend:
    """Open the backend from config, falling back to env/defaults when there is no config file."""
    try:
        cfg = load_app_config()
    except ConfigError:
        return WorkflowBackend.open(default_db_path())
    return WorkflowBackend.open(
        cfg.store.sqlite_path,
        buckets=cfg.buckets,
        busy_timeout_s=cfg.store.busy_timeout_s,
    )


def get_backend(request: Request) -> WorkflowBackend:
    """FastAPI dependency: returns the process-wide WorkflowBackend (lazy init).

    The backend holds one SQLite connection that is safe to share across the
    threadpool FastAPI runs sync endpoints on, so it is cached in `app.state`.
    """
    cached = getattr(request.app.state, "backend", None)
    if isinstance(cached, WorkflowBackend):
        return cached

    with _BACKEND_INIT_LOCK:
        cached2 = getattr(request.app.state, "backend", None)
        if isinstance(cached2, WorkflowBackend):
            return cached2
        backend = open_backend()
        request.app.state.backend = backend
        return backend
