from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.dependencies import open_backend
from src.api.errors import (
    APIError,
    api_error_handler,
    backend_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from src.wf.errors import BackendError

from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.runners import router as runners_router
from .routers.workflows import router as workflows_router


def _cors_origins_from_env() -> list[str]:
    # Engines and runners are not browsers; CORS is only enabled when asked for.
    raw = os.getenv("WF_CORS_ORIGINS", "")
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Open eagerly so missing buckets are created before the first request.
        app.state.backend = open_backend()
        try:
            yield
        finally:
            backend = getattr(app.state, "backend", None)
            if backend is not None:
                backend.quit()
                app.state.backend = None

    app = FastAPI(title="Workflow Backend API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(BackendError, backend_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["*"],
        )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(workflows_router, prefix="/api/v1", tags=["workflows"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(runners_router, prefix="/api/v1", tags=["runners"])

    return app


app = create_app()
