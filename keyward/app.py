from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from keyward.api.error_handling import register_exception_handlers
from keyward.config import Settings, get_settings
from keyward.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from keyward.service.runtime import get_runtime

    get_runtime()
    yield
    from keyward.service import runtime as runtime_module

    if runtime_module.runtime is not None:
        runtime_module.runtime.close()
        logger.info("runtime_cleanup_complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the HTTP shell: problem-details handlers, correlation ids and a health check.

    Routes are mounted by the hosting service.
    """
    settings = settings or get_settings()
    app = FastAPI(title="keyward", version=__version__, lifespan=lifespan)
    register_exception_handlers(app, settings.error_docs_base_url)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Echo X-Request-ID (or a fresh UUID) and bind it to the log context."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "version": __version__}

    return app
