from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from datalake.api.routes.health import router as health_router
from datalake.api.routes.jobs import router as jobs_router
from datalake.api.routes.maintenance import router as maintenance_router
from datalake.api.routes.queue import router as queue_router
from datalake.api.routes.uploads import router as uploads_router
from datalake.core.config import get_settings
from datalake.core.logging import configure_logging
from datalake.db.init_db import initialize_database
from datalake.db.session import get_session_factory
from datalake.queue.service import JobQueue


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    JobQueue(settings, get_session_factory()).declare_job_queues()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(uploads_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(queue_router, prefix="/api/v1")
    app.include_router(maintenance_router, prefix="/api/v1")
    return app


def serve() -> None:
    settings = get_settings()
    uvicorn.run(
        "datalake.api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
