import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database

from config import Settings, configure_logging
from database import connect, ensure_indexes
from envelope import ok
from errors import register_error_handlers
from progress import ProgressRollup
from routers import (
    activities,
    auth,
    customer,
    embedded,
    employee,
    milestones,
    projects,
    subtasks,
    task_requests,
    tasks,
    users,
)
from storage import LocalBackend, build_storage

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings)
    db = database if database is not None else connect(settings)
    storage = build_storage(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_indexes(db)
        logger.info("ProjectFlow API started (%s)", settings.environment)
        yield

    app = FastAPI(title="ProjectFlow API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.storage = storage
    app.state.rollup = ProgressRollup(db)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app, settings)

    for module in (auth, users, projects, milestones, tasks, subtasks, customer, employee, task_requests, activities):
        app.include_router(module.router)
    for router in embedded.ROUTERS:
        app.include_router(router)

    if isinstance(storage, LocalBackend):
        app.mount(
            settings.storage_local_url_prefix,
            StaticFiles(directory=settings.storage_local_root, check_dir=False),
            name="uploads",
        )

    @app.get("/")
    def read_root():
        return ok(message="ProjectFlow API running")

    @app.get("/api/health")
    def health():
        status = {"backend": "running", "database": "connected", "environment": settings.environment}
        try:
            db.command("ping")
        except Exception as exc:
            logger.warning("Database ping failed: %s", exc)
            status["database"] = "unavailable"
        return ok(status)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
