import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from courseport.config import settings
from courseport.database import AsyncSessionLocal, init_models
from courseport.exception_handlers import register_exception_handlers
from courseport.routes.framework import preview_router
from courseport.routes.framework import router as framework_router
from courseport.services.job_context import JobContext

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    context = JobContext.create(AsyncSessionLocal)
    # Plugins shipped inside the framework checkout count as installed
    await context.plugins.register_framework_plugins()
    await context.start()
    app.state.job_context = context
    yield


def create_app(job_context: JobContext | None = None) -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Builds and imports e-learning course packages",
        debug=settings.debug,
        version=settings.app_version,
        lifespan=None if job_context else lifespan,
    )
    if job_context is not None:
        app.state.job_context = job_context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(framework_router, prefix="/api/adapt", tags=["Framework"])
    app.include_router(preview_router, prefix="/adapt/preview", tags=["Preview"])
    register_exception_handlers(app)

    if settings.debug:
        logger.info(f"Running in {settings.environment} mode")
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
