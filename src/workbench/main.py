"""
Main FastAPI Application Entry Point

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. ORPHAN RUN CLEANUP ON STARTUP (Feature: orphan-cleanup)
   - cleanup_orphaned_runs() called during lifespan startup
   - Runs left "pending"/"running" by a crash or restart are marked failed
   - Their evaluations are marked failed too, so no run polls forever

2. GRACEFUL SHUTDOWN (Feature: run-lifecycle)
   - Active background runs are cancelled on shutdown

==============================================================================
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
import logging
from .controllers import router
from . import config
from .sqlite_service import get_db_service
from .evaluator_service import get_evaluator_service

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ==============================================================================
# LIFESPAN MANAGER (Feature: orphan-cleanup)
# ==============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: fail orphaned runs. Shutdown: cancel active run tasks."""
    logger.info("Starting API server...")
    db = get_db_service()
    evaluator = get_evaluator_service(db)
    try:
        await evaluator.cleanup_orphaned_runs()
    except Exception as e:
        logger.error(f"Error during startup: {str(e)}")

    yield

    await evaluator.shutdown()
    logger.info("API server shutting down...")


app = FastAPI(title=config.API_TITLE, docs_url="/api/docs", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/")
async def root():
    return {"message": "Prompt Workbench API", "docs": "/api/docs"}


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("src.workbench.main:app", host=config.API_HOST, port=config.API_PORT, reload=config.API_DEBUG)
