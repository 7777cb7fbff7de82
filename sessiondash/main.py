"""SessionDash FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessiondash import config
from sessiondash.routers.sessions import sessions_router, branch_session_router

from sessiondash.db import connection
from sessiondash.services import branching
from sessiondash.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("sessiondash")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("SessionDash backend starting up")
    initialize_observability(app)

    # 1. Open the branch arena and run migrations
    manager = await branching.get_branch_manager()
    app.state.branch_manager = manager
    logger.info(f"Serving session logs from {manager.store.projects_dir}")

    yield

    logger.info("SessionDash backend shutting down")
    shutdown_observability(app)
    branching.reset_branch_manager()
    await connection.close_connection()


app = FastAPI(
    title="SessionDash API",
    description="Session log time-travel and status API for the SessionDash dashboard",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the dashboard dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(sessions_router)
app.include_router(branch_session_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "projectsDir": str(config.PROJECTS_DIR),
    }


def run() -> None:
    import uvicorn

    uvicorn.run("sessiondash.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
