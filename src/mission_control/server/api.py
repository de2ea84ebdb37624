"""FastAPI web server for the Mission Control workflow board."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from ..errors import WorkflowError
from ..workflow.engine import WorkflowEngine
from .workflow_api import create_workflow_router


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Mission Control",
        description="Task workflow engine for human and agent teams",
        version="1.0.0",
    )

    # Enable CORS for development
    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    engines: dict[Path, WorkflowEngine] = {}
    engines_lock = threading.Lock()

    def _get_project_dir(project_dir_param: Optional[str] = None) -> Path:
        """Get project directory from parameter or default."""
        if project_dir_param:
            return Path(project_dir_param)
        if app.state.default_project_dir:
            return app.state.default_project_dir
        return Path.cwd()

    def _get_engine(project_dir_param: Optional[str] = None) -> WorkflowEngine:
        """One engine per project, so requests share its in-process lock."""
        key = _get_project_dir(project_dir_param).resolve()
        with engines_lock:
            engine = engines.get(key)
            if engine is None:
                engine = WorkflowEngine.for_project(key)
                engines[key] = engine
                logger.info("Opened workflow store at {}", engine.store.path)
            return engine

    app.state.get_engine = _get_engine

    @app.exception_handler(WorkflowError)
    async def _workflow_error(request: Request, exc: WorkflowError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
        else:
            logger.debug("{} {} rejected: {}", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Mission Control",
            "version": "1.0.0",
            "status": "running",
        }

    app.include_router(create_workflow_router(_get_engine))

    return app


# Create default app instance
app = create_app()
