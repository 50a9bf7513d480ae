"""
WADM - FastAPI Application
==========================
Creates and configures the FastAPI web application for the host console.

Responsibilities:
    - Create the FastAPI app instance with CORS and metadata
    - Initialize all manager instances (auth, config, terminal)
    - Register REST routes and the terminal WebSocket endpoint
    - Terminate every attached shell on shutdown

The terminal endpoint lives at /api/terminal/ws and takes the bearer
token from the ``token`` query parameter (see protocol.py).
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from wadm import __version__
from wadm.auth import AuthManager
from wadm.config import ConfigManager
from wadm.log import install_token_redaction
from wadm.protocol import TERMINAL_PATH, TOKEN_PARAM
from wadm.routes import create_router
from wadm.terminal import TerminalManager


logger = logging.getLogger(__name__)


def resolve_project_dir(project_dir: str | None = None) -> str:
    """Argument, then $WADM_HOME, then the directory above this package."""
    if project_dir:
        return os.path.abspath(project_dir)
    if os.environ.get("WADM_HOME"):
        return os.path.abspath(os.environ["WADM_HOME"])
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def create_app(
    project_dir: str | None = None,
    shell_factory: Callable | None = None,
) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        project_dir:   Root directory of the WADM installation (config.yaml,
                       data/). Resolved by resolve_project_dir() if None.
        shell_factory: Optional replacement for PtyShell (tests).

    Returns:
        Configured FastAPI application ready to run with uvicorn.
    """
    project_dir = resolve_project_dir(project_dir)
    data_dir = os.path.join(project_dir, "data")
    os.makedirs(data_dir, exist_ok=True)

    install_token_redaction()

    # -- Initialize managers ---------------------------------------------------
    config_manager = ConfigManager(project_dir)
    auth_manager = AuthManager(data_dir)
    terminal_manager = TerminalManager(
        auth_manager, config_manager, shell_factory=shell_factory
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await terminal_manager.close_all()

    # -- Create FastAPI app ----------------------------------------------------
    app = FastAPI(
        title="WADM",
        description="Host administration console with gated terminal access",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # -- CORS middleware -------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Store managers on app state -------------------------------------------
    app.state.project_dir = project_dir
    app.state.config_manager = config_manager
    app.state.auth_manager = auth_manager
    app.state.terminal_manager = terminal_manager

    # -- Register API routes ---------------------------------------------------
    app.include_router(
        create_router(
            auth_manager=auth_manager,
            config_manager=config_manager,
            terminal_manager=terminal_manager,
        )
    )

    # -- Terminal WebSocket endpoint -------------------------------------------
    @app.websocket(TERMINAL_PATH)
    async def terminal_endpoint(
        websocket: WebSocket,
        token: str | None = Query(None, alias=TOKEN_PARAM),
    ):
        """
        Interactive shell over WebSocket, gated by developer mode and the
        bearer token. One shell per connection.
        """
        await terminal_manager.handle(websocket, token)

    logger.info("WADM app created for %s", project_dir)
    return app
