from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import docker
from dotenv import load_dotenv

# Load environment from optional .env file before instantiating settings
_SERVER_ENV_FILE = os.getenv("WS_NODE_ENV_FILE", ".env.server")
if _SERVER_ENV_FILE and Path(_SERVER_ENV_FILE).is_file():
    load_dotenv(_SERVER_ENV_FILE)

from ws_node.app.config import ServerConfig, get_settings

settings = get_settings()
from ws_node.app.errors import install_exception_handlers
from ws_node.app.logging_setup import APP_LOGGER_NAME, initialize_from_env
from ws_node.app.routers import files, git, internal, realtime
from ws_node.app.workspaces.core import ActivityTracker
from ws_node.app.workspaces.lifecycle import janitor_loop
from ws_node.app.workspaces.paths import WorkspaceLayout
from ws_node.app.workspaces.reclaimer import DirectoryReclaimer
from ws_node.app.workspaces.run_meta import RunMetaStore, WorkspaceMetaStore
from ws_node.app.workspaces.supervisor import DockerSupervisor, RunFilesSupervisor, RunSupervisor

logger = logging.getLogger(APP_LOGGER_NAME)
_LOG_PATH = initialize_from_env(service_name=APP_LOGGER_NAME)
logger.info("workspace node logging to file: %s", _LOG_PATH)


def build_supervisor(cfg: ServerConfig, store: RunMetaStore) -> RunSupervisor:
    """
    Pick the supervisor adapter from WORKSPACE_SUPERVISOR.

    The docker backend fails fast when the daemon is unreachable; the node is
    useless for process control without it.
    """
    if cfg.supervisor_backend != "docker":
        return RunFilesSupervisor(store)
    try:
        client = docker.from_env(timeout=cfg.docker_client_timeout)
        client.ping()
    except Exception as e:
        logger.critical(
            "Docker is not available but WORKSPACE_SUPERVISOR=docker. "
            "Ensure Docker Engine is running and accessible. Details: %s", e,
        )
        raise SystemExit(1)
    return DockerSupervisor(client, cfg, store)


def init_state(app: FastAPI, cfg: ServerConfig) -> None:
    """
    Create the per-application services the routers resolve from app.state.
    """
    layout = WorkspaceLayout(cfg.host_root, cfg.apps_dir_name)
    store = RunMetaStore(layout)
    app.state.layout = layout
    app.state.run_meta_store = store
    app.state.workspace_meta_store = WorkspaceMetaStore(layout)
    app.state.activity = ActivityTracker()
    app.state.reclaimer = DirectoryReclaimer(cfg.reclaim_max_attempts, cfg.reclaim_backoff_ms)
    app.state.supervisor = build_supervisor(cfg, store)
    if not hasattr(app.state, "git"):
        app.state.git = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not settings.host_root:
        logger.warning("WORKSPACE_HOST_ROOT is not set; file and log routes will answer 400")
    init_state(app, settings)

    # Start background janitor
    if getattr(app.state, "janitor_task", None) is None:
        app.state.janitor_task = asyncio.create_task(
            janitor_loop(settings, app.state.activity, app.state.supervisor, app.state.layout)
        )
    logger.info(
        "workspace node startup complete: hostRoot=%s supervisor=%s", settings.host_root, settings.supervisor_backend,
    )

    try:
        yield
    finally:
        task: Optional[asyncio.Task] = getattr(app.state, "janitor_task", None)
        if task is not None:
            # Cancel without awaiting to avoid cross-event-loop issues under TestClient teardown
            task.cancel()
            app.state.janitor_task = None
        logger.info("workspace node shutdown complete.")


app = FastAPI(
    title="Workspace Node",
    version=settings.service_version,
    description="Per-host workspace node: run logs, app files, preview port lookup and app cleanup.",
    lifespan=lifespan,
)

# CORS: permissive by default; lock down in deployment via env vars if needed
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.janitor_task = None
install_exception_handlers(app)

app.include_router(realtime.router, tags=["realtime"])
app.include_router(files.router, tags=["files"])
app.include_router(git.router, tags=["git"])
app.include_router(internal.router, tags=["internal"])


@app.get("/health")
async def health() -> dict:
    """
    Basic health probe; intentionally unauthenticated.
    """
    return {
        "status": "ok",
        "service": "workspace-node",
        "version": app.version,
    }
