from __future__ import annotations

"""
Shared FastAPI dependencies for the workspace node.

Contents:
- get_settings(): cached accessor for ServerConfig.
- enforce_api_key(): API key authentication dependency for user-facing routes.
- enforce_internal_caller(): source-address guard for /workspace/internal/*.
- Accessors for the per-application services kept on app.state (layout, stores,
  activity tracker, reclaimer, supervisor, git collaborator).

Project policy notes:
- No lazy imports.
- No try/except guards around imports; failures should be explicit.
"""

from typing import Any, Optional

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security.api_key import APIKeyHeader

from ws_node.app.config import ServerConfig, get_settings as _config_get_settings
from ws_node.app.security import is_allowed_internal_caller
from ws_node.app.workspaces.core import ActivityTracker
from ws_node.app.workspaces.paths import WorkspaceLayout
from ws_node.app.workspaces.ports import PortGate
from ws_node.app.workspaces.reclaimer import DirectoryReclaimer
from ws_node.app.workspaces.run_meta import RunMetaStore, WorkspaceMetaStore
from ws_node.app.workspaces.supervisor import RunFilesSupervisor, RunSupervisor


# -------------
# Configuration
# -------------

def get_settings() -> ServerConfig:
    """
    Cached settings accessor. Delegates to the unified ServerConfig provider.
    """
    return _config_get_settings()


# -------------------
# API Key Auth (FastAPI)
# -------------------

api_key_header = APIKeyHeader(name=get_settings().api_key_header_name, auto_error=False)


async def enforce_api_key(
    provided_key: Optional[str] = Security(api_key_header),
    settings: ServerConfig = Depends(get_settings),
) -> None:
    """
    Enforce API key authentication using the configured header.

    - If WORKSPACE_API_KEY or WORKSPACE_API_KEYS are set, requests must provide one of them.
    - If neither is set, authentication is disabled (accept all).
    """
    allowed: set[str] = set()
    if settings.api_key:
        allowed.add(settings.api_key)
    for k in settings.api_keys or []:
        if isinstance(k, str) and k:
            allowed.add(k)
    if not allowed:
        return
    if not provided_key or provided_key not in allowed:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )


def remote_addr(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def enforce_internal_caller(
    request: Request,
    settings: ServerConfig = Depends(get_settings),
) -> None:
    """
    Internal routes answer loopback and WORKSPACE_INTERNAL_ALLOWED_IPS only.
    """
    addr = remote_addr(request)
    if not is_allowed_internal_caller(addr, settings.internal_allowed_ips):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Internal endpoint.")


# --------------------------
# Application services
# --------------------------

def _state(request: Request, name: str) -> Any:
    return getattr(request.app.state, name, None)


def get_layout(request: Request, settings: ServerConfig = Depends(get_settings)) -> WorkspaceLayout:
    layout = _state(request, "layout")
    if layout is None:
        layout = WorkspaceLayout(settings.host_root, settings.apps_dir_name)
    return layout


def get_run_meta_store(request: Request, layout: WorkspaceLayout = Depends(get_layout)) -> RunMetaStore:
    store = _state(request, "run_meta_store")
    return store if store is not None else RunMetaStore(layout)


def get_workspace_meta_store(
    request: Request, layout: WorkspaceLayout = Depends(get_layout)
) -> WorkspaceMetaStore:
    store = _state(request, "workspace_meta_store")
    return store if store is not None else WorkspaceMetaStore(layout)


def get_activity_tracker(request: Request) -> ActivityTracker:
    tracker = _state(request, "activity")
    if tracker is None:
        # First use on an app built without the lifespan (tests, embedding)
        tracker = ActivityTracker()
        request.app.state.activity = tracker
    return tracker


def get_reclaimer(request: Request, settings: ServerConfig = Depends(get_settings)) -> DirectoryReclaimer:
    reclaimer = _state(request, "reclaimer")
    if reclaimer is None:
        reclaimer = DirectoryReclaimer(settings.reclaim_max_attempts, settings.reclaim_backoff_ms)
    return reclaimer


def get_supervisor(request: Request, store: RunMetaStore = Depends(get_run_meta_store)) -> RunSupervisor:
    supervisor = _state(request, "supervisor")
    return supervisor if supervisor is not None else RunFilesSupervisor(store)


def get_port_gate(
    settings: ServerConfig = Depends(get_settings),
    meta_store: WorkspaceMetaStore = Depends(get_workspace_meta_store),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> PortGate:
    return PortGate(meta_store, activity, settings.nginx_auth_token)


def get_git_collaborator(request: Request) -> Any:
    return _state(request, "git")


__all__ = [
    "ServerConfig",
    "get_settings",
    "api_key_header",
    "enforce_api_key",
    "enforce_internal_caller",
    "remote_addr",
    "get_layout",
    "get_run_meta_store",
    "get_workspace_meta_store",
    "get_activity_tracker",
    "get_reclaimer",
    "get_supervisor",
    "get_port_gate",
    "get_git_collaborator",
]
