from __future__ import annotations

"""
Internal router: endpoints for nginx and the control plane, not for users.

- GET  /workspace/internal/nginx/port            Port Gate (auth_request target)
- POST /workspace/internal/maintenance/app-deleted  best-effort cleanup of a deleted app
- POST /workspace/internal/maintenance/cleanup-orphaned  reclaim data of apps that no longer exist
- GET  /workspace/internal/activity              activity snapshot (diagnostics)

The port lookup authenticates itself (shared nginx token, or loopback when no
token is configured). The maintenance routes are limited to loopback plus
WORKSPACE_INTERNAL_ALLOWED_IPS.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, Response, status

from ws_node.app.config import ServerConfig
from ws_node.app.deps import (
    enforce_internal_caller,
    get_activity_tracker,
    get_layout,
    get_port_gate,
    get_reclaimer,
    get_run_meta_store,
    get_settings,
    get_supervisor,
    remote_addr,
)
from ws_node.app.models import ActivitySnapshot, AppCleanupResponse, OrphanCleanupPayload, OrphanCleanupResponse
from ws_node.app.workspaces.core import ActivityTracker
from ws_node.app.workspaces.lifecycle import cleanup_orphaned_data, cleanup_workspace_on_app_deleted
from ws_node.app.workspaces.paths import WorkspaceLayout
from ws_node.app.workspaces.ports import PortGate, PortLookupStatus
from ws_node.app.workspaces.reclaimer import DirectoryReclaimer
from ws_node.app.workspaces.run_meta import RunMetaStore
from ws_node.app.workspaces.supervisor import RunSupervisor

router = APIRouter(prefix="/workspace/internal")

logger = logging.getLogger("workspace_node")

_PORT_STATUS = {
    PortLookupStatus.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    PortLookupStatus.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    PortLookupStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


@router.get("/nginx/port", status_code=status.HTTP_204_NO_CONTENT)
async def nginx_port(
    request: Request,
    user_id: Optional[int] = Query(None, alias="userId"),
    query_token: Optional[str] = Query(None, alias="token"),
    settings: ServerConfig = Depends(get_settings),
    gate: PortGate = Depends(get_port_gate),
) -> Response:
    """
    204 with X-WS-Port when the user's workspace has a host port, otherwise
    401/403/404 with an empty body (nginx only looks at the status).
    """
    header_token = request.headers.get(settings.nginx_token_header_name)
    if settings.nginx_token_query_param != "token":
        query_token = request.query_params.get(settings.nginx_token_query_param)
    try:
        result = gate.lookup_port(user_id, header_token, query_token, remote_addr(request))
    except Exception as e:
        logger.warning("nginx port lookup failed: userId=%s err=%s", user_id, e)
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    if result.status == PortLookupStatus.OK:
        return Response(status_code=status.HTTP_204_NO_CONTENT, headers={"X-WS-Port": str(result.port)})
    return Response(status_code=_PORT_STATUS[result.status])


@router.post(
    "/maintenance/app-deleted",
    dependencies=[Depends(enforce_internal_caller)],
    response_model=AppCleanupResponse,
)
async def app_deleted(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    layout: WorkspaceLayout = Depends(get_layout),
    store: RunMetaStore = Depends(get_run_meta_store),
    reclaimer: DirectoryReclaimer = Depends(get_reclaimer),
    supervisor: RunSupervisor = Depends(get_supervisor),
) -> AppCleanupResponse:
    """
    Called after the application record was deleted. Always answers 200; what
    could not be cleaned up is listed in warnings.
    """
    report = await asyncio.to_thread(
        cleanup_workspace_on_app_deleted, layout, store, reclaimer, supervisor, user_id, app_id,
    )
    quarantine = report.reclaim.quarantine_path if report.reclaim is not None else None
    return AppCleanupResponse(
        user_id=user_id,
        app_id=app_id,
        run_stopped=report.run_stopped,
        logs_deleted=report.logs_deleted,
        dir_outcome=report.dir_outcome.value,
        quarantine_path=str(quarantine) if quarantine is not None else None,
        warnings=report.warnings,
    )


@router.post(
    "/maintenance/cleanup-orphaned",
    dependencies=[Depends(enforce_internal_caller)],
    response_model=OrphanCleanupResponse,
)
async def cleanup_orphaned(
    payload: OrphanCleanupPayload = Body(...),
    layout: WorkspaceLayout = Depends(get_layout),
    reclaimer: DirectoryReclaimer = Depends(get_reclaimer),
) -> OrphanCleanupResponse:
    """
    Reclaim app directories and run logs of every appId missing from
    existingAppIds. Answers 200 with counts; failures are listed in warnings.
    """
    report = await asyncio.to_thread(cleanup_orphaned_data, layout, reclaimer, payload.existing_app_ids)
    return OrphanCleanupResponse(
        cleaned_app_dirs=report.cleaned_app_dirs,
        cleaned_run_logs=report.cleaned_run_logs,
        message=report.message,
        warnings=report.warnings,
    )


@router.get("/activity", response_model=ActivitySnapshot, dependencies=[Depends(enforce_internal_caller)])
async def activity_snapshot(
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> ActivitySnapshot:
    return ActivitySnapshot(last_active_at_ms=activity.snapshot())
