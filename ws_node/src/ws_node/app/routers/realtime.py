from __future__ import annotations

"""
Realtime log router: build / install / preview logs of a user's app.

The UI polls these endpoints; every call counts as activity for the user.
Responses are never cached by intermediaries (Cache-Control: no-cache,
X-Accel-Buffering: no).
"""

import asyncio
from pathlib import Path
from typing import Iterator, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import StreamingResponse

from ws_node.app.deps import (
    enforce_api_key,
    get_activity_tracker,
    get_layout,
    get_run_meta_store,
)
from ws_node.app.errors import NotFound
from ws_node.app.models import LogResponse, LogType, OkResult, RunMeta
from ws_node.app.workspaces.core import ActivityTracker
from ws_node.app.workspaces.logs import (
    build_log_view,
    clear_run_log,
    iter_log_bytes,
    normalize_log_type,
    op_for_log_type,
    resolve_log_file,
)
from ws_node.app.workspaces.paths import WorkspaceLayout
from ws_node.app.workspaces.run_meta import RunMetaStore

router = APIRouter(prefix="/workspace/realtime", dependencies=[Depends(enforce_api_key)])

LOG_FORMAT_VERSION = "json-v2"

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _resolve_existing_log(
    layout: WorkspaceLayout,
    store: RunMetaStore,
    user_id: int,
    app_id: int,
    log_type: LogType,
) -> Tuple[Path, Optional[RunMeta]]:
    # One RunMeta snapshot drives both discovery and the finished check
    meta = store.load(user_id)
    path = resolve_log_file(layout, user_id, app_id, op_for_log_type(log_type), meta)
    if path is None or not path.is_file():
        raise NotFound("log file not found")
    return path, meta


def _load_log_view(
    layout: WorkspaceLayout,
    store: RunMetaStore,
    user_id: int,
    app_id: int,
    log_type: LogType,
    tail_bytes: int,
) -> LogResponse:
    path, meta = _resolve_existing_log(layout, store, user_id, app_id, log_type)
    return build_log_view(log_type, path, meta, app_id, tail_bytes)


def _open_log_stream(
    layout: WorkspaceLayout,
    store: RunMetaStore,
    user_id: int,
    app_id: int,
    log_type: LogType,
    tail_bytes: int,
) -> Iterator[bytes]:
    path, _ = _resolve_existing_log(layout, store, user_id, app_id, log_type)
    return iter_log_bytes(path, tail_bytes)


@router.get(
    "/log",
    response_model=LogResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def get_log(
    response: Response,
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    type: Optional[str] = Query(None, description="BUILD | INSTALL | PREVIEW (START/DEV alias PREVIEW)"),
    tail_bytes: int = Query(0, alias="tailBytes", ge=0),
    layout: WorkspaceLayout = Depends(get_layout),
    store: RunMetaStore = Depends(get_run_meta_store),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> LogResponse:
    activity.touch(user_id)
    log_type = normalize_log_type(type)
    view = await asyncio.to_thread(_load_log_view, layout, store, user_id, app_id, log_type, tail_bytes)
    response.headers.update(_NO_CACHE_HEADERS)
    response.headers["X-WS-Log-Version"] = LOG_FORMAT_VERSION
    return view


@router.get("/log/raw")
async def get_log_raw(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    type: Optional[str] = Query(None),
    tail_bytes: int = Query(0, alias="tailBytes", ge=0),
    layout: WorkspaceLayout = Depends(get_layout),
    store: RunMetaStore = Depends(get_run_meta_store),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> StreamingResponse:
    """
    Plain-text variant for large logs; no BUILD gating, tailBytes=0 streams the whole file.
    """
    activity.touch(user_id)
    log_type = normalize_log_type(type)
    chunks = await asyncio.to_thread(_open_log_stream, layout, store, user_id, app_id, log_type, tail_bytes)
    return StreamingResponse(chunks, media_type="text/plain; charset=utf-8", headers=dict(_NO_CACHE_HEADERS))


@router.post("/log/clear", response_model=OkResult)
async def clear_log(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    type: Optional[str] = Query(None),
    layout: WorkspaceLayout = Depends(get_layout),
    store: RunMetaStore = Depends(get_run_meta_store),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> OkResult:
    activity.touch(user_id)
    op = op_for_log_type(normalize_log_type(type))
    await asyncio.to_thread(clear_run_log, layout, store, user_id, app_id, op)
    return OkResult()
