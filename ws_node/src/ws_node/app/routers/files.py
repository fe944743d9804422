from __future__ import annotations

"""
Files router: text editing and file management inside one app directory.

Design:
- Every path is relative to <hostRoot>/<userId>[/<appsDirName>]/<appId>.
- Saves go through the optimistic write guard (expectedLastModifiedMs).
- Blocking filesystem work runs in a worker thread.
- Binary uploads are multipart (form field "file"); zip exports are streamed.
- API key auth enforced via dependency.
"""

import asyncio
import os
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import quote

from fastapi import APIRouter, Body, Depends, File, Query, UploadFile
from fastapi.responses import StreamingResponse

from ws_node.app.config import ServerConfig
from ws_node.app.deps import enforce_api_key, get_activity_tracker, get_layout, get_settings
from ws_node.app.models import (
    FileReadResult,
    FileTreeResult,
    FileWritePayload,
    OkResult,
    PathPayload,
    RenamePayload,
)
from ws_node.app.workspaces.core import ActivityTracker
from ws_node.app.workspaces.fs_utils import (
    create_directory,
    delete_path,
    ensure_dir,
    iter_app_zip,
    list_file_tree,
    move_path,
    read_file_content,
    resolve_download,
    save_uploaded_file,
    write_file_content,
)
from ws_node.app.workspaces.paths import WorkspaceLayout

router = APIRouter(prefix="/workspace/files", dependencies=[Depends(enforce_api_key)])


def _app_root(layout: WorkspaceLayout, user_id: int, app_id: int, create: bool = False) -> Path:
    root = layout.app_dir(user_id, app_id)
    if create:
        ensure_dir(root)
    return root


def _attachment(filename: str) -> str:
    """
    Content-Disposition for a download. Header values must stay Latin-1, so
    non-ASCII names travel in filename* (RFC 5987) with an ASCII fallback.
    """
    fallback = "".join(ch if 32 <= ord(ch) < 127 else "_" for ch in filename)
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


@router.get("/content", response_model=FileReadResult)
async def read_file(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    path: str = Query(..., min_length=1),
    layout: WorkspaceLayout = Depends(get_layout),
    settings: ServerConfig = Depends(get_settings),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> FileReadResult:
    activity.touch(user_id)
    root = _app_root(layout, user_id, app_id)
    return await asyncio.to_thread(
        read_file_content, root, path,
        user_id=user_id, app_id=app_id, max_bytes=settings.max_text_file_bytes,
    )


@router.post("/content", response_model=FileReadResult)
async def write_file(
    payload: FileWritePayload = Body(...),
    layout: WorkspaceLayout = Depends(get_layout),
    settings: ServerConfig = Depends(get_settings),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> FileReadResult:
    """
    Save text content.

    expectedLastModifiedMs must match the file's current lastModifiedMs, or be
    0/-1 when the file must not exist yet; a mismatch answers 409 and the
    client has to reload. forceWrite skips the check.
    """
    activity.touch(payload.user_id)
    root = _app_root(layout, payload.user_id, payload.app_id, create=True)
    return await asyncio.to_thread(
        write_file_content,
        root,
        payload.path,
        payload.content,
        user_id=payload.user_id,
        app_id=payload.app_id,
        expected_last_modified_ms=payload.expected_last_modified_ms,
        force_write=payload.force_write,
        create_parents=payload.create_parents,
        max_bytes=settings.max_text_file_bytes,
    )


@router.post("/mkdir", response_model=OkResult)
async def mkdir(
    payload: PathPayload = Body(...),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> OkResult:
    activity.touch(payload.user_id)
    root = _app_root(layout, payload.user_id, payload.app_id, create=True)
    create_parents = True if payload.create_parents is None else payload.create_parents
    await asyncio.to_thread(create_directory, root, payload.path, create_parents)
    return OkResult()


@router.post("/delete", response_model=OkResult)
async def delete(
    payload: PathPayload = Body(...),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> OkResult:
    activity.touch(payload.user_id)
    root = _app_root(layout, payload.user_id, payload.app_id)
    # deleting something already gone is not an error
    await asyncio.to_thread(delete_path, root, payload.path)
    return OkResult()


@router.post("/move", response_model=OkResult)
async def move(
    payload: RenamePayload = Body(...),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> OkResult:
    activity.touch(payload.user_id)
    root = _app_root(layout, payload.user_id, payload.app_id, create=True)
    await asyncio.to_thread(move_path, root, payload.from_path, payload.to_path, bool(payload.overwrite))
    return OkResult()


@router.get("/tree", response_model=FileTreeResult)
async def tree(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    path: Optional[str] = Query(None),
    max_depth: Optional[int] = Query(None, alias="maxDepth"),
    max_entries: Optional[int] = Query(None, alias="maxEntries"),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> FileTreeResult:
    activity.touch(user_id)
    root = _app_root(layout, user_id, app_id)
    rel, depth, limit, nodes = await asyncio.to_thread(list_file_tree, root, path, max_depth, max_entries)
    return FileTreeResult(
        user_id=user_id,
        app_id=app_id,
        root_path=rel,
        max_depth=depth,
        max_entries=limit,
        nodes=nodes,
    )


@router.get("/download-file")
async def download_file(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    path: str = Query(..., min_length=1),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> StreamingResponse:
    activity.touch(user_id)
    file = resolve_download(_app_root(layout, user_id, app_id), path)
    headers = {"Content-Disposition": _attachment(os.path.basename(file) or "file")}

    async def _file_aiter() -> AsyncIterator[bytes]:
        with open(file, "rb") as fh:
            while True:
                chunk = await asyncio.to_thread(fh.read, 64 * 1024)
                if not chunk:
                    break
                yield chunk

    return StreamingResponse(_file_aiter(), media_type="application/octet-stream", headers=headers)


@router.post("/upload-file", response_model=FileReadResult)
async def upload_file(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    path: str = Query(..., min_length=1),
    overwrite: bool = Query(True),
    create_parents: bool = Query(True, alias="createParents"),
    file: UploadFile = File(...),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> FileReadResult:
    activity.touch(user_id)
    root = _app_root(layout, user_id, app_id, create=True)
    try:
        return await asyncio.to_thread(
            save_uploaded_file,
            root,
            path,
            file.file,
            user_id=user_id,
            app_id=app_id,
            overwrite=overwrite,
            create_parents=create_parents,
        )
    finally:
        await file.close()


@router.get("/download-zip")
async def download_zip(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    include_node_modules: bool = Query(False, alias="includeNodeModules"),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
) -> StreamingResponse:
    activity.touch(user_id)
    root = _app_root(layout, user_id, app_id, create=True)
    headers = {
        "Content-Disposition": _attachment(f"app_{app_id}.zip"),
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }
    # sync generator: Starlette iterates it in the threadpool
    return StreamingResponse(iter_app_zip(root, include_node_modules), media_type="application/zip", headers=headers)
