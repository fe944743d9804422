from __future__ import annotations

"""
Git router: thin delegation to the Git collaborator wired on app.state.git.

Clone/pull orchestration lives outside this service; the node only forwards
status and ensure requests with the resolved app directory. Without a
collaborator both routes answer 503.
"""

from pathlib import Path
from typing import Any, Optional, Protocol

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ws_node.app.deps import enforce_api_key, get_activity_tracker, get_git_collaborator, get_layout
from ws_node.app.models import GitEnsureResponse, GitStatusResponse
from ws_node.app.workspaces.core import ActivityTracker
from ws_node.app.workspaces.paths import WorkspaceLayout

router = APIRouter(prefix="/workspace/git", dependencies=[Depends(enforce_api_key)])


class GitCollaborator(Protocol):
    def status(self, user_id: int, app_id: int, app_dir: Path) -> GitStatusResponse: ...

    def ensure(self, user_id: int, app_id: int, app_dir: Path) -> GitEnsureResponse: ...


def _require(git: Optional[Any]) -> GitCollaborator:
    if git is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Git integration is not configured on this node.",
        )
    return git


@router.get("/status", response_model=GitStatusResponse)
async def git_status(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
    git: Optional[Any] = Depends(get_git_collaborator),
) -> GitStatusResponse:
    activity.touch(user_id)
    return _require(git).status(user_id, app_id, layout.app_dir(user_id, app_id))


@router.post("/ensure", response_model=GitEnsureResponse)
async def git_ensure(
    user_id: int = Query(..., alias="userId"),
    app_id: int = Query(..., alias="appId"),
    layout: WorkspaceLayout = Depends(get_layout),
    activity: ActivityTracker = Depends(get_activity_tracker),
    git: Optional[Any] = Depends(get_git_collaborator),
) -> GitEnsureResponse:
    activity.touch(user_id)
    return _require(git).ensure(user_id, app_id, layout.app_dir(user_id, app_id))
