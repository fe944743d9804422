from __future__ import annotations

"""
Pydantic models for the workspace node FastAPI service.

These models define the on-disk records and the API contracts for:
- Run metadata (run/current.json) and workspace metadata (workspace-meta.json)
- Log retrieval
- App file operations (write / path / rename DTOs, tree, read)
- Git collaborator responses
- Internal maintenance responses

Notes:
- Wire names are camelCase (userId, appId, expectedLastModifiedMs); Python
  attributes are snake_case and populated through aliases.
- Paths in file DTOs are relative to the app directory and slash-separated.
"""

import enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# -----------------------
# Enums
# -----------------------

class RunType(str, enum.Enum):
    BUILD = "BUILD"
    INSTALL = "INSTALL"
    START = "START"
    # Legacy record type written by older supervisors (npm run dev)
    DEV = "DEV"


class LogType(str, enum.Enum):
    """
    Log kind as requested by the UI. PREVIEW covers START/DEV runs.
    """
    BUILD = "BUILD"
    INSTALL = "INSTALL"
    PREVIEW = "PREVIEW"


class GitEnsureResult(str, enum.Enum):
    CLONED = "CLONED"
    PULLED = "PULLED"
    ALREADY_UP_TO_DATE = "ALREADY_UP_TO_DATE"
    NEED_COMMIT = "NEED_COMMIT"
    NEED_CONFIRM = "NEED_CONFIRM"
    FAILED = "FAILED"


# -----------------------
# Persisted records
# -----------------------

class RunMeta(_CamelModel):
    """
    Record stored at <hostRoot>/<userId>/run/current.json describing the most recent run.

    finished_at is None while the operation is running; exit_code is set once it terminated.
    Timestamps are epoch seconds as written by the supervisor.
    """
    app_id: Optional[int] = Field(None, alias="appId")
    type: Optional[str] = Field(None, description="BUILD | INSTALL | START | DEV")
    pid: Optional[int] = None
    log_path: Optional[str] = Field(None, alias="logPath")
    started_at: Optional[int] = Field(None, alias="startedAt")
    finished_at: Optional[int] = Field(None, alias="finishedAt")
    exit_code: Optional[int] = Field(None, alias="exitCode")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("type")
    def v_type(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    def is_finished(self) -> bool:
        return self.finished_at is not None or self.exit_code is not None


class WorkspaceMeta(_CamelModel):
    """
    Per-user workspace record (<hostRoot>/<userId>/workspace-meta.json), owned by the provisioner.
    """
    host_port: Optional[int] = Field(None, alias="hostPort")
    container_port: Optional[int] = Field(None, alias="containerPort")
    image: Optional[str] = None
    container_name: Optional[str] = Field(None, alias="containerName")
    created_at: Optional[int] = Field(None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# -----------------------
# Logs
# -----------------------

class LogResponse(_CamelModel):
    is_finish: Optional[bool] = Field(None, alias="isFinish")
    log: str = ""


# -----------------------
# Files
# -----------------------

class FileWritePayload(_CamelModel):
    """
    Write request guarded by optimistic locking.

    expected_last_modified_ms:
      - file exists: must equal its current lastModifiedMs
      - file absent: 0 or -1 means "must not exist"
      - None disables the check (not recommended)
    """
    user_id: int = Field(..., alias="userId")
    app_id: int = Field(..., alias="appId")
    path: str = Field(..., min_length=1, description="Path relative to the app root, '/'-separated")
    content: Optional[str] = Field("", description="UTF-8 text content")
    create_parents: bool = Field(True, alias="createParents")
    force_write: bool = Field(False, alias="forceWrite")
    expected_last_modified_ms: Optional[int] = Field(None, alias="expectedLastModifiedMs")

    @field_validator("create_parents", "force_write", mode="before")
    def v_flags(cls, v: Any, info) -> bool:
        # Explicit JSON null means "use the default"
        if v is None:
            return info.field_name == "create_parents"
        return v


class PathPayload(_CamelModel):
    user_id: int = Field(..., alias="userId")
    app_id: int = Field(..., alias="appId")
    path: str = Field(..., min_length=1)
    create_parents: Optional[bool] = Field(True, alias="createParents")


class RenamePayload(_CamelModel):
    user_id: int = Field(..., alias="userId")
    app_id: int = Field(..., alias="appId")
    from_path: str = Field(..., alias="fromPath", min_length=1)
    to_path: str = Field(..., alias="toPath", min_length=1)
    overwrite: Optional[bool] = False


class FileReadResult(_CamelModel):
    user_id: int = Field(..., alias="userId")
    app_id: int = Field(..., alias="appId")
    path: str
    content: Optional[str] = None
    size: Optional[int] = None
    last_modified_ms: Optional[int] = Field(None, alias="lastModifiedMs")


class FileNode(_CamelModel):
    name: str
    path: str
    type: str = Field(..., description="DIR or FILE")
    size: Optional[int] = None
    last_modified_ms: Optional[int] = Field(None, alias="lastModifiedMs")
    children: Optional[List["FileNode"]] = None


class FileTreeResult(_CamelModel):
    user_id: int = Field(..., alias="userId")
    app_id: int = Field(..., alias="appId")
    root_path: str = Field(..., alias="rootPath")
    max_depth: int = Field(..., alias="maxDepth")
    max_entries: int = Field(..., alias="maxEntries")
    nodes: List[FileNode] = Field(default_factory=list)


class OkResult(BaseModel):
    ok: bool = True


# -----------------------
# Git collaborator
# -----------------------

class GitStatusResponse(_CamelModel):
    git_repo: bool = Field(False, alias="gitRepo")
    dirty: bool = False
    branch: Optional[str] = None
    commit_short: Optional[str] = Field(None, alias="commitShort")
    remote_url: Optional[str] = Field(None, alias="remoteUrl")
    message: Optional[str] = None


class GitEnsureResponse(_CamelModel):
    result: GitEnsureResult
    branch: Optional[str] = None
    commit_short: Optional[str] = Field(None, alias="commitShort")
    message: Optional[str] = None


# -----------------------
# Internal maintenance
# -----------------------

class AppCleanupResponse(_CamelModel):
    user_id: int = Field(..., alias="userId")
    app_id: int = Field(..., alias="appId")
    run_stopped: Optional[bool] = Field(None, alias="runStopped")
    logs_deleted: int = Field(0, alias="logsDeleted")
    dir_outcome: str = Field(..., alias="dirOutcome")
    quarantine_path: Optional[str] = Field(None, alias="quarantinePath")
    warnings: List[str] = Field(default_factory=list)


class OrphanCleanupPayload(_CamelModel):
    """App ids the control plane still has; everything else on disk is reclaimed."""

    existing_app_ids: List[int] = Field(..., alias="existingAppIds")


class OrphanCleanupResponse(_CamelModel):
    cleaned_app_dirs: int = Field(0, alias="cleanedAppDirs")
    cleaned_run_logs: int = Field(0, alias="cleanedRunLogs")
    message: str = "success"
    warnings: List[str] = Field(default_factory=list)


class ActivitySnapshot(BaseModel):
    last_active_at_ms: Dict[int, int] = Field(default_factory=dict, alias="lastActiveAtMs")

    model_config = ConfigDict(populate_by_name=True)


FileNode.model_rebuild()
