from __future__ import annotations

"""
Run metadata (run/current.json) and workspace metadata (workspace-meta.json) stores.

Both records are advisory: a missing, blank or corrupt file reads as "absent"
rather than an error, because the files are rewritten by an external supervisor
at any time and a half-written record must never fail a log request.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ws_node.app.errors import IOFailure
from ws_node.app.models import RunMeta, RunType, WorkspaceMeta
from ws_node.app.workspaces.paths import WorkspaceLayout

__all__ = [
    "RunMetaStore",
    "WorkspaceMetaStore",
    "is_current_build_finished",
    "write_json_atomic",
]

logger = logging.getLogger("workspace_node")

_M = TypeVar("_M", bound=BaseModel)


def _read_model(path: Path, model: Type[_M]) -> Optional[_M]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.debug("metadata unreadable: file=%s err=%s", path, e)
        return None
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            return None
        return model.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.debug("metadata corrupt (ignored): file=%s err=%s", path, e)
        return None


def write_json_atomic(path: Path, payload: dict) -> None:
    """
    Replace path with payload in one rename so readers never observe a partial record.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False)
        os.replace(tmp, path)
    except OSError:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class RunMetaStore:
    """
    Single-record store of the most recent run per user.

    The record is overwritten wholesale on each run and never partially mutated.
    """

    def __init__(self, layout: WorkspaceLayout) -> None:
        self.layout = layout

    def load(self, user_id: int) -> Optional[RunMeta]:
        return _read_model(self.layout.run_meta_path(user_id), RunMeta)

    def save(self, user_id: int, meta: RunMeta) -> None:
        path = self.layout.run_meta_path(user_id)
        try:
            write_json_atomic(path, meta.model_dump(by_alias=True))
        except OSError as e:
            raise IOFailure(f"failed to write run metadata: {e}") from e

    def clear(self, user_id: int) -> None:
        """
        Remove the run record and pid file. Missing files are fine.
        """
        for p in (self.layout.pid_path(user_id), self.layout.run_meta_path(user_id)):
            try:
                p.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise IOFailure(f"failed to clear run file {p.name}: {e}") from e


class WorkspaceMetaStore:
    """
    Read-only view of workspace-meta.json; provisioning writes it, the node only reads.
    """

    def __init__(self, layout: WorkspaceLayout) -> None:
        self.layout = layout

    def load(self, user_id: int) -> Optional[WorkspaceMeta]:
        return _read_model(self.layout.workspace_meta_path(user_id), WorkspaceMeta)

    def host_port(self, user_id: int) -> Optional[int]:
        meta = self.load(user_id)
        if meta is None or meta.host_port is None or meta.host_port <= 0:
            return None
        return meta.host_port


def is_current_build_finished(meta: Optional[RunMeta], app_id: Optional[int]) -> bool:
    """
    True only for a BUILD record of this app that has finishedAt or exitCode set.
    """
    if meta is None or app_id is None:
        return False
    if meta.app_id is None or meta.app_id != app_id:
        return False
    if meta.type != RunType.BUILD.value:
        return False
    return meta.is_finished()
