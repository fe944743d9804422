from __future__ import annotations

"""
On-disk layout of the workspace node.

    <hostRoot>/<userId>/                       user root
    <hostRoot>/<userId>/workspace-meta.json    workspace record (host port, container)
    <hostRoot>/<userId>/run/current.json       RunMeta of the most recent run
    <hostRoot>/<userId>/run/dev.pid            pid of the most recent run
    <hostRoot>/<userId>/run/run-<op>-<appId>-<epochMillis>.log
    <hostRoot>/<userId>[/<appsDirName>]/<appId>/...   app files

All functions here only build paths; none of them touch the filesystem.
"""

import posixpath
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional

from ws_node.app.config import sanitize_host_root
from ws_node.app.errors import InvalidArgument

__all__ = [
    "LOG_OPS",
    "LogName",
    "WorkspaceLayout",
    "log_file_name",
    "parse_log_file_name",
    "resolve_safe_path",
    "normalize_rel_path",
]

RUN_DIR_NAME = "run"
RUN_META_FILE = "current.json"
PID_FILE = "dev.pid"
WORKSPACE_META_FILE = "workspace-meta.json"

LOG_OPS = ("build", "install", "start")

_LOG_NAME_RE = re.compile(r"^run-(?P<op>[a-z]+)-(?P<app>\d+)-(?P<ts>[^-]+)\.log$")


def _require_id(value: object, name: str) -> str:
    if value is None:
        raise InvalidArgument(f"{name} must not be empty")
    s = str(value).strip()
    if not s:
        raise InvalidArgument(f"{name} must not be empty")
    if "/" in s or "\\" in s or s in (".", ".."):
        raise InvalidArgument(f"{name} is malformed: {s!r}")
    return s


@dataclass(frozen=True)
class WorkspaceLayout:
    """
    Maps (userId, appId) to canonical host paths. Pure and total over valid input.
    """

    host_root: str
    apps_dir_name: str = ""

    def root(self) -> Path:
        root = sanitize_host_root(self.host_root)
        if not root:
            raise InvalidArgument("workspace host root is not configured (WORKSPACE_HOST_ROOT)")
        return Path(root)

    def user_root(self, user_id: object) -> Path:
        return self.root() / _require_id(user_id, "userId")

    def app_dir(self, user_id: object, app_id: object) -> Path:
        base = self.user_root(user_id)
        if self.apps_dir_name:
            base = base / self.apps_dir_name
        return base / _require_id(app_id, "appId")

    def run_dir(self, user_id: object) -> Path:
        return self.user_root(user_id) / RUN_DIR_NAME

    def run_meta_path(self, user_id: object) -> Path:
        return self.run_dir(user_id) / RUN_META_FILE

    def pid_path(self, user_id: object) -> Path:
        return self.run_dir(user_id) / PID_FILE

    def workspace_meta_path(self, user_id: object) -> Path:
        return self.user_root(user_id) / WORKSPACE_META_FILE

    def run_log_path(self, user_id: object, log_path: Optional[str]) -> Optional[Path]:
        """
        Resolve a RunMeta.logPath against the run dir. Only the file name is used:
        the supervisor records container paths (/workspace/run/...) that mean
        nothing on the host.
        """
        if log_path is None or not log_path.strip():
            return None
        name = PurePosixPath(log_path.strip().replace("\\", "/")).name
        if not name or name in (".", ".."):
            return None
        return self.run_dir(user_id) / name


# --------------------------
# Log file naming
# --------------------------

@dataclass(frozen=True)
class LogName:
    op: str
    app_id: str
    timestamp: int


def log_file_name(op: str, app_id: object, epoch_millis: int) -> str:
    return f"run-{op.strip().lower()}-{app_id}-{int(epoch_millis)}.log"


def parse_log_file_name(name: str) -> Optional[LogName]:
    """
    Parse run-<op>-<appId>-<epochMillis>.log; None for anything else,
    including a non-numeric timestamp suffix.
    """
    m = _LOG_NAME_RE.match(name or "")
    if not m:
        return None
    try:
        ts = int(m.group("ts"))
    except ValueError:
        return None
    return LogName(op=m.group("op"), app_id=m.group("app"), timestamp=ts)


# --------------------------
# App-relative paths
# --------------------------

def resolve_safe_path(root: Path, rel: Optional[str], allow_empty: bool = False) -> Path:
    """
    Resolve a client-supplied relative path inside root.

    Backslashes become slashes and leading slashes are dropped, so "/src/a.ts"
    and "src/a.ts" are the same file. Anything that normalizes outside root is
    rejected.
    """
    if root is None:
        raise InvalidArgument("root must not be empty")
    r = (rel or "").strip().replace("\\", "/").lstrip("/")
    if not allow_empty and r in ("", "."):
        raise InvalidArgument("path must not be empty")
    if "\0" in r:
        raise InvalidArgument("illegal path")

    normalized_root = Path(_normpath(str(root)))
    resolved = Path(_normpath(str(normalized_root / r))) if r else normalized_root
    if resolved != normalized_root and normalized_root not in resolved.parents:
        raise InvalidArgument("illegal path (outside of the app directory)")
    return resolved


def normalize_rel_path(root: Path, p: Path) -> str:
    try:
        rel = Path(_normpath(str(p))).relative_to(Path(_normpath(str(root))))
    except ValueError:
        return "."
    s = rel.as_posix()
    return "." if s in ("", ".") else s


def _normpath(p: str) -> str:
    # lexical only; symlinks are not resolved
    return posixpath.normpath(p)
