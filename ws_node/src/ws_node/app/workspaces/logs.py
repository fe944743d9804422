from __future__ import annotations

"""
Run log discovery and reading.

Discovery:
- BUILD requests first follow RunMeta.logPath when the record belongs to the
  requested app; the record is authoritative when several historical logs exist.
- Otherwise the run dir is scanned (non-recursive) for
  run-<op>-<appId>-<epochMillis>.log and the largest timestamp wins. The scan is
  a point-in-time view: a log created mid-scan may be missed until the next poll.

Reading is pull-based: a tail read returns the last N bytes as of the call,
there is no follow mode.
"""

import logging
from pathlib import Path
from typing import Iterator, Optional

from ws_node.app.errors import InvalidArgument, LogReadError, NotFound
from ws_node.app.models import LogResponse, LogType, RunMeta
from ws_node.app.workspaces.paths import WorkspaceLayout, parse_log_file_name
from ws_node.app.workspaces.run_meta import RunMetaStore, is_current_build_finished

__all__ = [
    "normalize_log_type",
    "op_for_log_type",
    "resolve_log_file",
    "find_latest_log_file",
    "list_run_logs",
    "read_log",
    "iter_log_bytes",
    "build_log_view",
    "clear_run_log",
    "prune_run_logs",
]

logger = logging.getLogger("workspace_node")

_TYPE_ALIASES = {
    "START": LogType.PREVIEW,
    "DEV": LogType.PREVIEW,
    "PREVIEW": LogType.PREVIEW,
    "BUILD": LogType.BUILD,
    "INSTALL": LogType.INSTALL,
}

_OPS = {
    LogType.BUILD: "build",
    LogType.INSTALL: "install",
    LogType.PREVIEW: "start",
}


def normalize_log_type(raw: Optional[str]) -> LogType:
    """
    Map a UI type string to a LogType. Blank means PREVIEW; START and DEV are PREVIEW aliases.
    """
    if raw is None or not raw.strip():
        return LogType.PREVIEW
    key = raw.strip().upper()
    try:
        return _TYPE_ALIASES[key]
    except KeyError:
        raise InvalidArgument(f"unsupported log type: {raw}") from None


def op_for_log_type(log_type: LogType) -> str:
    return _OPS[log_type]


# --------------------------
# Discovery
# --------------------------

def list_run_logs(run_dir: Path, op: Optional[str] = None, app_id: Optional[int] = None) -> list[tuple[Path, int]]:
    """
    (path, timestamp) for every well-formed log in run_dir matching op/app_id.

    Malformed names and non-files are skipped. A missing run dir yields [].
    """
    try:
        entries = list(run_dir.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return []
    out: list[tuple[Path, int]] = []
    for p in entries:
        parsed = parse_log_file_name(p.name)
        if parsed is None:
            continue
        if op is not None and parsed.op != op:
            continue
        if app_id is not None and parsed.app_id != str(app_id):
            continue
        try:
            if not p.is_file():
                continue
        except OSError:
            continue
        out.append((p, parsed.timestamp))
    return out


def find_latest_log_file(layout: WorkspaceLayout, user_id: int, app_id: int, op: str) -> Optional[Path]:
    op = (op or "").strip().lower() or "start"
    best: Optional[Path] = None
    best_ts = -1
    for p, ts in list_run_logs(layout.run_dir(user_id), op=op, app_id=app_id):
        if ts > best_ts:
            best, best_ts = p, ts
    return best


def resolve_log_file(
    layout: WorkspaceLayout,
    user_id: int,
    app_id: int,
    op: str,
    meta: Optional[RunMeta] = None,
) -> Optional[Path]:
    """
    Authoritative log file for (user, app, op), or None when nothing matches.

    meta is only consulted for the build op; callers pass the record they
    already loaded so the same snapshot drives discovery and the finished check.
    """
    if op == "build" and meta is not None and meta.app_id == app_id:
        from_meta = layout.run_log_path(user_id, meta.log_path)
        if from_meta is not None:
            return from_meta
    return find_latest_log_file(layout, user_id, app_id, op)


# --------------------------
# Reading
# --------------------------

def read_log(path: Path, tail_bytes: int = 0) -> str:
    """
    Whole file when tail_bytes <= 0, otherwise the last tail_bytes bytes.

    Bytes are decoded as UTF-8 with replacement, so a tail that starts in the
    middle of a multi-byte character yields a replacement char, not an error.
    """
    try:
        with open(path, "rb") as fh:
            if tail_bytes and tail_bytes > 0:
                size = fh.seek(0, 2)
                start = max(0, size - tail_bytes)
                fh.seek(start)
                data = fh.read(size - start)
            else:
                data = fh.read()
    except FileNotFoundError:
        raise NotFound("log file not found") from None
    except OSError as e:
        raise LogReadError(f"failed to read log: {e}") from e
    return data.decode("utf-8", errors="replace")


def iter_log_bytes(path: Path, tail_bytes: int = 0, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    """
    Stream a snapshot of the log; the byte range is fixed when the file is opened.
    """
    try:
        fh = open(path, "rb")
    except FileNotFoundError:
        raise NotFound("log file not found") from None
    except OSError as e:
        raise LogReadError(f"failed to read log: {e}") from e

    def _gen() -> Iterator[bytes]:
        with fh:
            size = fh.seek(0, 2)
            start = max(0, size - tail_bytes) if tail_bytes and tail_bytes > 0 else 0
            fh.seek(start)
            remaining = size - start
            while remaining > 0:
                chunk = fh.read(min(chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk

    return _gen()


def build_log_view(
    log_type: LogType,
    path: Path,
    meta: Optional[RunMeta],
    app_id: int,
    tail_bytes: int = 0,
) -> LogResponse:
    """
    Apply the serving policy for a resolved log.

    BUILD logs of a still-running build are only ever served as a tail (and as
    an empty string when no tail size was requested); once the build finished
    the whole file is returned regardless of tail_bytes. Other types honour
    tail_bytes directly, 0 meaning the whole file.
    """
    if log_type == LogType.BUILD:
        finished = is_current_build_finished(meta, app_id)
        if finished:
            text = read_log(path, 0)
        elif tail_bytes > 0:
            text = read_log(path, tail_bytes)
        else:
            text = ""
        return LogResponse(is_finish=finished, log=text)
    return LogResponse(log=read_log(path, tail_bytes if tail_bytes > 0 else 0))


# --------------------------
# Maintenance
# --------------------------

def clear_run_log(layout: WorkspaceLayout, store: RunMetaStore, user_id: int, app_id: int, op: str) -> Path:
    """
    Truncate the current log of app_id.

    When a RunMeta exists for another app the request is refused, so a stale UI
    cannot wipe the log of whatever is running now. A corrupt record is ignored.
    """
    meta = store.load(user_id)
    if meta is not None and meta.app_id is not None and meta.app_id != app_id:
        raise InvalidArgument(
            f"another app is running (appId={meta.app_id}); stop it first or pass the running appId"
        )
    target = layout.run_log_path(user_id, meta.log_path) if meta is not None else None
    if target is None:
        target = find_latest_log_file(layout, user_id, app_id, op)
    if target is None:
        raise NotFound("log file not found")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb"):
            pass
    except OSError as e:
        raise LogReadError(f"failed to clear log: {e}") from e
    logger.info("run log cleared: userId=%s appId=%s file=%s", user_id, app_id, target.name)
    return target


def prune_run_logs(run_dir: Path, op: str, keep: int) -> int:
    """
    Keep the newest `keep` logs of one op (all apps together); keep <= 0 disables.

    Returns how many files were deleted. Individual delete failures are logged
    and skipped.
    """
    if keep <= 0:
        return 0
    items = list_run_logs(run_dir, op=(op or "").strip().lower())
    if len(items) <= keep:
        return 0
    items.sort(key=lambda it: it[1], reverse=True)
    deleted = 0
    for p, _ts in items[keep:]:
        try:
            p.unlink()
            deleted += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("prune run log failed: file=%s err=%s", p, e)
    if deleted:
        logger.info("run logs pruned: runDir=%s op=%s keep=%s deleted=%s", run_dir, op, keep, deleted)
    return deleted
