"""
Rotating file logging for the workspace node (ws_node).

The node is a long-running host daemon that mostly does housekeeping nobody
watches live (reclaiming app directories, idle sweeps, proxy port lookups), so
logs ALWAYS go to a file, with a fallback chain of writable locations. The file
handler captures DEBUG and above; a console handler is attached at startup so
INFO lines are visible under uvicorn/systemd.

Usage (once, before the FastAPI app is created):

    from ws_node.app.logging_setup import initialize_from_env
    log_path = initialize_from_env(service_name="workspace_node")

Environment variables (optional):
- WS_LOG_FILE: Absolute path to the desired log file.
- WS_LOG_DIR:  Directory where the log file should be created.
- WS_LOG_NAME: File name to use (default: "<service_name>.log").
- WS_LOG_MAX_BYTES: Max file size before rotate (default: 10485760 = 10MB).
- WS_LOG_BACKUP_COUNT: Number of rotated files to keep (default: 10).
- WS_LOG_LEVEL: Base log level for app logs (default: INFO).
- LOG_LEVEL: Fallback for WS_LOG_LEVEL when unset.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple, Union

__all__ = [
    "APP_LOGGER_NAME",
    "initialize_from_env",
    "setup_logging",
    "configure_third_party_loggers",
]

APP_LOGGER_NAME = "workspace_node"

_DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
_DEFAULT_BACKUP_COUNT = 10
_DEFAULT_FORMAT_FILE = "%(asctime)s %(levelname)s [ws_node] %(name)s pid=%(process)d %(filename)s:%(lineno)d - %(message)s"
_DEFAULT_FORMAT_CONSOLE = "%(asctime)s %(levelname)s [ws_node] %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Files already attached to the root logger in this process
_ATTACHED_LOG_PATHS: set[str] = set()


def _coerce_level(level: Optional[Union[int, str]], default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        return getattr(logging, level.strip().upper(), default)
    return default


def _candidate_paths(
    service_name: str,
    log_dir: Optional[Union[str, Path]],
    log_file_name: Optional[str],
) -> List[Path]:
    """
    Prioritized list of candidate log file paths.

    Order: WS_LOG_FILE, explicit log_dir, WS_LOG_DIR, <host_root>/.node-logs,
    ~/.workspace_node/logs, <tmp>/workspace_node/logs.
    """
    candidates: List[Path] = []

    env_file = os.getenv("WS_LOG_FILE")
    if env_file:
        candidates.append(Path(env_file).expanduser())

    file_name = (log_file_name or os.getenv("WS_LOG_NAME") or f"{service_name}.log").strip()

    if log_dir:
        candidates.append(Path(log_dir).expanduser() / file_name)
    env_dir = os.getenv("WS_LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir).expanduser() / file_name)

    # Next to the workspaces themselves: operators already back up / monitor this disk
    host_root = (os.getenv("WORKSPACE_HOST_ROOT") or "").strip().strip("'\"")
    if host_root:
        candidates.append(Path(host_root) / ".node-logs" / file_name)

    candidates.append(Path.home() / ".workspace_node" / "logs" / file_name)
    candidates.append(Path(tempfile.gettempdir()) / "workspace_node" / "logs" / file_name)
    return candidates


def _ensure_writable_file(path: Path) -> Tuple[bool, Optional[str]]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, mode="a", encoding="utf-8"):
            pass
        return True, None
    except OSError as e:
        return False, f"{e.__class__.__name__}: {e}"


def _pick_log_path(
    service_name: str,
    log_dir: Optional[Union[str, Path]],
    log_file_name: Optional[str],
) -> Path:
    """
    Choose the first writable candidate. Raises RuntimeError if none are writable.
    """
    attempts: List[Tuple[str, str]] = []
    for candidate in _candidate_paths(service_name, log_dir, log_file_name):
        ok, reason = _ensure_writable_file(candidate)
        if ok:
            return candidate
        attempts.append((str(candidate), reason or "unknown error"))

    reasons = "; ".join(f"{p} -> {r}" for p, r in attempts) or "no candidates were attempted"
    raise RuntimeError(f"Failed to initialize ws_node file logging (no writable paths). Attempts: {reasons}")


def configure_third_party_loggers(base_level: int) -> None:
    """
    Tame noisy third-party libraries while allowing escalation via DEBUG when needed.
    """
    lib_level = logging.INFO if base_level <= logging.DEBUG else logging.WARNING
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi", "httpx", "docker"):
        logging.getLogger(name).setLevel(lib_level)

    # uvicorn.access would otherwise log every nginx auth_request sub-request
    if base_level > logging.DEBUG:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    for name in ("urllib3.connectionpool", "asyncio", "concurrent.futures"):
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(
    service_name: str = APP_LOGGER_NAME,
    *,
    level: Optional[Union[int, str]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    log_file_name: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    add_console: bool = False,
) -> Path:
    """
    Configure root logging with a rotating file handler that always writes to disk.

    Returns:
        Path to the active log file.

    Raises:
        RuntimeError if no writable log path could be created.
    """
    base_level = _coerce_level(
        level if level is not None else (os.getenv("WS_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO"),
        default=logging.INFO,
    )
    bytes_limit = int(os.getenv("WS_LOG_MAX_BYTES", str(max_bytes if max_bytes is not None else _DEFAULT_MAX_BYTES)))
    keep_files = int(os.getenv("WS_LOG_BACKUP_COUNT", str(backup_count if backup_count is not None else _DEFAULT_BACKUP_COUNT)))

    log_path = _pick_log_path(service_name, log_dir, log_file_name)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    target_key = str(Path(log_path).resolve())
    already_attached = any(
        getattr(h, "baseFilename", None) and str(Path(getattr(h, "baseFilename")).resolve()) == target_key
        for h in root.handlers
    )
    if not already_attached and target_key not in _ATTACHED_LOG_PATHS:
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path,
            maxBytes=max(1, bytes_limit),
            backupCount=max(1, keep_files),
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT_FILE, datefmt=_DEFAULT_DATEFMT))
        root.addHandler(file_handler)
        _ATTACHED_LOG_PATHS.add(target_key)

    if add_console:
        has_console = any(
            isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) in (sys.stdout, sys.stderr)
            for h in root.handlers
        )
        if not has_console:
            ch = logging.StreamHandler(stream=sys.stdout)
            ch.setLevel(base_level)
            ch.setFormatter(logging.Formatter(_DEFAULT_FORMAT_CONSOLE, datefmt=_DEFAULT_DATEFMT))
            root.addHandler(ch)

    logging.getLogger(APP_LOGGER_NAME).setLevel(base_level)
    configure_third_party_loggers(base_level)

    logging.getLogger(APP_LOGGER_NAME).info(
        "Logging initialized: file=%s level=%s maxBytes=%s backup=%s",
        str(log_path),
        logging.getLevelName(base_level),
        bytes_limit,
        keep_files,
    )
    return log_path


def initialize_from_env(service_name: str = APP_LOGGER_NAME) -> Path:
    """
    Startup initializer: file handler plus a console handler, settings from env.
    """
    return setup_logging(service_name=service_name, add_console=True)
