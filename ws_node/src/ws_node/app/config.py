"""
Unified server configuration for the workspace node (ws_node).

This module centralizes:
- Defaults for all server settings
- Loading from environment variables
- Optional .env file hydration (best-effort, only for allowed keys)
- Small derived helpers (host root sanitizing, idle thresholds)

Usage:
    from ws_node.app.config import get_settings

    settings = get_settings()
    print(settings.host_root)

Notes:
- Environment variables always take precedence.
- A minimal, best-effort .env loader will populate process env for allowed keys
  if they are not already present. This keeps side effects contained and
  predictable during tests and local runs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


# ----------------------------
# Helpers: env, parsing, types
# ----------------------------

_ALLOWED_DOTENV_KEYS = {
    # Auth
    "WORKSPACE_API_KEY",
    "WORKSPACE_API_KEY_HEADER",
    "WORKSPACE_API_KEYS",
    "WORKSPACE_NGINX_AUTH_TOKEN",
    "WORKSPACE_NGINX_TOKEN_HEADER",
    "WORKSPACE_NGINX_TOKEN_QUERY_PARAM",
    "WORKSPACE_INTERNAL_ALLOWED_IPS",
    # Layout
    "WORKSPACE_HOST_ROOT",
    "WORKSPACE_APPS_DIR_NAME",
    "WORKSPACE_CONTAINER_WORKDIR",
    # Files and logs
    "WORKSPACE_MAX_TEXT_FILE_BYTES",
    "WORKSPACE_RUN_LOG_KEEP_PER_TYPE",
    "WORKSPACE_RECLAIM_MAX_ATTEMPTS",
    "WORKSPACE_RECLAIM_BACKOFF_MS",
    # Idle handling
    "WORKSPACE_IDLE_STOP_RUN_MINUTES",
    "WORKSPACE_IDLE_STOP_CONTAINER_MINUTES",
    "WORKSPACE_JANITOR_INTERVAL_SECONDS",
    # Supervisor backend
    "WORKSPACE_SUPERVISOR",
    "WORKSPACE_CONTAINER_PREFIX",
    "DOCKER_CLIENT_TIMEOUT",
    # Service metadata
    "WORKSPACE_NODE_VERSION",
    "LOG_LEVEL",
    "CORS_ALLOW_ORIGINS",
}

DEFAULT_MAX_TEXT_FILE_BYTES = 2 * 1024 * 1024


def _str2bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    s = val.strip().lower()
    return s in ("1", "true", "yes", "y", "on")


def _split_csv(s: str | None) -> List[str]:
    if not s:
        return []
    return [part.strip() for part in s.split(",") if part.strip()]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def sanitize_host_root(raw: Optional[str]) -> str:
    """
    Strip whitespace and a single pair of surrounding quotes from a configured root.

    Operators frequently paste quoted paths into env files ("/data/ws"); the quotes
    are never part of the directory name.
    """
    if raw is None:
        return ""
    s = raw.strip()
    if s[:1] in ("'", '"'):
        s = s[1:]
    if s[-1:] in ("'", '"'):
        s = s[:-1]
    return s.strip()


def _load_dotenv_into_env(dotenv_path: Optional[Path] = None, allowed_keys: Optional[set[str]] = None) -> None:
    """
    Best-effort .env loader:
    - Loads from the nearest .env found above this file by default
    - Only sets variables from allowed_keys if not already present in os.environ
    - Strips surrounding quotes on values
    - Ignores malformed lines
    """
    try:
        if dotenv_path:
            path = Path(dotenv_path)
        else:
            path = None
            here = Path(__file__).resolve()
            for ancestor in list(here.parents)[:5]:
                candidate = ancestor / ".env"
                if candidate.is_file():
                    path = candidate
                    break
            if path is None:
                return
        if not path.is_file():
            return
        allow = set(allowed_keys or _ALLOWED_DOTENV_KEYS)
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, val = line.split("=", 1)
            key = key.strip()
            val = val.strip()
            if (val.startswith('"') and val.endswith('"')) or (val.startswith("'") and val.endswith("'")):
                val = val[1:-1]
            if key and key in allow and key not in os.environ:
                os.environ[key] = val
    except Exception:
        # Best-effort; never fail startup due to .env parsing
        pass


# ----------------------------
# Unified configuration object
# ----------------------------

@dataclass(frozen=True)
class ServerConfig:
    """
    Unified configuration for the workspace node.

    All fields are immutable once created. Use from_env() to construct an instance.
    """

    # Security / auth
    api_key: Optional[str]
    api_key_header_name: str
    api_keys: List[str]

    # Reverse proxy port lookup (nginx auth_request)
    nginx_auth_token: Optional[str]
    nginx_token_header_name: str
    nginx_token_query_param: str

    # Extra source addresses allowed on /workspace/internal/* besides loopback
    internal_allowed_ips: List[str]

    # On-disk layout
    host_root: str
    apps_dir_name: str
    container_workdir: str

    # Files and logs
    max_text_file_bytes: int
    run_log_keep_per_type: int

    # Directory reclamation
    reclaim_max_attempts: int
    reclaim_backoff_ms: int

    # Idle handling
    idle_stop_run_minutes: int
    idle_stop_container_minutes: int
    janitor_interval_seconds: int

    # Supervisor backend ("files" or "docker")
    supervisor_backend: str
    container_name_prefix: str
    docker_client_timeout: int

    # CORS and service metadata
    cors_allow_origins: List[str]
    service_version: str
    log_level: str

    @staticmethod
    def from_env(dotenv: bool = True, dotenv_path: Optional[str | Path] = None) -> "ServerConfig":
        """
        Construct ServerConfig with values pulled from the current environment,
        optionally hydrated by a .env file if dotenv=True.
        """
        if dotenv:
            _load_dotenv_into_env(Path(dotenv_path) if dotenv_path else None, _ALLOWED_DOTENV_KEYS)

        # Security
        api_key = os.getenv("WORKSPACE_API_KEY") or None
        api_key_header = os.getenv("WORKSPACE_API_KEY_HEADER", "X-API-Key")
        api_keys = _split_csv(os.getenv("WORKSPACE_API_KEYS"))
        if api_key and api_key not in api_keys:
            api_keys.insert(0, api_key)

        nginx_token = (os.getenv("WORKSPACE_NGINX_AUTH_TOKEN") or "").strip() or None

        # Reclaimer: never fewer than one delete attempt
        reclaim_attempts = max(1, _int_env("WORKSPACE_RECLAIM_MAX_ATTEMPTS", 3))
        reclaim_backoff = max(0, _int_env("WORKSPACE_RECLAIM_BACKOFF_MS", 200))

        supervisor = (os.getenv("WORKSPACE_SUPERVISOR") or "files").strip().lower()
        if supervisor not in ("files", "docker"):
            supervisor = "files"

        return ServerConfig(
            api_key=api_key,
            api_key_header_name=api_key_header,
            api_keys=api_keys,
            nginx_auth_token=nginx_token,
            nginx_token_header_name=os.getenv("WORKSPACE_NGINX_TOKEN_HEADER", "X-WS-Token"),
            nginx_token_query_param=os.getenv("WORKSPACE_NGINX_TOKEN_QUERY_PARAM", "token"),
            internal_allowed_ips=_split_csv(os.getenv("WORKSPACE_INTERNAL_ALLOWED_IPS")),
            host_root=sanitize_host_root(os.getenv("WORKSPACE_HOST_ROOT")),
            apps_dir_name=(os.getenv("WORKSPACE_APPS_DIR_NAME") or "").strip().strip("/"),
            container_workdir=(os.getenv("WORKSPACE_CONTAINER_WORKDIR") or "/workspace").strip(),
            max_text_file_bytes=max(1, _int_env("WORKSPACE_MAX_TEXT_FILE_BYTES", DEFAULT_MAX_TEXT_FILE_BYTES)),
            run_log_keep_per_type=_int_env("WORKSPACE_RUN_LOG_KEEP_PER_TYPE", 3),
            reclaim_max_attempts=reclaim_attempts,
            reclaim_backoff_ms=reclaim_backoff,
            idle_stop_run_minutes=_int_env("WORKSPACE_IDLE_STOP_RUN_MINUTES", 10),
            idle_stop_container_minutes=_int_env("WORKSPACE_IDLE_STOP_CONTAINER_MINUTES", 20),
            janitor_interval_seconds=_int_env("WORKSPACE_JANITOR_INTERVAL_SECONDS", 60),
            supervisor_backend=supervisor,
            container_name_prefix=os.getenv("WORKSPACE_CONTAINER_PREFIX", "ws-u-"),
            docker_client_timeout=_int_env("DOCKER_CLIENT_TIMEOUT", 30),
            cors_allow_origins=_split_csv(os.getenv("CORS_ALLOW_ORIGINS", "*")) or ["*"],
            service_version=os.getenv("WORKSPACE_NODE_VERSION", "0.1.0"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    # ----------------------------
    # Derived helpers / utilities
    # ----------------------------

    def workspace_container_name(self, user_id: int) -> str:
        """
        Deterministic per-user container name (e.g. ws-u-42).
        """
        return f"{self.container_name_prefix}{user_id}"

    def idle_stop_run_seconds(self) -> Optional[float]:
        """
        Idle threshold before a run is stopped; None when disabled (<= 0).
        """
        if self.idle_stop_run_minutes <= 0:
            return None
        return self.idle_stop_run_minutes * 60.0

    def idle_stop_container_seconds(self) -> Optional[float]:
        if self.idle_stop_container_minutes <= 0:
            return None
        return self.idle_stop_container_minutes * 60.0


# ----------------------------
# Cached accessor
# ----------------------------

@lru_cache(maxsize=1)
def get_settings() -> ServerConfig:
    """
    Cached settings accessor. Safe to import and call across the app.
    """
    return ServerConfig.from_env(dotenv=True)


__all__ = [
    "DEFAULT_MAX_TEXT_FILE_BYTES",
    "ServerConfig",
    "get_settings",
    "sanitize_host_root",
]
