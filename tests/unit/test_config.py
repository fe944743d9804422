from __future__ import annotations

import os
from pathlib import Path

import pytest

from ws_node.app.config import DEFAULT_MAX_TEXT_FILE_BYTES, ServerConfig, sanitize_host_root


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key in list(os.environ):
        if key.startswith("WORKSPACE_") or key in ("DOCKER_CLIENT_TIMEOUT", "CORS_ALLOW_ORIGINS"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.mark.unit
def test_defaults(clean_env: pytest.MonkeyPatch) -> None:
    cfg = ServerConfig.from_env(dotenv=False)
    assert cfg.api_key is None
    assert cfg.api_key_header_name == "X-API-Key"
    assert cfg.nginx_auth_token is None
    assert cfg.nginx_token_header_name == "X-WS-Token"
    assert cfg.nginx_token_query_param == "token"
    assert cfg.host_root == ""
    assert cfg.apps_dir_name == ""
    assert cfg.max_text_file_bytes == DEFAULT_MAX_TEXT_FILE_BYTES
    assert (cfg.reclaim_max_attempts, cfg.reclaim_backoff_ms) == (3, 200)
    assert cfg.run_log_keep_per_type == 3
    assert cfg.supervisor_backend == "files"
    assert cfg.idle_stop_run_seconds() == 600.0
    assert cfg.idle_stop_container_seconds() == 1200.0
    assert cfg.workspace_container_name(42) == "ws-u-42"


@pytest.mark.unit
def test_env_overrides(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("WORKSPACE_API_KEY", "k1")
    clean_env.setenv("WORKSPACE_API_KEYS", "k2, k3")
    clean_env.setenv("WORKSPACE_HOST_ROOT", "'/data/funai/workspaces'")
    clean_env.setenv("WORKSPACE_APPS_DIR_NAME", "/apps/")
    clean_env.setenv("WORKSPACE_NGINX_AUTH_TOKEN", "  ")
    clean_env.setenv("WORKSPACE_INTERNAL_ALLOWED_IPS", "10.0.0.1,10.0.0.2")
    clean_env.setenv("WORKSPACE_RECLAIM_MAX_ATTEMPTS", "0")
    clean_env.setenv("WORKSPACE_IDLE_STOP_RUN_MINUTES", "-1")
    clean_env.setenv("WORKSPACE_SUPERVISOR", "kubernetes")
    clean_env.setenv("WORKSPACE_RUN_LOG_KEEP_PER_TYPE", "not-a-number")

    cfg = ServerConfig.from_env(dotenv=False)
    assert cfg.api_keys == ["k1", "k2", "k3"]
    assert cfg.host_root == "/data/funai/workspaces"
    assert cfg.apps_dir_name == "apps"
    assert cfg.nginx_auth_token is None
    assert cfg.internal_allowed_ips == ["10.0.0.1", "10.0.0.2"]
    assert cfg.reclaim_max_attempts == 1
    assert cfg.idle_stop_run_seconds() is None
    assert cfg.supervisor_backend == "files"
    assert cfg.run_log_keep_per_type == 3


@pytest.mark.unit
def test_dotenv_only_fills_missing_allowed_keys(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "# comment",
                'WORKSPACE_HOST_ROOT="/from/dotenv"',
                "WORKSPACE_API_KEY=from-dotenv",
                "NOT_ALLOWED=1",
                "malformed line",
            ]
        ),
        encoding="utf-8",
    )
    clean_env.setenv("WORKSPACE_API_KEY", "from-process")
    # registered with monkeypatch so the loader's write is undone afterwards
    clean_env.setenv("WORKSPACE_HOST_ROOT", "")
    clean_env.delenv("WORKSPACE_HOST_ROOT")
    clean_env.delenv("NOT_ALLOWED", raising=False)

    cfg = ServerConfig.from_env(dotenv=True, dotenv_path=env_file)
    assert cfg.host_root == "/from/dotenv"
    assert cfg.api_key == "from-process"
    assert "NOT_ALLOWED" not in os.environ


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw,expected",
    [(None, ""), ("  /a/b  ", "/a/b"), ('"/a/b"', "/a/b"), ("'/a/b'", "/a/b"), ('"', "")],
)
def test_sanitize_host_root(raw, expected) -> None:
    assert sanitize_host_root(raw) == expected
