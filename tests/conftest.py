"""
Test session bootstrap for the workspace node.

- Adds ws_node/src to sys.path so `import ws_node` works without an editable install.
- Points file logging at a temp directory so importing the app never writes
  into the repository.
- Skips tests marked @pytest.mark.docker when no Docker daemon is reachable.
- Shared fixtures: a temp host root with its layout, settings built from a clean
  environment, and a router-level TestClient factory.
"""

from __future__ import annotations

import contextlib
import dataclasses
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

import docker
import pytest


def _add_sys_path(p: Path) -> None:
    """
    Prepend a filesystem path to sys.path if it's not already present.
    """
    rp = str(p.resolve())
    if rp not in sys.path:
        sys.path.insert(0, rp)


_THIS_FILE = Path(__file__).resolve()
_TESTS_DIR = _THIS_FILE.parent
_PROJECT_DIR = _TESTS_DIR.parent

_WS_NODE_SRC = _PROJECT_DIR / "ws_node" / "src"
if _WS_NODE_SRC.exists():
    _add_sys_path(_WS_NODE_SRC)

os.environ.setdefault("WS_LOG_DIR", str(Path(tempfile.gettempdir()) / "ws-node-test-logs"))

from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from ws_node.app import deps  # noqa: E402
from ws_node.app.config import ServerConfig  # noqa: E402
from ws_node.app.errors import install_exception_handlers  # noqa: E402
from ws_node.app.workspaces.core import ActivityTracker  # noqa: E402
from ws_node.app.workspaces.paths import WorkspaceLayout  # noqa: E402
from ws_node.app.workspaces.reclaimer import DirectoryReclaimer  # noqa: E402
from ws_node.app.workspaces.run_meta import RunMetaStore, WorkspaceMetaStore  # noqa: E402
from ws_node.app.workspaces.supervisor import RunFilesSupervisor  # noqa: E402


def _docker_available() -> Tuple[bool, str]:
    """
    Check if the Docker daemon is reachable. Returns (available, reason_if_unavailable).
    """
    try:
        with contextlib.closing(docker.from_env()) as client:
            client.ping()
        return True, ""
    except Exception as e:
        return False, f"Docker daemon not reachable: {e} (ensure the daemon is running; set DOCKER_HOST for remote Docker)"


def pytest_configure(config: pytest.Config) -> None:
    available, reason = _docker_available()
    setattr(config, "_ws_docker_available", available)
    setattr(config, "_ws_docker_unavailable_reason", reason)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if getattr(config, "_ws_docker_available", False):
        return
    skip_marker = pytest.mark.skip(
        reason=getattr(config, "_ws_docker_unavailable_reason", "") or "Docker daemon not reachable"
    )
    for item in items:
        if "docker" in item.keywords:
            item.add_marker(skip_marker)


# --------------------------
# Shared fixtures
# --------------------------

@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def layout(host_root: Path) -> WorkspaceLayout:
    return WorkspaceLayout(str(host_root))


@pytest.fixture
def store(layout: WorkspaceLayout) -> RunMetaStore:
    return RunMetaStore(layout)


@pytest.fixture
def make_settings(monkeypatch: pytest.MonkeyPatch, host_root: Path) -> Callable[..., ServerConfig]:
    """
    ServerConfig from a clean environment (no .env hydration) with overrides.
    """
    for key in list(os.environ):
        if key.startswith("WORKSPACE_"):
            monkeypatch.delenv(key, raising=False)

    def _make(**overrides: Any) -> ServerConfig:
        base = ServerConfig.from_env(dotenv=False)
        overrides.setdefault("host_root", str(host_root))
        return dataclasses.replace(base, **overrides)

    return _make


@pytest.fixture
def make_client(make_settings: Callable[..., ServerConfig]) -> Callable[..., TestClient]:
    """
    Build a minimal FastAPI app with the given routers and per-test services on
    app.state, with get_settings overridden. The main app's lifespan (janitor,
    supervisor selection) is not involved.
    """

    def _make(
        *routers: Any,
        settings: Optional[ServerConfig] = None,
        disable_auth: bool = True,
        activity: Optional[ActivityTracker] = None,
        supervisor: Any = None,
        reclaimer: Optional[DirectoryReclaimer] = None,
        git: Any = None,
    ) -> TestClient:
        cfg = settings or make_settings()
        app = FastAPI()
        install_exception_handlers(app)
        for r in routers:
            app.include_router(r.router)

        layout = WorkspaceLayout(cfg.host_root, cfg.apps_dir_name)
        run_store = RunMetaStore(layout)
        app.state.layout = layout
        app.state.run_meta_store = run_store
        app.state.workspace_meta_store = WorkspaceMetaStore(layout)
        app.state.activity = activity or ActivityTracker()
        app.state.reclaimer = reclaimer or DirectoryReclaimer(cfg.reclaim_max_attempts, 0)
        app.state.supervisor = supervisor or RunFilesSupervisor(run_store)
        app.state.git = git

        app.dependency_overrides[deps.get_settings] = lambda: cfg
        if disable_auth:
            app.dependency_overrides[deps.enforce_api_key] = lambda: None
        return TestClient(app)

    return _make
