from __future__ import annotations

"""
Adapters to the external process supervisor.

The supervisor owns the build/preview processes and the per-user container;
this service only asks it to stop things. Two adapters:

- RunFilesSupervisor: no process control at all, it only clears the run record
  (current.json, dev.pid). Used when the node runs next to a supervisor that
  reaps orphaned runs itself, and in tests.
- DockerSupervisor: talks to the Docker Engine through the docker SDK; the
  user's container is named <prefix><userId> and runs are process groups inside it.

Neither adapter ever starts or provisions anything.
"""

import logging
from typing import Protocol

from docker import DockerClient
from docker.errors import APIError, NotFound as DockerNotFound

from ws_node.app.config import ServerConfig
from ws_node.app.workspaces.run_meta import RunMetaStore

__all__ = [
    "RunSupervisor",
    "RunFilesSupervisor",
    "DockerSupervisor",
]

logger = logging.getLogger("workspace_node")


class RunSupervisor(Protocol):
    def stop_run(self, user_id: int) -> bool: ...

    def stop_run_for_idle(self, user_id: int) -> bool: ...

    def stop_container_for_idle(self, user_id: int) -> None: ...

    def remove_if_broken(self, user_id: int) -> bool: ...


class RunFilesSupervisor:
    """
    Clears run bookkeeping files; has no processes to signal.
    """

    def __init__(self, store: RunMetaStore) -> None:
        self.store = store

    def stop_run(self, user_id: int) -> bool:
        had_run = self.store.load(user_id) is not None
        self.store.clear(user_id)
        return had_run

    def stop_run_for_idle(self, user_id: int) -> bool:
        meta = self.store.load(user_id)
        # finished runs have nothing left to stop
        if meta is None or meta.is_finished():
            return False
        return self.stop_run(user_id)

    def stop_container_for_idle(self, user_id: int) -> None:
        return None

    def remove_if_broken(self, user_id: int) -> bool:
        return False


class DockerSupervisor:
    """
    Stops runs and containers of the per-user workspace container.
    """

    def __init__(self, client: DockerClient, settings: ServerConfig, store: RunMetaStore) -> None:
        self.client = client
        self.settings = settings
        self.store = store

    def _container(self, user_id: int):
        try:
            return self.client.containers.get(self.settings.workspace_container_name(user_id))
        except DockerNotFound:
            return None

    def stop_run(self, user_id: int) -> bool:
        """
        SIGTERM the recorded run's process group (then its pid) inside a running
        container, and clear the run files either way.
        """
        meta = self.store.load(user_id)
        signalled = False
        c = self._container(user_id)
        if c is not None and meta is not None and meta.pid:
            c.reload()
            if c.status == "running":
                pid = int(meta.pid)
                cmd = f"kill -TERM -- -{pid} 2>/dev/null || kill -TERM {pid} 2>/dev/null || true"
                res = c.exec_run(["sh", "-c", cmd], user="root")
                signalled = int(getattr(res, "exit_code", 1) or 0) == 0
                logger.info("run stopped: userId=%s pid=%s signalled=%s", user_id, pid, signalled)
        self.store.clear(user_id)
        return signalled or meta is not None

    def stop_run_for_idle(self, user_id: int) -> bool:
        meta = self.store.load(user_id)
        if meta is None or meta.is_finished():
            return False
        return self.stop_run(user_id)

    def stop_container_for_idle(self, user_id: int) -> None:
        c = self._container(user_id)
        if c is None:
            return None
        c.reload()
        if c.status == "running":
            c.stop(timeout=10)
            logger.info("workspace container stopped (idle): userId=%s name=%s", user_id, c.name)
        return None

    def remove_if_broken(self, user_id: int) -> bool:
        """
        Remove a container the runtime left in an unusable state (dead, or
        exited with -1 after its monitor died); it is recreated on next use.
        """
        c = self._container(user_id)
        if c is None:
            return False
        c.reload()
        state = (getattr(c, "attrs", {}) or {}).get("State") or {}
        broken = c.status == "dead" or (c.status == "exited" and state.get("ExitCode") == -1)
        if not broken:
            return False
        try:
            c.remove(force=True)
        except APIError as e:
            logger.warning("broken workspace container not removed: userId=%s err=%s", user_id, e)
            return False
        logger.warning("broken workspace container removed: userId=%s name=%s", user_id, c.name)
        return True
