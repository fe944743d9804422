from __future__ import annotations

"""
Lifecycle helpers for the workspace node.

This module holds the non-route logic that reacts to events outside a single
request:
- Application deletion: stop the app's run, drop its run logs, reclaim its
  directory. Every step is best-effort; nothing here may fail the deletion of
  the application record upstream.
- Orphaned data: app directories and run logs of apps the control plane no
  longer knows about.
- Background janitor loop: stops idle runs/containers and prunes old run logs.

All imports are eager; no lazy imports or guarded imports.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set

from ws_node.app.config import ServerConfig
from ws_node.app.errors import CleanupFailure, WorkspaceError
from ws_node.app.workspaces.core import ActivityTracker
from ws_node.app.workspaces.logs import prune_run_logs
from ws_node.app.workspaces.paths import LOG_OPS, WorkspaceLayout, parse_log_file_name
from ws_node.app.workspaces.reclaimer import (
    DirectoryReclaimer,
    ReclaimOutcome,
    ReclaimResult,
    cleanup_run_logs_for_app,
)
from ws_node.app.workspaces.run_meta import RunMetaStore
from ws_node.app.workspaces.supervisor import RunSupervisor

__all__ = [
    "AppCleanupReport",
    "cleanup_workspace_on_app_deleted",
    "OrphanCleanupReport",
    "cleanup_orphaned_data",
    "JanitorTickResult",
    "janitor_tick",
    "janitor_loop",
]

logger = logging.getLogger("workspace_node")


# --------------------------
# Application deletion
# --------------------------

@dataclass
class AppCleanupReport:
    user_id: int
    app_id: int
    run_stopped: Optional[bool] = None
    logs_deleted: int = 0
    reclaim: Optional[ReclaimResult] = None
    container_removed: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def dir_outcome(self) -> ReclaimOutcome:
        return self.reclaim.outcome if self.reclaim is not None else ReclaimOutcome.FAILED

    def _warn(self, msg: str, *args: object) -> None:
        text = msg % args if args else msg
        self.warnings.append(text)
        logger.warning("app-deleted cleanup: userId=%s appId=%s %s", self.user_id, self.app_id, text)


def cleanup_workspace_on_app_deleted(
    layout: WorkspaceLayout,
    store: RunMetaStore,
    reclaimer: DirectoryReclaimer,
    supervisor: RunSupervisor,
    user_id: int,
    app_id: int,
) -> AppCleanupReport:
    """
    Remove everything the node holds for a deleted application.

    Steps, each independent of the others' success:
    1. stop the current run when RunMeta belongs to app_id
    2. delete run-*-<appId>-*.log
    3. reclaim the app directory (delete, else quarantine)
    4. let the supervisor drop a broken container

    Never raises; failures end up as warnings in the report.
    """
    report = AppCleanupReport(user_id=user_id, app_id=app_id)

    try:
        meta = store.load(user_id)
        if meta is not None and meta.app_id == app_id:
            report.run_stopped = supervisor.stop_run(user_id)
    except Exception as e:
        report._warn("stop run failed: %s", e)

    try:
        logs = cleanup_run_logs_for_app(layout.run_dir(user_id), app_id)
        report.logs_deleted = logs.deleted
    except CleanupFailure as e:
        report._warn("run log cleanup incomplete: %s", e.message)
    except WorkspaceError as e:
        report._warn("run log cleanup skipped: %s", e.message)

    try:
        result = reclaimer.reclaim(layout.app_dir(user_id, app_id))
        report.reclaim = result
        if result.outcome == ReclaimOutcome.FAILED:
            report._warn("app dir not reclaimed: %s", result.error)
    except Exception as e:
        report._warn("app dir reclaim raised: %s", e)

    try:
        report.container_removed = bool(supervisor.remove_if_broken(user_id))
    except Exception as e:
        report._warn("broken container check failed: %s", e)

    logger.info(
        "app-deleted cleanup done: userId=%s appId=%s runStopped=%s logsDeleted=%s dir=%s warnings=%s",
        user_id, app_id, report.run_stopped, report.logs_deleted, report.dir_outcome.value, len(report.warnings),
    )
    return report


# --------------------------
# Orphaned data
# --------------------------

@dataclass
class OrphanCleanupReport:
    cleaned_app_dirs: int = 0
    cleaned_run_logs: int = 0
    message: str = "success"
    warnings: List[str] = field(default_factory=list)

    def _warn(self, msg: str, *args: object) -> None:
        text = msg % args if args else msg
        self.warnings.append(text)
        logger.warning("orphan cleanup: %s", text)


def _numeric_dirs(base: Path) -> List[Path]:
    try:
        entries = sorted(base.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return []
    return [p for p in entries if p.name.isascii() and p.name.isdigit() and p.is_dir() and not p.is_symlink()]


def _orphaned_log_app_ids(run_dir: Path, keep: Set[int]) -> Set[int]:
    try:
        names = [p.name for p in run_dir.iterdir()]
    except (FileNotFoundError, NotADirectoryError):
        return set()
    found = set()
    for name in names:
        parsed = parse_log_file_name(name)
        if parsed is not None and int(parsed.app_id) not in keep:
            found.add(int(parsed.app_id))
    return found


def cleanup_orphaned_data(
    layout: WorkspaceLayout,
    reclaimer: DirectoryReclaimer,
    existing_app_ids: Iterable[int],
) -> OrphanCleanupReport:
    """
    Reclaim app directories and run logs whose appId is not in existing_app_ids.

    Catches up on deletions whose app-deleted callback never reached this node.
    Walks every user directory under the host root; non-numeric names and
    quarantined leftovers (<appId>.deleted-<ts>) are never touched.
    Never raises; failures end up as warnings in the report.
    """
    keep = {int(x) for x in existing_app_ids}
    report = OrphanCleanupReport()
    try:
        root = layout.root()
    except WorkspaceError as e:
        report.message = e.message
        report._warn("skipped: %s", e.message)
        return report
    if not root.is_dir():
        report.message = "host root does not exist"
        report._warn("skipped: host root does not exist: %s", root)
        return report

    for user_dir in _numeric_dirs(root):
        user_id = user_dir.name
        apps_base = user_dir / layout.apps_dir_name if layout.apps_dir_name else user_dir
        for app_dir in _numeric_dirs(apps_base):
            if int(app_dir.name) in keep:
                continue
            result = reclaimer.reclaim(app_dir)
            if result.outcome == ReclaimOutcome.FAILED:
                report._warn("app dir not reclaimed: userId=%s appId=%s err=%s", user_id, app_dir.name, result.error)
            else:
                report.cleaned_app_dirs += 1

        run_dir = layout.run_dir(user_id)
        for app_id in sorted(_orphaned_log_app_ids(run_dir, keep)):
            try:
                report.cleaned_run_logs += cleanup_run_logs_for_app(run_dir, app_id).deleted
            except CleanupFailure as e:
                report._warn("run log cleanup incomplete: userId=%s appId=%s %s", user_id, app_id, e.message)

    if report.warnings:
        report.message = f"completed with {len(report.warnings)} warning(s)"
    logger.info(
        "orphan cleanup done: keep=%s appDirs=%s runLogs=%s warnings=%s",
        len(keep), report.cleaned_app_dirs, report.cleaned_run_logs, len(report.warnings),
    )
    return report


# --------------------------
# Janitor
# --------------------------

@dataclass
class JanitorTickResult:
    runs_stopped: List[int] = field(default_factory=list)
    containers_stopped: List[int] = field(default_factory=list)
    logs_pruned: int = 0


def janitor_tick(
    settings: ServerConfig,
    tracker: ActivityTracker,
    supervisor: RunSupervisor,
    layout: WorkspaceLayout,
    now: Optional[float] = None,
) -> JanitorTickResult:
    """
    One janitor pass over every user the tracker has seen.

    A user idle beyond the run threshold gets stop_run_for_idle; beyond the
    container threshold also stop_container_for_idle, after which the user is
    dropped from the tracker until the next request. Per-user failures are
    logged and skipped.
    """
    result = JanitorTickResult()
    stop_run_after = settings.idle_stop_run_seconds()
    stop_container_after = settings.idle_stop_container_seconds()

    for user_id in sorted(tracker.snapshot_monotonic()):
        try:
            if settings.run_log_keep_per_type > 0:
                run_dir = layout.run_dir(user_id)
                for op in LOG_OPS:
                    result.logs_pruned += prune_run_logs(run_dir, op, settings.run_log_keep_per_type)

            idle = tracker.idle_seconds(user_id, now)
            if idle is None:
                continue
            if stop_run_after is not None and idle > stop_run_after:
                if supervisor.stop_run_for_idle(user_id):
                    result.runs_stopped.append(user_id)
                    logger.info("idle run stopped: userId=%s idleSeconds=%.0f", user_id, idle)
            if stop_container_after is not None and idle > stop_container_after:
                supervisor.stop_container_for_idle(user_id)
                tracker.remove(user_id)
                result.containers_stopped.append(user_id)
        except Exception as e:
            logger.warning("janitor: user skipped: userId=%s err=%s", user_id, e)
    return result


async def janitor_loop(
    settings: ServerConfig,
    tracker: ActivityTracker,
    supervisor: RunSupervisor,
    layout: WorkspaceLayout,
) -> None:
    """
    Background janitor loop, started from the FastAPI lifespan.

    Respects WORKSPACE_JANITOR_INTERVAL_SECONDS with a minimum interval of 10 seconds.
    The blocking pass runs in a worker thread so request handling is not stalled.
    """
    interval_s = max(10, int(settings.janitor_interval_seconds))

    while True:
        await asyncio.sleep(interval_s)
        try:
            await asyncio.to_thread(janitor_tick, settings, tracker, supervisor, layout)
        except Exception as e:
            # next tick will retry
            logger.warning("janitor tick failed: %s", e)
