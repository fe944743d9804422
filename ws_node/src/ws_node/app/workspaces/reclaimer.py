from __future__ import annotations

"""
Best-effort reclamation of app directories and their run logs.

DirectoryReclaimer.reclaim never raises: it returns a ReclaimResult whose
outcome says what happened (DELETED, QUARANTINED or FAILED) so callers log it
and tests can inspect it. The sequence blocks for at most
max_attempts * backoff; it runs off the request path of the application
record deletion.
"""

import enum
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from ws_node.app.errors import CleanupFailure
from ws_node.app.workspaces.core import epoch_ms
from ws_node.app.workspaces.paths import parse_log_file_name

__all__ = [
    "ReclaimOutcome",
    "ReclaimResult",
    "DirectoryReclaimer",
    "RunLogCleanupResult",
    "cleanup_run_logs_for_app",
]

logger = logging.getLogger("workspace_node")


class ReclaimOutcome(str, enum.Enum):
    DELETED = "DELETED"
    QUARANTINED = "QUARANTINED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ReclaimResult:
    outcome: ReclaimOutcome
    path: Path
    attempts: int = 0
    quarantine_path: Optional[Path] = None
    error: Optional[str] = None


class DirectoryReclaimer:
    """
    Delete a directory tree with retries, falling back to renaming it aside.

    remove_tree, rename, sleep and clock are injectable so busy-file and
    rename failures can be reproduced in tests.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_ms: int = 200,
        *,
        remove_tree: Callable[[Path], None] = shutil.rmtree,
        rename: Callable[[Path, Path], None] = os.rename,
        sleep: Callable[[float], None] = time.sleep,
        clock_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_ms = max(0, int(backoff_ms))
        self._remove_tree = remove_tree
        self._rename = rename
        self._sleep = sleep
        self._clock_ms = clock_ms

    def quarantine_path_for(self, app_dir: Path) -> Path:
        return app_dir.parent / f"{app_dir.name}.deleted-{self._clock_ms()}"

    def reclaim(self, app_dir: Path) -> ReclaimResult:
        if not os.path.lexists(app_dir):
            return ReclaimResult(ReclaimOutcome.DELETED, app_dir, attempts=0)

        last_error: Optional[str] = None
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            try:
                self._remove_tree(app_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                last_error = f"{e.__class__.__name__}: {e}"
                logger.warning(
                    "reclaim attempt failed: dir=%s attempt=%s/%s err=%s",
                    app_dir, attempt, self.max_attempts, last_error,
                )
            if not os.path.lexists(app_dir):
                logger.info("app dir reclaimed: dir=%s attempt=%s", app_dir, attempt)
                return ReclaimResult(ReclaimOutcome.DELETED, app_dir, attempts=attempt)
            if attempt < self.max_attempts and self.backoff_ms:
                self._sleep(self.backoff_ms * attempt / 1000.0)

        quarantined = self.quarantine_path_for(app_dir)
        try:
            self._rename(app_dir, quarantined)
        except OSError as e:
            error = f"{e.__class__.__name__}: {e}"
            logger.warning("app dir could not be deleted nor quarantined: dir=%s err=%s", app_dir, error)
            return ReclaimResult(
                ReclaimOutcome.FAILED, app_dir, attempts=attempts, error=error or last_error,
            )
        logger.warning("app dir quarantined after failed deletes: from=%s to=%s", app_dir, quarantined)

        # The quarantined copy is garbage; one more try, leftovers are only logged
        try:
            self._remove_tree(quarantined)
        except OSError as e:
            logger.warning("quarantined dir left in place: dir=%s err=%s", quarantined, e)
        return ReclaimResult(
            ReclaimOutcome.QUARANTINED,
            app_dir,
            attempts=attempts,
            quarantine_path=quarantined,
            error=last_error,
        )


@dataclass(frozen=True)
class RunLogCleanupResult:
    matched: int
    deleted: int
    failures: List[str]


def cleanup_run_logs_for_app(run_dir: Path, app_id: int) -> RunLogCleanupResult:
    """
    Delete every run-<op>-<appId>-<ts>.log of one app (all ops).

    Matching uses the parsed appId segment so app 7 never matches app 17 or 70.
    Raises CleanupFailure when listing or any deletion failed; callers driving
    application deletion absorb it.
    """
    try:
        entries = list(run_dir.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return RunLogCleanupResult(0, 0, [])
    except OSError as e:
        raise CleanupFailure(f"list run dir failed: {run_dir}: {e}") from e

    matched = 0
    deleted = 0
    failures: List[str] = []
    for p in entries:
        parsed = parse_log_file_name(p.name)
        if parsed is None or parsed.app_id != str(app_id):
            continue
        matched += 1
        try:
            p.unlink()
            deleted += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            failures.append(f"{p.name}: {e}")

    if failures:
        raise CleanupFailure(f"delete run log failed for appId={app_id}: {'; '.join(failures)}")
    if matched:
        logger.info("run logs cleaned: runDir=%s appId=%s matched=%s deleted=%s", run_dir, app_id, matched, deleted)
    return RunLogCleanupResult(matched, deleted, failures)
