from __future__ import annotations

import shutil
from pathlib import Path
from typing import List

import pytest

from ws_node.app.errors import CleanupFailure
from ws_node.app.workspaces.reclaimer import (
    DirectoryReclaimer,
    ReclaimOutcome,
    cleanup_run_logs_for_app,
)


def _app_dir(tmp_path: Path) -> Path:
    d = tmp_path / "42" / "7"
    (d / "src").mkdir(parents=True)
    (d / "src" / "main.ts").write_text("x", encoding="utf-8")
    return d


class _FlakyRemove:
    """
    Fails the first `failures` calls with a busy-file error, then deletes for real.
    """

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls: List[Path] = []

    def __call__(self, p: Path) -> None:
        self.calls.append(Path(p))
        if len(self.calls) <= self.failures:
            raise OSError(16, "Device or resource busy")
        shutil.rmtree(p)


@pytest.mark.unit
def test_plain_delete(tmp_path: Path) -> None:
    d = _app_dir(tmp_path)
    result = DirectoryReclaimer(backoff_ms=0).reclaim(d)
    assert result.outcome == ReclaimOutcome.DELETED
    assert result.attempts == 1
    assert not d.exists()


@pytest.mark.unit
def test_missing_dir_is_already_deleted(tmp_path: Path) -> None:
    result = DirectoryReclaimer().reclaim(tmp_path / "nothing")
    assert result.outcome == ReclaimOutcome.DELETED
    assert result.attempts == 0


@pytest.mark.unit
def test_retries_with_linear_backoff(tmp_path: Path) -> None:
    d = _app_dir(tmp_path)
    sleeps: List[float] = []
    remove = _FlakyRemove(failures=2)
    result = DirectoryReclaimer(3, 200, remove_tree=remove, sleep=sleeps.append).reclaim(d)
    assert result.outcome == ReclaimOutcome.DELETED
    assert result.attempts == 3
    assert sleeps == [0.2, 0.4]
    assert not d.exists()


@pytest.mark.unit
def test_quarantine_after_exhausted_retries(tmp_path: Path) -> None:
    d = _app_dir(tmp_path)
    sleeps: List[float] = []
    # every delete of the app dir fails; the quarantined copy is removable
    remove = _FlakyRemove(failures=3)
    reclaimer = DirectoryReclaimer(3, 200, remove_tree=remove, sleep=sleeps.append, clock_ms=lambda: 1234)
    result = reclaimer.reclaim(d)

    assert result.outcome == ReclaimOutcome.QUARANTINED
    assert result.attempts == 3
    assert result.quarantine_path == tmp_path / "42" / "7.deleted-1234"
    assert "busy" in (result.error or "")
    assert not d.exists()
    # best-effort removal of the quarantined copy
    assert not result.quarantine_path.exists()
    assert sleeps == [0.2, 0.4]


@pytest.mark.unit
def test_quarantined_dir_may_stay_when_still_busy(tmp_path: Path) -> None:
    d = _app_dir(tmp_path)
    remove = _FlakyRemove(failures=99)
    result = DirectoryReclaimer(2, 0, remove_tree=remove, clock_ms=lambda: 5).reclaim(d)
    assert result.outcome == ReclaimOutcome.QUARANTINED
    assert result.quarantine_path.is_dir()
    assert (result.quarantine_path / "src" / "main.ts").exists()


@pytest.mark.unit
def test_failed_when_rename_also_fails(tmp_path: Path) -> None:
    d = _app_dir(tmp_path)

    def bad_rename(src: Path, dst: Path) -> None:
        raise PermissionError(13, "Permission denied")

    result = DirectoryReclaimer(
        2, 0, remove_tree=_FlakyRemove(failures=99), rename=bad_rename
    ).reclaim(d)
    assert result.outcome == ReclaimOutcome.FAILED
    assert "Permission denied" in (result.error or "")
    assert d.exists()


@pytest.mark.unit
def test_cleanup_run_logs_for_app_matches_exact_app(tmp_path: Path) -> None:
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    for name in (
        "run-build-7-1.log",
        "run-install-7-2.log",
        "run-start-7-3.log",
        "run-build-17-4.log",
        "run-build-70-5.log",
        "current.json",
    ):
        (run_dir / name).write_text("", encoding="utf-8")

    result = cleanup_run_logs_for_app(run_dir, 7)
    assert (result.matched, result.deleted) == (3, 3)
    assert sorted(p.name for p in run_dir.iterdir()) == [
        "current.json",
        "run-build-17-4.log",
        "run-build-70-5.log",
    ]


@pytest.mark.unit
def test_cleanup_run_logs_for_app_without_run_dir(tmp_path: Path) -> None:
    result = cleanup_run_logs_for_app(tmp_path / "missing", 7)
    assert (result.matched, result.deleted) == (0, 0)


@pytest.mark.unit
def test_cleanup_run_logs_for_app_reports_failures(tmp_path: Path) -> None:
    run_dir = tmp_path / "run"
    run_dir.mkdir()
    # a directory with a log-like name cannot be unlinked
    (run_dir / "run-build-7-1.log").mkdir()
    with pytest.raises(CleanupFailure):
        cleanup_run_logs_for_app(run_dir, 7)
