from __future__ import annotations

from pathlib import Path

import pytest

from ws_node.app.errors import InvalidArgument, NotFound
from ws_node.app.models import LogType, RunMeta
from ws_node.app.workspaces.logs import (
    build_log_view,
    clear_run_log,
    find_latest_log_file,
    iter_log_bytes,
    normalize_log_type,
    prune_run_logs,
    read_log,
    resolve_log_file,
)
from ws_node.app.workspaces.paths import WorkspaceLayout
from ws_node.app.workspaces.run_meta import RunMetaStore


def _log(layout: WorkspaceLayout, user_id: int, name: str, content: bytes = b"") -> Path:
    run_dir = layout.run_dir(user_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    p = run_dir / name
    p.write_bytes(content)
    return p


# --------------------------
# Type normalization
# --------------------------

@pytest.mark.unit
@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, LogType.PREVIEW),
        ("", LogType.PREVIEW),
        ("preview", LogType.PREVIEW),
        ("START", LogType.PREVIEW),
        ("dev", LogType.PREVIEW),
        ("build", LogType.BUILD),
        (" INSTALL ", LogType.INSTALL),
    ],
)
def test_normalize_log_type(raw, expected) -> None:
    assert normalize_log_type(raw) == expected


@pytest.mark.unit
def test_normalize_log_type_rejects_unknown() -> None:
    with pytest.raises(InvalidArgument):
        normalize_log_type("deploy")


# --------------------------
# Discovery
# --------------------------

@pytest.mark.unit
def test_latest_log_wins_by_timestamp_not_name(layout: WorkspaceLayout) -> None:
    _log(layout, 1, "run-build-7-900.log")
    _log(layout, 1, "run-build-7-1000.log")
    _log(layout, 1, "run-build-7-99.log")
    assert find_latest_log_file(layout, 1, 7, "build").name == "run-build-7-1000.log"


@pytest.mark.unit
def test_discovery_matches_exact_app_and_op(layout: WorkspaceLayout) -> None:
    _log(layout, 1, "run-build-17-5000.log")
    _log(layout, 1, "run-build-70-6000.log")
    _log(layout, 1, "run-install-7-7000.log")
    _log(layout, 1, "run-build-7-100.log")
    assert find_latest_log_file(layout, 1, 7, "build").name == "run-build-7-100.log"
    assert find_latest_log_file(layout, 1, 7, "install").name == "run-install-7-7000.log"
    assert find_latest_log_file(layout, 1, 7, "start") is None


@pytest.mark.unit
def test_discovery_skips_malformed_names(layout: WorkspaceLayout) -> None:
    _log(layout, 1, "run-build-7-abc.log")
    _log(layout, 1, "run-build-7-notes.txt")
    assert find_latest_log_file(layout, 1, 7, "build") is None
    _log(layout, 1, "run-build-7-12.log")
    assert find_latest_log_file(layout, 1, 7, "build").name == "run-build-7-12.log"


@pytest.mark.unit
def test_discovery_without_run_dir(layout: WorkspaceLayout) -> None:
    assert find_latest_log_file(layout, 404, 7, "build") is None


@pytest.mark.unit
def test_build_discovery_prefers_run_meta(layout: WorkspaceLayout) -> None:
    _log(layout, 1, "run-build-7-900.log")
    _log(layout, 1, "run-build-7-1000.log")
    _log(layout, 1, "run-build-7-2000.log")
    meta = RunMeta(app_id=7, type="BUILD", log_path="/workspace/run/run-build-7-1000.log")
    assert resolve_log_file(layout, 1, 7, "build", meta).name == "run-build-7-1000.log"


@pytest.mark.unit
def test_run_meta_of_other_app_or_op_is_ignored(layout: WorkspaceLayout) -> None:
    _log(layout, 1, "run-build-7-900.log")
    _log(layout, 1, "run-start-7-50.log")
    other_app = RunMeta(app_id=8, type="BUILD", log_path="run-build-8-1000.log")
    assert resolve_log_file(layout, 1, 7, "build", other_app).name == "run-build-7-900.log"
    same_app = RunMeta(app_id=7, type="BUILD", log_path="run-build-7-900.log")
    assert resolve_log_file(layout, 1, 7, "start", same_app).name == "run-start-7-50.log"


# --------------------------
# Reader
# --------------------------

@pytest.mark.unit
def test_read_log_tail_and_full(tmp_path: Path) -> None:
    p = tmp_path / "run-start-1-1.log"
    p.write_bytes(b"0123456789")
    assert read_log(p, 0) == "0123456789"
    assert read_log(p, 4) == "6789"
    assert read_log(p, 10) == "0123456789"
    assert read_log(p, 1000) == "0123456789"


@pytest.mark.unit
def test_read_log_tolerates_split_utf8(tmp_path: Path) -> None:
    p = tmp_path / "run-start-1-1.log"
    p.write_bytes("日志".encode("utf-8"))
    # 4 bytes cut into the first 3-byte character
    text = read_log(p, 4)
    assert text.endswith("志")
    assert "�" in text


@pytest.mark.unit
def test_read_log_missing_file_is_not_found(tmp_path: Path) -> None:
    with pytest.raises(NotFound):
        read_log(tmp_path / "gone.log")
    with pytest.raises(NotFound):
        iter_log_bytes(tmp_path / "gone.log")


@pytest.mark.unit
def test_iter_log_bytes_streams_tail(tmp_path: Path) -> None:
    p = tmp_path / "run-start-1-1.log"
    p.write_bytes(b"a" * 10 + b"b" * 10)
    assert b"".join(iter_log_bytes(p, 10, chunk_size=3)) == b"b" * 10
    assert b"".join(iter_log_bytes(p, 0, chunk_size=7)) == b"a" * 10 + b"b" * 10


# --------------------------
# Serving policy
# --------------------------

@pytest.mark.unit
def test_unfinished_build_is_gated(tmp_path: Path) -> None:
    p = tmp_path / "run-build-7-1000.log"
    p.write_bytes(b"step 1\nstep 2\n")
    meta = RunMeta(app_id=7, type="BUILD", log_path=p.name)

    view = build_log_view(LogType.BUILD, p, meta, 7, tail_bytes=0)
    assert view.is_finish is False
    assert view.log == ""

    view = build_log_view(LogType.BUILD, p, meta, 7, tail_bytes=7)
    assert view.is_finish is False
    assert view.log == "step 2\n"


@pytest.mark.unit
def test_finished_build_returns_full_log_regardless_of_tail(tmp_path: Path) -> None:
    p = tmp_path / "run-build-7-1000.log"
    p.write_bytes(b"step 1\nstep 2\ndone\n")
    meta = RunMeta(app_id=7, type="BUILD", log_path=p.name, finished_at=1700000000, exit_code=0)
    for tail in (0, 5, 10_000):
        view = build_log_view(LogType.BUILD, p, meta, 7, tail_bytes=tail)
        assert view.is_finish is True
        assert view.log == "step 1\nstep 2\ndone\n"


@pytest.mark.unit
def test_preview_log_honours_tail_and_has_no_finish_flag(tmp_path: Path) -> None:
    p = tmp_path / "run-start-7-1000.log"
    p.write_bytes(b"vite ready\nlistening\n")
    view = build_log_view(LogType.PREVIEW, p, None, 7, tail_bytes=10)
    assert view.is_finish is None
    assert view.log == "listening\n"
    assert build_log_view(LogType.INSTALL, p, None, 7, tail_bytes=0).log == "vite ready\nlistening\n"


# --------------------------
# Maintenance
# --------------------------

@pytest.mark.unit
def test_clear_run_log_truncates_current_log(layout: WorkspaceLayout, store: RunMetaStore) -> None:
    p = _log(layout, 1, "run-build-7-1000.log", b"old output")
    store.save(1, RunMeta(app_id=7, type="BUILD", log_path=p.name))
    assert clear_run_log(layout, store, 1, 7, "build") == p
    assert p.read_bytes() == b""


@pytest.mark.unit
def test_clear_run_log_refuses_other_running_app(layout: WorkspaceLayout, store: RunMetaStore) -> None:
    p = _log(layout, 1, "run-build-8-1000.log", b"keep me")
    store.save(1, RunMeta(app_id=8, type="BUILD", log_path=p.name))
    with pytest.raises(InvalidArgument):
        clear_run_log(layout, store, 1, 7, "build")
    assert p.read_bytes() == b"keep me"


@pytest.mark.unit
def test_clear_run_log_without_any_log(layout: WorkspaceLayout, store: RunMetaStore) -> None:
    with pytest.raises(NotFound):
        clear_run_log(layout, store, 1, 7, "start")


@pytest.mark.unit
def test_prune_run_logs_keeps_newest_per_op(layout: WorkspaceLayout) -> None:
    for ts in (1, 2, 3, 4, 5):
        _log(layout, 1, f"run-build-{ts % 2 + 1}-{ts}.log")
    _log(layout, 1, "run-start-1-1.log")
    run_dir = layout.run_dir(1)

    assert prune_run_logs(run_dir, "build", 0) == 0
    assert prune_run_logs(run_dir, "build", 2) == 3
    remaining = sorted(p.name for p in run_dir.iterdir())
    assert remaining == ["run-build-1-4.log", "run-build-2-5.log", "run-start-1-1.log"]
