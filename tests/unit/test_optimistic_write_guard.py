from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from ws_node.app.errors import ConcurrentModification, InvalidArgument, IOFailure, NotFound
from ws_node.app.workspaces import fs_utils
from ws_node.app.workspaces.fs_utils import last_modified_ms, write_file_content


def _set_mtime_ms(p: Path, ms: int) -> None:
    os.utime(p, ns=(ms * 1_000_000, ms * 1_000_000))


def _write(root: Path, rel: str, content: str, **kw):
    return write_file_content(root, rel, content, user_id=1, app_id=7, **kw)


@pytest.mark.unit
@pytest.mark.parametrize("sentinel", [0, -1])
def test_create_requires_must_not_exist_sentinel(tmp_path: Path, sentinel: int) -> None:
    res = _write(tmp_path, "src/new.ts", "export {}", expected_last_modified_ms=sentinel)
    assert (tmp_path / "src" / "new.ts").read_text(encoding="utf-8") == "export {}"
    assert res.path == "src/new.ts"
    assert res.size == len("export {}")
    assert res.last_modified_ms == last_modified_ms(tmp_path / "src" / "new.ts")


@pytest.mark.unit
def test_create_with_stale_expectation_fails(tmp_path: Path) -> None:
    with pytest.raises(ConcurrentModification):
        _write(tmp_path, "a.txt", "x", expected_last_modified_ms=1_700_000_000_000)
    assert not (tmp_path / "a.txt").exists()


@pytest.mark.unit
def test_must_not_exist_fails_when_file_exists(tmp_path: Path) -> None:
    f = tmp_path / "a.txt"
    f.write_text("theirs", encoding="utf-8")
    with pytest.raises(ConcurrentModification):
        _write(tmp_path, "a.txt", "mine", expected_last_modified_ms=0)
    assert f.read_text(encoding="utf-8") == "theirs"


@pytest.mark.unit
def test_overwrite_with_matching_expectation(tmp_path: Path) -> None:
    f = tmp_path / "a.txt"
    f.write_text("v1", encoding="utf-8")
    _set_mtime_ms(f, 1_700_000_000_000)

    res = _write(tmp_path, "a.txt", "v2", expected_last_modified_ms=1_700_000_000_000)
    assert f.read_text(encoding="utf-8") == "v2"
    assert res.last_modified_ms > 1_700_000_000_000


@pytest.mark.unit
def test_overwrite_with_stale_expectation_leaves_file_untouched(tmp_path: Path) -> None:
    f = tmp_path / "a.txt"
    f.write_text("theirs", encoding="utf-8")
    _set_mtime_ms(f, 1_700_000_000_500)
    with pytest.raises(ConcurrentModification):
        _write(tmp_path, "a.txt", "mine", expected_last_modified_ms=1_700_000_000_000)
    assert f.read_text(encoding="utf-8") == "theirs"
    assert last_modified_ms(f) == 1_700_000_000_500
    # no staging leftovers
    assert [p.name for p in tmp_path.iterdir()] == ["a.txt"]


@pytest.mark.unit
def test_second_save_with_same_expectation_conflicts(tmp_path: Path) -> None:
    f = tmp_path / "a.txt"
    f.write_text("v1", encoding="utf-8")
    _set_mtime_ms(f, 1_700_000_000_000)
    _write(tmp_path, "a.txt", "first", expected_last_modified_ms=1_700_000_000_000)
    with pytest.raises(ConcurrentModification):
        _write(tmp_path, "a.txt", "second", expected_last_modified_ms=1_700_000_000_000)
    assert f.read_text(encoding="utf-8") == "first"


@pytest.mark.unit
def test_new_mtime_is_strictly_greater_even_when_clock_lags(tmp_path: Path) -> None:
    f = tmp_path / "a.txt"
    f.write_text("v1", encoding="utf-8")
    # mtime far in the future: a plain write would land "before" it
    future = 4_000_000_000_000
    _set_mtime_ms(f, future)
    res = _write(tmp_path, "a.txt", "v2", expected_last_modified_ms=future)
    assert res.last_modified_ms > future
    assert last_modified_ms(f) == res.last_modified_ms


@pytest.mark.unit
def test_force_write_skips_the_check(tmp_path: Path) -> None:
    f = tmp_path / "a.txt"
    f.write_text("theirs", encoding="utf-8")
    _write(tmp_path, "a.txt", "mine", expected_last_modified_ms=123, force_write=True)
    assert f.read_text(encoding="utf-8") == "mine"


@pytest.mark.unit
def test_no_expectation_writes_unconditionally(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "one")
    _write(tmp_path, "a.txt", "two")
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "two"


@pytest.mark.unit
def test_missing_parent_without_create_parents(tmp_path: Path) -> None:
    with pytest.raises(NotFound):
        _write(tmp_path, "deep/dir/a.txt", "x", expected_last_modified_ms=0, create_parents=False)
    assert not (tmp_path / "deep").exists()


@pytest.mark.unit
def test_rejects_directory_target_oversize_and_escape(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    with pytest.raises(InvalidArgument):
        _write(tmp_path, "src", "x", expected_last_modified_ms=0)
    with pytest.raises(InvalidArgument):
        _write(tmp_path, "big.txt", "x" * 11, expected_last_modified_ms=0, max_bytes=10)
    with pytest.raises(InvalidArgument):
        _write(tmp_path, "../escape.txt", "x", expected_last_modified_ms=0)


@pytest.mark.unit
def test_concurrent_creators_exactly_one_wins(tmp_path: Path) -> None:
    n = 8
    barrier = threading.Barrier(n)
    results: list[str] = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        barrier.wait()
        try:
            _write(tmp_path, "race.txt", f"writer-{i}", expected_last_modified_ms=0)
            outcome = f"ok:{i}"
        except ConcurrentModification:
            outcome = "conflict"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [r for r in results if r.startswith("ok:")]
    assert len(winners) == 1
    assert results.count("conflict") == n - 1
    winner = winners[0].split(":", 1)[1]
    assert (tmp_path / "race.txt").read_text(encoding="utf-8") == f"writer-{winner}"


class _DiskFull:
    def __init__(self, fd: int) -> None:
        os.close(fd)

    def __enter__(self) -> "_DiskFull":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def write(self, data: bytes) -> int:
        raise OSError(28, "No space left on device")


@pytest.mark.unit
def test_failed_first_write_leaves_no_file_behind(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    with monkeypatch.context() as m:
        m.setattr(fs_utils.os, "fdopen", lambda fd, mode: _DiskFull(fd))
        with pytest.raises(IOFailure):
            _write(tmp_path, "a.txt", "mine", expected_last_modified_ms=0)
    assert not (tmp_path / "a.txt").exists()

    # the next "must not exist" save is not blocked by a leftover
    _write(tmp_path, "a.txt", "mine", expected_last_modified_ms=0)
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "mine"
