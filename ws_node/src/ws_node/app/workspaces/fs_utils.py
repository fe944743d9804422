from __future__ import annotations

"""
App file operations on the host, scoped to one app directory.

This module provides:
- write_file_content: text writes guarded by optimistic locking on lastModifiedMs
- read_file_content, create_directory, delete_path, move_path, list_file_tree,
  resolve_download
- save_uploaded_file: binary uploads, staged then moved into place
- iter_app_zip: streamed zip export of an app directory

Every client path goes through resolve_safe_path, so nothing here can reach
outside the app directory.

Optimistic locking notes:
- "Must not exist" creation (expectedLastModifiedMs 0/-1 on an absent file) is a
  single O_CREAT|O_EXCL open, so exactly one concurrent creator wins.
- Overwriting an existing file stages the content next to it and moves it into
  place with os.replace. The mtime is checked right before the replace; a
  writer landing between that check and the replace is not detected. That
  window is accepted for human-driven editor saves.
"""

import io
import logging
import os
import shutil
import stat
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Set, Tuple

from ws_node.app.config import DEFAULT_MAX_TEXT_FILE_BYTES
from ws_node.app.errors import ConcurrentModification, InvalidArgument, IOFailure, NotFound
from ws_node.app.models import FileNode, FileReadResult
from ws_node.app.workspaces.paths import normalize_rel_path, resolve_safe_path

__all__ = [
    "MUST_NOT_EXIST",
    "DEFAULT_IGNORED_NAMES",
    "last_modified_ms",
    "ensure_dir",
    "write_file_content",
    "read_file_content",
    "create_directory",
    "delete_path",
    "move_path",
    "list_file_tree",
    "resolve_download",
    "save_uploaded_file",
    "ZIP_EXCLUDED_NAMES",
    "iter_app_zip",
]

logger = logging.getLogger("workspace_node")

# expectedLastModifiedMs values meaning "the file must not exist yet"
MUST_NOT_EXIST = (0, -1)

DEFAULT_IGNORED_NAMES = frozenset(
    {"node_modules", ".git", "dist", "build", ".next", "target", ".npm-cache", ".funai"}
)

# left out of zip exports; node_modules can be opted back in
ZIP_EXCLUDED_NAMES = frozenset({"node_modules", ".git", "dist", "build", ".next", "target"})

_CHUNK = 64 * 1024


def last_modified_ms(p: Path) -> int:
    return p.stat().st_mtime_ns // 1_000_000


def _safe_last_modified_ms(p: Path) -> Optional[int]:
    try:
        return last_modified_ms(p)
    except OSError:
        return None


def _safe_size(p: Path) -> Optional[int]:
    try:
        return p.stat().st_size
    except OSError:
        return None


def ensure_dir(d: Path) -> Path:
    try:
        d.mkdir(parents=True, exist_ok=True)
    except FileExistsError as e:
        raise InvalidArgument(f"path exists and is not a directory: {d.name}") from e
    except OSError as e:
        raise IOFailure(f"failed to create directory {d}: {e}") from e
    return d


# --------------------------
# Optimistic write guard
# --------------------------

def _check_expectation(file: Path, expected: int) -> Optional[os.stat_result]:
    """
    Validate the caller's view of file against disk. Returns the current stat (None if absent).
    """
    try:
        st = file.stat()
    except FileNotFoundError:
        st = None
    if st is not None:
        current = st.st_mtime_ns // 1_000_000
        if current != expected:
            raise ConcurrentModification(
                f"file was modified by someone else (currentLastModifiedMs={current}); reload before saving"
            )
        return st
    if expected not in MUST_NOT_EXIST:
        raise ConcurrentModification(
            f"file does not exist, expectedLastModifiedMs={expected} does not match "
            "(pass 0 or -1 to require that it does not exist)"
        )
    return None


def _create_exclusive(file: Path, data: bytes) -> None:
    try:
        fd = os.open(str(file), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError as e:
        raise ConcurrentModification("file was created by someone else; reload before saving") from e
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
    except BaseException:
        # a partial file would turn every later "must not exist" save into a 409
        try:
            file.unlink()
        except OSError:
            pass
        raise


def _replace_contents(file: Path, data: bytes, previous: Optional[os.stat_result], expected: Optional[int]) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{file.name}.", suffix=".tmp", dir=str(file.parent))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.chmod(tmp, stat.S_IMODE(previous.st_mode) if previous is not None else 0o644)
        if expected is not None:
            # last look before the swap; see module notes for the remaining window
            _check_expectation(file, expected)
        os.replace(tmp, file)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def _ensure_mtime_advanced(file: Path, floor_ms: Optional[int]) -> int:
    """
    Make sure the new lastModifiedMs is strictly greater than floor_ms.

    Coarse filesystem clocks can leave the mtime unchanged across two quick
    saves, which would let a stale expectation pass.
    """
    st = file.stat()
    current = st.st_mtime_ns // 1_000_000
    if floor_ms is not None and current <= floor_ms:
        bumped = floor_ms + 1
        os.utime(file, ns=(st.st_atime_ns, bumped * 1_000_000))
        current = bumped
    return current


def write_file_content(
    root: Path,
    rel_path: str,
    content: Optional[str],
    *,
    user_id: int,
    app_id: int,
    expected_last_modified_ms: Optional[int] = None,
    force_write: bool = False,
    create_parents: bool = True,
    max_bytes: int = DEFAULT_MAX_TEXT_FILE_BYTES,
) -> FileReadResult:
    """
    Write UTF-8 text to root/rel_path.

    - force_write skips the lock check entirely.
    - expected_last_modified_ms None disables the check (not recommended).
    - existing file: expectation must equal its lastModifiedMs.
    - absent file: expectation must be 0 or -1.
    Mismatches raise ConcurrentModification; a missing parent with
    create_parents=False raises NotFound.
    """
    file = resolve_safe_path(root, rel_path, allow_empty=False)
    if file.is_dir():
        raise InvalidArgument(f"target is a directory: {normalize_rel_path(root, file)}")

    data = (content or "").encode("utf-8")
    if len(data) > max_bytes:
        raise InvalidArgument(f"content too large ({len(data)} bytes); split it or upload the file instead")

    parent = file.parent
    if not parent.is_dir():
        if not create_parents:
            raise NotFound(f"parent directory does not exist: {normalize_rel_path(root, parent)}")
        ensure_dir(parent)

    expected = None if force_write else expected_last_modified_ms
    try:
        if expected is not None:
            previous = _check_expectation(file, expected)
            if previous is None:
                _create_exclusive(file, data)
            else:
                _replace_contents(file, data, previous, expected)
            floor = expected
        else:
            try:
                previous = file.stat()
            except FileNotFoundError:
                previous = None
            _replace_contents(file, data, previous, None)
            floor = previous.st_mtime_ns // 1_000_000 if previous is not None else None
        new_ms = _ensure_mtime_advanced(file, floor)
    except OSError as e:
        raise IOFailure(f"failed to write file: {e}") from e

    logger.debug(
        "file written: userId=%s appId=%s path=%s bytes=%s forced=%s",
        user_id, app_id, rel_path, len(data), force_write,
    )
    return FileReadResult(
        user_id=user_id,
        app_id=app_id,
        path=normalize_rel_path(root, file),
        content=None,
        size=len(data),
        last_modified_ms=new_ms,
    )


# --------------------------
# Other file operations
# --------------------------

def read_file_content(
    root: Path,
    rel_path: str,
    *,
    user_id: int,
    app_id: int,
    max_bytes: int = DEFAULT_MAX_TEXT_FILE_BYTES,
) -> FileReadResult:
    file = resolve_safe_path(root, rel_path, allow_empty=False)
    rel = normalize_rel_path(root, file)
    if not file.is_file():
        raise NotFound(f"file not found: {rel}")
    try:
        st = file.stat()
        if st.st_size > max_bytes:
            raise InvalidArgument(f"file too large ({st.st_size} bytes) to open online")
        text = file.read_bytes().decode("utf-8", errors="replace")
    except OSError as e:
        raise IOFailure(f"failed to read file: {e}") from e
    return FileReadResult(
        user_id=user_id,
        app_id=app_id,
        path=rel,
        content=text,
        size=st.st_size,
        last_modified_ms=st.st_mtime_ns // 1_000_000,
    )


def create_directory(root: Path, rel_path: str, create_parents: bool = True) -> Path:
    d = resolve_safe_path(root, rel_path, allow_empty=False)
    if d.exists() and not d.is_dir():
        raise InvalidArgument(f"path exists and is not a directory: {normalize_rel_path(root, d)}")
    try:
        d.mkdir(parents=create_parents, exist_ok=True)
    except FileNotFoundError as e:
        raise NotFound(f"parent directory does not exist: {normalize_rel_path(root, d.parent)}") from e
    except OSError as e:
        raise IOFailure(f"failed to create directory: {e}") from e
    return d


def _remove(target: Path) -> None:
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()


def delete_path(root: Path, rel_path: str) -> bool:
    """
    Delete a file or directory tree. Returns False when nothing was there.
    """
    target = resolve_safe_path(root, rel_path, allow_empty=False)
    if target == resolve_safe_path(root, "", allow_empty=True):
        raise InvalidArgument("refusing to delete the app root directory")
    if not target.exists() and not target.is_symlink():
        return False
    try:
        _remove(target)
    except OSError as e:
        raise IOFailure(f"delete failed: {e}") from e
    return True


def move_path(root: Path, from_path: str, to_path: str, overwrite: bool = False) -> Path:
    src = resolve_safe_path(root, from_path, allow_empty=False)
    dst = resolve_safe_path(root, to_path, allow_empty=False)
    app_root = resolve_safe_path(root, "", allow_empty=True)
    if not src.exists():
        raise NotFound(f"source does not exist: {normalize_rel_path(root, src)}")
    if dst == app_root:
        raise InvalidArgument("illegal target path")
    if src == dst:
        return dst
    if src in dst.parents:
        raise InvalidArgument("cannot move a directory into itself")
    ensure_dir(dst.parent)
    try:
        if dst.exists():
            if not overwrite:
                raise InvalidArgument(f"target already exists: {normalize_rel_path(root, dst)}")
            _remove(dst)
        os.replace(src, dst)
    except OSError as e:
        raise IOFailure(f"move failed: {e}") from e
    return dst


@dataclass
class _Budget:
    limit: int
    used: int = 0

    def allow(self) -> bool:
        return self.used < self.limit

    def take(self) -> bool:
        self.used += 1
        return self.used <= self.limit


def _list_dir(root: Path, d: Path, depth: int, ignores: Set[str], budget: _Budget) -> List[FileNode]:
    if depth < 0 or not budget.allow():
        return []
    try:
        children = sorted(d.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
    except OSError as e:
        raise IOFailure(f"failed to list directory: {e}") from e

    nodes: List[FileNode] = []
    for p in children:
        if not budget.allow():
            break
        if p.name in ignores:
            continue
        if p.is_dir():
            sub: List[FileNode] = []
            if budget.take() and depth > 0:
                sub = _list_dir(root, p, depth - 1, ignores, budget)
            nodes.append(
                FileNode(
                    name=p.name,
                    path=normalize_rel_path(root, p),
                    type="DIR",
                    last_modified_ms=_safe_last_modified_ms(p),
                    children=sub,
                )
            )
        else:
            budget.take()
            nodes.append(
                FileNode(
                    name=p.name,
                    path=normalize_rel_path(root, p),
                    type="FILE",
                    size=_safe_size(p),
                    last_modified_ms=_safe_last_modified_ms(p),
                )
            )
    return nodes


def list_file_tree(
    root: Path,
    rel_path: Optional[str] = None,
    max_depth: Optional[int] = None,
    max_entries: Optional[int] = None,
    ignores: Set[str] = DEFAULT_IGNORED_NAMES,
) -> tuple[str, int, int, List[FileNode]]:
    """
    Directory tree under rel_path: (rootPath, depth, limit, nodes).

    Directories come first, then files, each ordered case-insensitively. A
    missing start directory yields an empty tree.
    """
    depth = 6 if max_depth is None else max(0, min(20, max_depth))
    limit = 5000 if max_entries is None else max(1, min(20000, max_entries))
    start = resolve_safe_path(root, rel_path, allow_empty=True)
    rel = normalize_rel_path(root, start)
    if not start.exists():
        return rel, depth, limit, []
    if not start.is_dir():
        raise InvalidArgument(f"not a directory: {rel}")
    return rel, depth, limit, _list_dir(root, start, depth, set(ignores), _Budget(limit))


def resolve_download(root: Path, rel_path: str) -> Path:
    file = resolve_safe_path(root, rel_path, allow_empty=False)
    if not file.is_file():
        raise NotFound(f"file not found: {normalize_rel_path(root, file)}")
    return file


def save_uploaded_file(
    root: Path,
    rel_path: str,
    src: BinaryIO,
    *,
    user_id: int,
    app_id: int,
    overwrite: bool = True,
    create_parents: bool = True,
) -> FileReadResult:
    """
    Store an uploaded binary stream at root/rel_path.

    The bytes are staged next to the target and moved into place, so a failed
    upload never leaves a truncated file. Empty uploads are rejected.
    """
    file = resolve_safe_path(root, rel_path, allow_empty=False)
    rel = normalize_rel_path(root, file)
    if file.is_dir():
        raise InvalidArgument(f"target is a directory: {rel}")
    if file.exists() and not overwrite:
        raise InvalidArgument(f"target already exists: {rel}")

    parent = file.parent
    if not parent.is_dir():
        if not create_parents:
            raise NotFound(f"parent directory does not exist: {normalize_rel_path(root, parent)}")
        ensure_dir(parent)

    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{file.name}.", suffix=".upload", dir=str(parent))
        try:
            with os.fdopen(fd, "wb") as fh:
                shutil.copyfileobj(src, fh, _CHUNK)
                size = fh.tell()
            if size == 0:
                raise InvalidArgument("uploaded file is empty")
            os.chmod(tmp, 0o644)
            os.replace(tmp, file)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        new_ms = last_modified_ms(file)
    except OSError as e:
        raise IOFailure(f"failed to store upload: {e}") from e

    logger.info("file uploaded: userId=%s appId=%s path=%s bytes=%s", user_id, app_id, rel, size)
    return FileReadResult(
        user_id=user_id,
        app_id=app_id,
        path=rel,
        content=None,
        size=size,
        last_modified_ms=new_ms,
    )


# --------------------------
# Zip export
# --------------------------

class _ZipSink(io.RawIOBase):
    """
    Write-only buffer handed to ZipFile. It cannot tell() or seek(), so
    ZipFile writes data descriptors and never goes back to patch headers.
    """

    def __init__(self) -> None:
        super().__init__()
        self._buf = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        self._buf += b
        return len(b)

    def drain(self) -> bytes:
        data = bytes(self._buf)
        self._buf.clear()
        return data


def _zip_entries(root: Path, excludes: Set[str]) -> Iterator[Tuple[Path, str]]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in excludes)
        base = Path(dirpath)
        for name in sorted(filenames):
            p = base / name
            if p.is_symlink() or not p.is_file():
                continue
            yield p, p.relative_to(root).as_posix()


def iter_app_zip(root: Path, include_node_modules: bool = False) -> Iterator[bytes]:
    """
    Stream the app directory as a zip archive, chunk by chunk.

    Build output, VCS metadata and (unless asked for) node_modules are left
    out. Symlinks are skipped. Files that vanish during the walk are skipped.
    """
    excludes = set(ZIP_EXCLUDED_NAMES)
    if include_node_modules:
        excludes.discard("node_modules")

    sink = _ZipSink()
    count = 0
    with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        if root.is_dir():
            for p, arcname in _zip_entries(root, excludes):
                try:
                    src = open(p, "rb")
                except FileNotFoundError:
                    continue
                with src:
                    info = zipfile.ZipInfo.from_file(p, arcname, strict_timestamps=False)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    with zf.open(info, "w") as dst:
                        while True:
                            chunk = src.read(_CHUNK)
                            if not chunk:
                                break
                            dst.write(chunk)
                            data = sink.drain()
                            if data:
                                yield data
                count += 1
                data = sink.drain()
                if data:
                    yield data
    tail = sink.drain()
    if tail:
        yield tail
    logger.info("zip export finished: root=%s files=%s", root, count)
