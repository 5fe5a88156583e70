"""
mcruntime.fileops
-----------------

File operations used by the download engine, the caches and the repair manager:

- atomic_write / write_json_atomic: write bytes, chunks or JSON atomically (temp -> fsync -> replace)
- copy_file_atomic: copy a file next to its destination then promote it
- read_json: tolerant JSON document loader
- is_same_file: compute and compare checksums against expected hashes
- is_zip_archive: structural check for jars and zips
- safe_remove: remove a file or a directory tree with retries
- temp_part_path: ".part" side-file naming for in-progress downloads
- prune_oldest: keep the newest N entries of a directory

Notes:
- Every helper that promotes a file does so with os.replace in the destination
  directory, so a reader never sees a partially written file at the final path.
"""

from __future__ import annotations

import os
import json
import shutil
import tempfile
import time
import zipfile
from pathlib import Path
from typing import *

from .utils import file_digest
from .exceptions import FileOperationError


def _fsync_fileobj(fp) -> None:
    """
    Flush and fsync a file object. Platforms without fsync support are ignored.
    """
    fp.flush()
    try:
        os.fsync(fp.fileno())
    except (OSError, AttributeError, ValueError):
        pass


def atomic_write(dest_path: Path,
                 data: Optional[bytes] = None,
                 chunks: Optional[Iterable[bytes]] = None,
                 *,
                 tmp_suffix: Optional[str] = None) -> Path:
    """
    Atomically write `data` or an iterable of `chunks` to `dest_path`.

    Parameters
    ----------
    dest_path : Path
        Final destination path for the file.
    data : Optional[bytes]
        Whole payload. If provided, `chunks` must be None.
    chunks : Optional[Iterable[bytes]]
        Iterable yielding bytes chunks. If provided, `data` must be None.
    tmp_suffix : Optional[str]
        Suffix for the temporary file (default ".tmp").

    Returns
    -------
    Path
        The final destination path.

    Raises
    ------
    ValueError
        If neither or both of `data` and `chunks` are provided.
    FileOperationError
        On I/O errors during write or replace.
    """
    dest_path = Path(dest_path)
    if (data is None and chunks is None) or (data is not None and chunks is not None):
        raise ValueError("Provide exactly one of `data` or `chunks`.")

    tmp: Optional[Path] = None
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(dest_path.parent), prefix=f".{dest_path.name}.",
                                        suffix=(tmp_suffix or ".tmp"))
        tmp = Path(tmp_name)
        with os.fdopen(fd, "wb") as f:
            if data is not None:
                f.write(data)
            else:
                for chunk in chunks:
                    if chunk:
                        f.write(chunk)
            _fsync_fileobj(f)
        os.replace(str(tmp), str(dest_path))
        return dest_path
    except OSError as exc:
        if tmp is not None and tmp.exists():
            tmp.unlink(missing_ok=True)
        raise FileOperationError(f"atomic write failed: {exc}",
                                 context={"op": "write", "path": str(dest_path)}) from exc


def write_json_atomic(dest_path: Path, obj: Any, *, indent: Optional[int] = 2) -> Path:
    """Serialize `obj` as UTF-8 JSON and write it atomically."""
    payload = json.dumps(obj, indent=indent, ensure_ascii=False, sort_keys=False)
    return atomic_write(dest_path, payload.encode("utf-8"))


def read_json(path: Path, default: Any = None) -> Any:
    """
    Load a JSON document from disk.

    Missing, unreadable or malformed files yield `default`; callers that need
    to distinguish those cases should use ``json.loads`` directly.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return default
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return default


def copy_file_atomic(src: Path, dest: Path) -> Path:
    """
    Copy `src` to `dest` through a temporary sibling of `dest`.

    Raises
    ------
    FileOperationError
        If the copy or the promotion fails.
    """
    src = Path(src)
    dest = Path(dest)
    tmp: Optional[Path] = None
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(dest.parent), prefix=f".{dest.name}.", suffix=".tmp")
        tmp = Path(tmp_name)
        with os.fdopen(fd, "wb") as out, open(src, "rb") as inp:
            shutil.copyfileobj(inp, out, 1024 * 1024)
            _fsync_fileobj(out)
        os.replace(str(tmp), str(dest))
        return dest
    except OSError as exc:
        if tmp is not None and tmp.exists():
            tmp.unlink(missing_ok=True)
        raise FileOperationError(f"copy failed: {exc}",
                                 context={"op": "copy", "src": str(src), "path": str(dest)}) from exc


def is_same_file(local_path: Path, expected_hashes: Optional[Dict[str, str]] = None) -> Tuple[bool, Dict[str, str]]:
    """
    Check if `local_path` matches the expected hashes.

    Only the algorithms present in `expected_hashes` are computed.

    Parameters
    ----------
    local_path : Path
        Local file path to check.
    expected_hashes : Optional[Dict[str, str]]
        Mapping of algorithm -> expected hex value, e.g. {"sha1": "..."}.
        If None or empty, returns (False, {}) because there is nothing to compare to.

    Returns
    -------
    (bool, Dict[str,str])
        Tuple of (all_expected_match, computed_hashes).

    Raises
    ------
    FileNotFoundError
        If the local file does not exist.
    """
    path = Path(local_path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    if not expected_hashes:
        return False, {}

    computed: Dict[str, str] = {}
    for algo, expected in expected_hashes.items():
        if not expected:
            continue
        algo = algo.lower()
        computed[algo] = file_digest(path, algo)
        if computed[algo] != expected.lower():
            return False, computed
    return bool(computed), computed


def is_zip_archive(path: Path) -> bool:
    """
    True when `path` is a readable zip/jar whose central directory parses and
    that holds at least one entry.
    """
    path = Path(path)
    if not path.is_file():
        return False
    try:
        with zipfile.ZipFile(path, "r") as zf:
            return len(zf.infolist()) > 0
    except (zipfile.BadZipFile, OSError, ValueError):
        return False


def read_zip_entry(path: Path, name: str) -> Optional[bytes]:
    """Return the bytes of one archive entry, or None if absent or unreadable."""
    try:
        with zipfile.ZipFile(path, "r") as zf:
            try:
                return zf.read(name)
            except KeyError:
                return None
    except (zipfile.BadZipFile, OSError, ValueError):
        return None


def safe_remove(path: Path, *, retries: int = 3, delay: float = 0.2) -> None:
    """
    Remove a file or directory, retrying on transient errors (Windows file
    locks held by antivirus scanners are the usual culprit).

    Raises
    ------
    OSError
        If removal still fails after `retries` attempts.
    """
    path = Path(path)
    attempt = 0
    while True:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists() or path.is_symlink():
                path.unlink()
            return
        except FileNotFoundError:
            return
        except OSError:
            attempt += 1
            if attempt > retries:
                raise
            time.sleep(delay)


def temp_part_path(dest: Path) -> Path:
    """
    Return the ".part" side-file path for an in-progress download of `dest`.
    """
    dest = Path(dest)
    return dest.with_name(dest.name + ".part")


def prune_oldest(folder: Path, keep: int) -> int:
    """
    Delete the oldest entries (by mtime) of `folder`, keeping the newest `keep`.

    Returns the number of removed entries.
    """
    folder = Path(folder)
    if not folder.is_dir():
        return 0
    entries = sorted(folder.iterdir(), key=lambda p: p.stat().st_mtime, reverse=True)
    removed = 0
    for entry in entries[keep:]:
        safe_remove(entry)
        removed += 1
    return removed
