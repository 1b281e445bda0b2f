"""Crash-safe writes for rollback snapshots.

Snapshot files are written beside their final location and renamed into
place, and a finished snapshot directory is published with a single
directory rename, so a crash never leaves a half-written snapshot under
its real key.
"""
from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any


def _sync_parent(path: Path) -> None:
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(str(path.parent), flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Not every filesystem supports fsync on a directory.
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place.

    Patches with binary hunks go through here unchanged; no decoding is
    attempted.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
        _sync_parent(path)
    finally:
        tmp_path.unlink(missing_ok=True)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, content.encode(encoding))


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True))


def publish_dir(staging_dir: Path, target_dir: Path) -> None:
    """Move a fully written ``staging_dir`` to ``target_dir``, replacing it.

    Both directories must share a parent so the final step is a rename.
    """
    if target_dir.exists():
        shutil.rmtree(target_dir)
    os.replace(staging_dir, target_dir)
    _sync_parent(target_dir)
