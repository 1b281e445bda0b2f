"""Rollback snapshot service: capture and restore a workspace's working tree.

A snapshot is keyed by (workspace path, engine message uuid). It stores
the tracked-file diff against HEAD as a patch plus copies of untracked
files, so a workspace can be put back to the state it had right after a
given assistant message without touching the git commit history.
"""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from forkline.shared.services.durable_write import (
    atomic_write_bytes,
    atomic_write_json,
    publish_dir,
)

logger = logging.getLogger(__name__)

_GIT_TIMEOUT = 10
PATCH_NAME = "working_tree.patch"
# Snapshot of the current state taken just before a rollback.
_RESCUE_PREFIX = ".pre-rollback-"


@dataclass
class RollbackResult:
    success: bool
    found: bool = True
    error: str | None = None


def workspace_key(workspace_path: str | Path) -> str:
    resolved = str(Path(workspace_path).expanduser().resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


class RollbackSnapshotService:
    """Create and apply git-backed snapshots of a workspace."""

    def __init__(self, snapshots_dir: Path) -> None:
        self._snapshots_dir = Path(snapshots_dir)
        self._snapshots_dir.mkdir(parents=True, exist_ok=True)

    def snapshot_dir(self, workspace_path: str | Path, message_uuid: str) -> Path:
        return self._snapshots_dir / workspace_key(workspace_path) / message_uuid

    def exists(self, workspace_path: str | Path, message_uuid: str) -> bool:
        return (self.snapshot_dir(workspace_path, message_uuid) / "meta.json").exists()

    def create(self, workspace_path: str | Path, message_uuid: str) -> Path:
        """Capture the workspace state for ``message_uuid``.

        An existing snapshot for the same key is replaced. Returns the
        snapshot directory.
        """
        cwd = Path(workspace_path)
        snap_dir = self.snapshot_dir(cwd, message_uuid)
        snap_dir.parent.mkdir(parents=True, exist_ok=True)
        staging_dir = snap_dir.parent / f".tmp-{message_uuid}-{uuid.uuid4().hex[:8]}"
        staging_dir.mkdir(parents=True, exist_ok=False)

        try:
            atomic_write_json(staging_dir / "meta.json", {
                "message_uuid": message_uuid,
                "workspace_path": str(cwd),
                "timestamp": datetime.now().isoformat(),
                "git_head": self._git_head(cwd),
            })

            diff = self._git(cwd, "diff", "HEAD", "--binary", text=False)
            if diff is not None and diff.returncode == 0 and diff.stdout:
                atomic_write_bytes(staging_dir / PATCH_NAME, diff.stdout)

            for rel_path in self._untracked_files(cwd):
                src = cwd / rel_path
                if src.is_file():
                    dst = staging_dir / "untracked" / rel_path
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(str(src), str(dst))

            publish_dir(staging_dir, snap_dir)
        except Exception:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise

        logger.info(
            "Created rollback snapshot %s for %s", message_uuid[:8], cwd,
        )
        return snap_dir

    def apply(self, workspace_path: str | Path, message_uuid: str) -> RollbackResult:
        """Restore the workspace to the snapshot taken for ``message_uuid``.

        The saved patch is checked against HEAD before anything in the
        workspace is touched. The current state is captured first and put
        back if restoring the snapshot fails part way.
        """
        cwd = Path(workspace_path)
        snap_dir = self.snapshot_dir(cwd, message_uuid)
        if not (snap_dir / "meta.json").exists():
            return RollbackResult(
                success=False, found=False, error="Checkpoint not found",
            )

        problem = self._check_patch(cwd, snap_dir / PATCH_NAME)
        if problem:
            logger.warning(
                "Snapshot %s does not apply to %s: %s", message_uuid[:8], cwd, problem,
            )
            return RollbackResult(success=False, error=f"git apply failed: {problem}")

        rescue_key = f"{_RESCUE_PREFIX}{uuid.uuid4().hex[:12]}"
        try:
            rescue_dir = self.create(cwd, rescue_key)
        except OSError as exc:
            logger.warning("Could not capture current state of %s: %s", cwd, exc)
            return RollbackResult(success=False, error=f"Could not save current state: {exc}")
        try:
            error = self._restore(cwd, snap_dir)
            if error:
                logger.warning(
                    "Failed to apply snapshot %s: %s; restoring previous state",
                    message_uuid[:8], error,
                )
                undo_error = self._restore(cwd, rescue_dir)
                if undo_error:
                    logger.error(
                        "Could not restore previous state of %s: %s", cwd, undo_error,
                    )
                return RollbackResult(success=False, error=error)
        finally:
            shutil.rmtree(rescue_dir, ignore_errors=True)

        logger.info("Applied rollback snapshot %s to %s", message_uuid[:8], cwd)
        return RollbackResult(success=True)

    def delete(self, workspace_path: str | Path, message_uuid: str) -> bool:
        snap_dir = self.snapshot_dir(workspace_path, message_uuid)
        if snap_dir.exists():
            shutil.rmtree(snap_dir)
            return True
        return False

    def _restore(self, cwd: Path, snap_dir: Path) -> str | None:
        """Reset tracked files to HEAD, then replay a snapshot. Returns an error or None."""
        reset = self._git(cwd, "checkout", "--", ".")
        if reset is None or reset.returncode != 0:
            detail = reset.stderr.strip() if reset is not None else "git unavailable"
            return f"git checkout failed: {detail}"

        untracked_dir = snap_dir / "untracked"
        kept: set[str] = set()
        if untracked_dir.exists():
            kept = {
                p.relative_to(untracked_dir).as_posix()
                for p in untracked_dir.rglob("*") if p.is_file()
            }
        for rel_path in self._untracked_files(cwd):
            if rel_path not in kept:
                target = cwd / rel_path
                if target.is_file():
                    target.unlink()

        patch_file = snap_dir / PATCH_NAME
        if patch_file.exists() and patch_file.stat().st_size > 0:
            applied = self._git(cwd, "apply", "--binary", str(patch_file))
            if applied is None or applied.returncode != 0:
                detail = applied.stderr.strip() if applied is not None else "git unavailable"
                return f"git apply failed: {detail}"

        if untracked_dir.exists():
            for src in untracked_dir.rglob("*"):
                if src.is_file():
                    dst = cwd / src.relative_to(untracked_dir)
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(str(src), str(dst))
        return None

    def _check_patch(self, cwd: Path, patch_file: Path) -> str | None:
        """Dry-run the patch against HEAD in a scratch index."""
        if not patch_file.exists() or patch_file.stat().st_size == 0:
            return None
        with tempfile.TemporaryDirectory(prefix="forkline-index-") as scratch:
            env = {**os.environ, "GIT_INDEX_FILE": str(Path(scratch) / "index")}
            read = self._git(cwd, "read-tree", "HEAD", env=env)
            if read is None or read.returncode != 0:
                return read.stderr.strip() if read is not None else "git unavailable"
            check = self._git(
                cwd, "apply", "--check", "--cached", "--binary", str(patch_file), env=env,
            )
            if check is None or check.returncode != 0:
                return check.stderr.strip() if check is not None else "git unavailable"
        return None

    def _git(
        self,
        cwd: Path,
        *args: str,
        text: bool = True,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=str(cwd),
                capture_output=True,
                text=text,
                env=env,
                timeout=_GIT_TIMEOUT,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError):
            logger.debug("git %s failed in %s", args[0], cwd)
            return None

    def _untracked_files(self, cwd: Path) -> list[str]:
        result = self._git(cwd, "ls-files", "--others", "--exclude-standard")
        if result is None or result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _git_head(self, cwd: Path) -> str | None:
        result = self._git(cwd, "rev-parse", "HEAD")
        if result is not None and result.returncode == 0:
            return result.stdout.strip()
        return None
