from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import pytest

from forkline.shared.services.durable_write import (
    atomic_write_bytes,
    atomic_write_json,
    atomic_write_text,
    publish_dir,
)
from forkline.shared.services.snapshot import RollbackSnapshotService, workspace_key

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _git(path, "init", "-q")
    _git(path, "config", "user.email", "dev@example.com")
    _git(path, "config", "user.name", "Dev")
    (path / "tracked.txt").write_text("v1\n")
    _git(path, "add", "tracked.txt")
    _git(path, "commit", "-q", "-m", "init")
    return path


@pytest.fixture
def service(tmp_path: Path) -> RollbackSnapshotService:
    return RollbackSnapshotService(tmp_path / "snapshots")


def test_create_then_apply_restores_working_tree(repo: Path, service: RollbackSnapshotService) -> None:
    (repo / "tracked.txt").write_text("v2\n")
    (repo / "new.txt").write_text("created by the engine\n")
    snap_dir = service.create(repo, "uuid-1")

    meta = json.loads((snap_dir / "meta.json").read_text())
    assert meta["message_uuid"] == "uuid-1"
    assert meta["git_head"]
    assert service.exists(repo, "uuid-1")

    # Later changes that the rollback must undo.
    (repo / "tracked.txt").write_text("v3\n")
    (repo / "new.txt").write_text("edited later\n")
    (repo / "later.txt").write_text("should disappear\n")

    result = service.apply(repo, "uuid-1")

    assert result.success
    assert (repo / "tracked.txt").read_text() == "v2\n"
    assert (repo / "new.txt").read_text() == "created by the engine\n"
    assert not (repo / "later.txt").exists()


def test_clean_tree_snapshot_resets_changes(repo: Path, service: RollbackSnapshotService) -> None:
    service.create(repo, "clean")
    (repo / "tracked.txt").write_text("dirty\n")

    assert service.apply(repo, "clean").success
    assert (repo / "tracked.txt").read_text() == "v1\n"


def test_binary_changes_round_trip(repo: Path, service: RollbackSnapshotService) -> None:
    image = repo / "img.bin"
    image.write_bytes(b"\x00\x01\x02orig")
    _git(repo, "add", "img.bin")
    _git(repo, "commit", "-q", "-m", "add image")

    image.write_bytes(b"\x00\x01\x02first\xff")
    service.create(repo, "u1")
    image.write_bytes(b"\x00\x01\x02second")

    result = service.apply(repo, "u1")

    assert result.success, result.error
    assert image.read_bytes() == b"\x00\x01\x02first\xff"


def test_patch_that_no_longer_applies_leaves_workspace_untouched(
    repo: Path, service: RollbackSnapshotService,
) -> None:
    (repo / "tracked.txt").write_text("v2\n")
    service.create(repo, "u1")
    # HEAD moves on, so the saved patch no longer fits.
    (repo / "tracked.txt").write_text("rewritten\n")
    _git(repo, "commit", "-q", "-am", "rewrite")
    (repo / "tracked.txt").write_text("current\n")
    (repo / "keep.txt").write_text("untracked work\n")

    result = service.apply(repo, "u1")

    assert not result.success
    assert result.found is True
    assert "git apply failed" in result.error
    assert (repo / "tracked.txt").read_text() == "current\n"
    assert (repo / "keep.txt").read_text() == "untracked work\n"


def test_failed_restore_puts_current_state_back(
    repo: Path, service: RollbackSnapshotService, monkeypatch,
) -> None:
    service.create(repo, "u1")
    (repo / "tracked.txt").write_text("current\n")
    (repo / "later.txt").write_text("made after the snapshot\n")

    restore = service._restore
    calls = []

    def flaky_restore(cwd, snap_dir):
        calls.append(snap_dir.name)
        error = restore(cwd, snap_dir)
        if len(calls) == 1:
            return "git apply failed: disk full"
        return error

    monkeypatch.setattr(service, "_restore", flaky_restore)

    result = service.apply(repo, "u1")

    assert not result.success
    assert result.error == "git apply failed: disk full"
    assert calls[0] == "u1"
    assert calls[1].startswith(".pre-rollback-")
    assert (repo / "tracked.txt").read_text() == "current\n"
    assert (repo / "later.txt").read_text() == "made after the snapshot\n"
    assert [p.name for p in service.snapshot_dir(repo, "u1").parent.iterdir()] == ["u1"]


def test_create_replaces_existing_snapshot(repo: Path, service: RollbackSnapshotService) -> None:
    service.create(repo, "u")
    (repo / "tracked.txt").write_text("v2\n")
    service.create(repo, "u")
    (repo / "tracked.txt").write_text("v3\n")

    service.apply(repo, "u")
    assert (repo / "tracked.txt").read_text() == "v2\n"
    leftovers = [p.name for p in service.snapshot_dir(repo, "u").parent.iterdir()]
    assert leftovers == ["u"]


def test_apply_missing_snapshot(repo: Path, service: RollbackSnapshotService) -> None:
    result = service.apply(repo, "nope")
    assert not result.success
    assert result.found is False


def test_delete(repo: Path, service: RollbackSnapshotService) -> None:
    service.create(repo, "u")
    assert service.delete(repo, "u") is True
    assert service.delete(repo, "u") is False
    assert not service.exists(repo, "u")


def test_workspace_key_is_stable_for_equivalent_paths(repo: Path) -> None:
    assert workspace_key(repo) == workspace_key(f"{repo}/sub/..")
    assert len(workspace_key(repo)) == 16


def test_atomic_writes_leave_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "out" / "meta.json"
    atomic_write_json(target, {"b": 1, "a": 2})
    atomic_write_text(target.with_name("notes.txt"), "hello")

    assert json.loads(target.read_text()) == {"a": 2, "b": 1}
    assert sorted(p.name for p in target.parent.iterdir()) == ["meta.json", "notes.txt"]


def test_atomic_write_bytes_keeps_binary_content(tmp_path: Path) -> None:
    target = tmp_path / "snap" / "working_tree.patch"
    atomic_write_bytes(target, b"GIT binary patch\n\x00\xff")
    assert target.read_bytes() == b"GIT binary patch\n\x00\xff"


def test_publish_dir_replaces_target(tmp_path: Path) -> None:
    target = tmp_path / "u1"
    target.mkdir()
    (target / "old.txt").write_text("old")
    staging = tmp_path / ".tmp-u1"
    staging.mkdir()
    (staging / "meta.json").write_text("{}")

    publish_dir(staging, target)

    assert not staging.exists()
    assert sorted(p.name for p in target.iterdir()) == ["meta.json"]
