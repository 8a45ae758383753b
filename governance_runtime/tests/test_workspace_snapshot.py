import os
import shutil
import subprocess

import pytest

from governance_runtime.artifacts.workspace_snapshot import (
    WORKSPACE_SNAPSHOT_ARTIFACT_TYPE,
    WorkspaceSnapshotError,
    collect_inventory,
    create_workspace_snapshot_artifact,
    detect_language,
)

from .conftest import FIXED_TIMESTAMP

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def git(root, *args):
    subprocess.run(["git", "-C", str(root), *args], check=True, capture_output=True)


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "src" / "release.py").write_text("def publish_release(tag):\n    return tag\n", encoding="utf-8")
    (root / "README.md").write_text("# Release tooling\n", encoding="utf-8")
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "node_modules" / "dep" / "index.js").write_text("module.exports = 1;\n", encoding="utf-8")
    (root / "data.bin").write_bytes(b"\x00\x01")

    git(root, "init", "-q")
    git(root, "symbolic-ref", "HEAD", "refs/heads/main")
    git(root, "config", "user.email", "ci@example.com")
    git(root, "config", "user.name", "CI")
    git(root, "add", "-A")
    git(root, "-c", "commit.gpgsign=false", "commit", "-q", "-m", "initial")
    return root


@requires_git
def test_snapshot_of_clean_worktree(repo, fixed_now):
    artifact = create_workspace_snapshot_artifact(str(repo), now=fixed_now, run_id_factory=lambda: "run-snap")

    assert artifact["artifact_type"] == WORKSPACE_SNAPSHOT_ARTIFACT_TYPE
    assert artifact["run_id"] == "run-snap"
    assert artifact["produced_at_utc"] == FIXED_TIMESTAMP
    assert artifact["inputs"] == []
    assert artifact["trace"] == {"workspace_root": os.path.realpath(repo), "source": "local_git_worktree"}

    payload = artifact["payload"]
    assert payload["git"]["branch"] == "main"
    assert len(payload["git"]["head_sha"]) == 40
    assert payload["git"]["is_dirty"] is False
    assert payload["inventory"] == {"files_scanned": 3, "files_supported": 2, "languages": ["Markdown", "Python"]}
    assert payload["filters"] == {"ignored_paths": [".git/**", "node_modules/**"]}
    assert payload["snapshot_hash"].startswith("sha256:")
    assert artifact["artifact_id"] == "wsnap_" + payload["snapshot_hash"][7:19]
    assert "decision" not in payload


@requires_git
def test_snapshot_is_deterministic(repo, fixed_now):
    first = create_workspace_snapshot_artifact(str(repo), now=fixed_now, run_id_factory=lambda: "run-a")
    second = create_workspace_snapshot_artifact(str(repo), now=fixed_now, run_id_factory=lambda: "run-a")

    assert first == second


@requires_git
def test_content_change_marks_dirty_and_changes_hash(repo):
    before = create_workspace_snapshot_artifact(str(repo))
    (repo / "src" / "release.py").write_text("def publish_release(tag):\n    return tag.strip()\n", encoding="utf-8")
    after = create_workspace_snapshot_artifact(str(repo))

    assert after["payload"]["git"]["is_dirty"] is True
    assert after["payload"]["snapshot_hash"] != before["payload"]["snapshot_hash"]


@requires_git
def test_custom_ignored_paths_are_normalized(repo):
    artifact = create_workspace_snapshot_artifact(str(repo), ignored_paths=["src/**", ".git/**", "node_modules/**"])

    assert artifact["payload"]["filters"]["ignored_paths"] == [".git/**", "node_modules/**", "src/**"]
    assert artifact["payload"]["inventory"]["languages"] == ["Markdown"]


def test_missing_root_is_unreadable(tmp_path):
    with pytest.raises(WorkspaceSnapshotError) as exc_info:
        create_workspace_snapshot_artifact(str(tmp_path / "absent"))

    assert exc_info.value.code == "WORKSPACE_ROOT_UNREADABLE"


def test_file_root_is_rejected(tmp_path):
    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")

    with pytest.raises(WorkspaceSnapshotError) as exc_info:
        create_workspace_snapshot_artifact(str(target))

    assert exc_info.value.code == "WORKSPACE_ROOT_NOT_DIRECTORY"


@pytest.mark.parametrize("root", [None, "", "   "])
def test_blank_root_is_invalid(root):
    with pytest.raises(WorkspaceSnapshotError) as exc_info:
        create_workspace_snapshot_artifact(root)

    assert exc_info.value.code == "INVALID_WORKSPACE_ROOT"


@pytest.mark.parametrize("ignored", ["src/**", ["src/**", " "]])
def test_invalid_ignored_paths(tmp_path, ignored):
    with pytest.raises(WorkspaceSnapshotError) as exc_info:
        create_workspace_snapshot_artifact(str(tmp_path), ignored_paths=ignored)

    assert exc_info.value.code == "INVALID_IGNORED_PATHS"


@requires_git
def test_directory_without_git_metadata(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    (plain / "notes.md").write_text("notes\n", encoding="utf-8")

    with pytest.raises(WorkspaceSnapshotError) as exc_info:
        create_workspace_snapshot_artifact(str(plain))

    assert exc_info.value.code == "GIT_METADATA_UNAVAILABLE"


def test_inventory_skips_symlinks_and_ignored(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.ts").write_text("export {}\n", encoding="utf-8")
    (tmp_path / "skip").mkdir()
    (tmp_path / "skip" / "x.py").write_text("x = 1\n", encoding="utf-8")
    try:
        os.symlink(tmp_path / "src" / "app.ts", tmp_path / "link.ts")
    except (OSError, NotImplementedError):
        pass

    inventory = collect_inventory(str(tmp_path), ["skip/**"])

    assert [record["path"] for record in inventory["files"]] == ["src/app.ts"]
    assert inventory["languages"] == ["TypeScript"]


@pytest.mark.parametrize(
    "path, language",
    [("a/b.PY", "Python"), ("docs/x.mdx", "Markdown"), ("policy.ls", "L-Semantica"), ("Makefile", None)],
)
def test_detect_language(path, language):
    assert detect_language(path) == language
