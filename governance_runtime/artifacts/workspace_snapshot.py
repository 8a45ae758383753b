"""
Workspace snapshot stage.

Captures git head/branch/dirty state, a file inventory and a deterministic
content hash for a local worktree. The snapshot makes no decision; it only
records what downstream stages will reason about.
"""

from __future__ import annotations

import hashlib
import os
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import structlog

from governance_runtime.artifacts.envelope import ArtifactStageError, build_envelope, canonical_json, sha256_hex
from governance_runtime.artifacts.globs import matches_any, normalize_patterns, to_posix
from governance_runtime.utils.hooks import call_id_factory, normalize_optional_str, resolve_run_id

logger = structlog.get_logger(__name__)

WORKSPACE_SNAPSHOT_ARTIFACT_TYPE = "ls.m2.workspace_snapshot"
WORKSPACE_SNAPSHOT_SCHEMA_VERSION = "1.0.0"
WORKSPACE_SNAPSHOT_TRACE_SOURCE = "local_git_worktree"
DEFAULT_IGNORED_PATHS = (".git/**", "node_modules/**")
GIT_TIMEOUT_SECONDS = 30

SUPPORTED_LANGUAGE_BY_EXTENSION = {
    ".cjs": "JavaScript",
    ".js": "JavaScript",
    ".json": "JSON",
    ".jsx": "JavaScript",
    ".ls": "L-Semantica",
    ".md": "Markdown",
    ".mdx": "Markdown",
    ".mjs": "JavaScript",
    ".py": "Python",
    ".sh": "Shell",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".yaml": "YAML",
    ".yml": "YAML",
}


class WorkspaceSnapshotError(ArtifactStageError):
    """Raised when the workspace cannot be captured."""

    def __init__(self, message: str, code: str, workspace_root: Optional[str] = None):
        super().__init__(message, code)
        self.workspace_root = workspace_root


@dataclass(frozen=True)
class WorkspaceFile:
    path: str
    absolute_path: str
    size_bytes: int


@dataclass
class GitSummary:
    head_sha: str
    branch: str
    is_dirty: bool
    status_porcelain: str


def detect_language(relative_path: str) -> Optional[str]:
    return SUPPORTED_LANGUAGE_BY_EXTENSION.get(os.path.splitext(relative_path)[1].lower())


def resolve_workspace_root(value: Any, error_factory: Callable[[str, str, Optional[str]], Exception], label: str) -> str:
    """Return the real path of an existing directory or raise through ``error_factory``."""
    requested = normalize_optional_str(value)
    if requested is None:
        raise error_factory(f"{label} must be a non-empty string", "INVALID_WORKSPACE_ROOT", None)
    real_root = os.path.realpath(os.path.abspath(requested))
    if not os.path.exists(real_root) or not os.access(real_root, os.R_OK):
        raise error_factory(
            f"{label} is unreadable or does not exist", "WORKSPACE_ROOT_UNREADABLE", requested
        )
    if not os.path.isdir(real_root):
        raise error_factory(f"{label} must point to a directory", "WORKSPACE_ROOT_NOT_DIRECTORY", real_root)
    return real_root


def walk_workspace(
    workspace_root: str,
    ignored_paths: List[str],
    on_unreadable: Callable[[str], Exception],
) -> Iterator[WorkspaceFile]:
    """
    Yield regular files under ``workspace_root`` as POSIX relative paths.

    Symlinks are never followed; ignored globs prune whole directories.
    ``on_unreadable`` receives ``"directory"`` or ``"file"`` and returns the
    exception to raise.
    """
    pending = [workspace_root]
    while pending:
        current = pending.pop()
        try:
            with os.scandir(current) as iterator:
                entries = sorted(iterator, key=lambda entry: entry.name)
        except OSError:
            raise on_unreadable("directory")

        for entry in entries:
            relative_path = to_posix(os.path.relpath(entry.path, workspace_root))
            if not relative_path or matches_any(relative_path, ignored_paths):
                continue
            if entry.is_symlink():
                continue
            if entry.is_dir(follow_symlinks=False):
                pending.append(entry.path)
                continue
            if not entry.is_file(follow_symlinks=False):
                continue
            try:
                size_bytes = entry.stat(follow_symlinks=False).st_size
            except OSError:
                raise on_unreadable("file")
            yield WorkspaceFile(path=relative_path, absolute_path=entry.path, size_bytes=size_bytes)


def _file_sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


def collect_inventory(workspace_root: str, ignored_paths: List[str]) -> Dict[str, Any]:
    def unreadable(kind: str) -> WorkspaceSnapshotError:
        return WorkspaceSnapshotError(
            f"Workspace snapshot encountered an unreadable {kind} entry",
            "WORKSPACE_ENTRY_UNREADABLE",
            workspace_root,
        )

    records: List[Dict[str, Any]] = []
    languages = set()
    files_supported = 0
    for item in walk_workspace(workspace_root, ignored_paths, unreadable):
        try:
            content_hash = _file_sha256(item.absolute_path)
        except OSError:
            raise unreadable("file")
        record: Dict[str, Any] = {"path": item.path, "size_bytes": item.size_bytes, "sha256": content_hash}
        language = detect_language(item.path)
        if language:
            files_supported += 1
            languages.add(language)
            record["language"] = language
        records.append(record)

    records.sort(key=lambda record: record["path"])
    return {
        "files_scanned": len(records),
        "files_supported": files_supported,
        "languages": sorted(languages),
        "files": records,
    }


def run_git(workspace_root: str, args: List[str]) -> str:
    command = ["git", "-C", workspace_root, *args]
    label = " ".join(args)
    try:
        completed = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=GIT_TIMEOUT_SECONDS,
            check=False,
            text=True,
        )
    except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired) as exc:
        raise WorkspaceSnapshotError(
            f"Failed to read git metadata ({label}): {exc}", "GIT_METADATA_UNAVAILABLE", workspace_root
        )

    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()
        detail = f": {stderr}" if stderr else ""
        raise WorkspaceSnapshotError(
            f"Failed to read git metadata ({label}){detail}", "GIT_METADATA_UNAVAILABLE", workspace_root
        )
    return completed.stdout or ""


def read_git_summary(workspace_root: str) -> GitSummary:
    head_sha = normalize_optional_str(run_git(workspace_root, ["rev-parse", "HEAD"]))
    branch = normalize_optional_str(run_git(workspace_root, ["rev-parse", "--abbrev-ref", "HEAD"]))
    status_lines = run_git(workspace_root, ["status", "--porcelain", "--untracked-files=all"]).split("\n")
    status_porcelain = "\n".join(sorted(line.rstrip() for line in status_lines if line.rstrip()))

    if not head_sha or not branch:
        raise WorkspaceSnapshotError(
            "Git metadata is missing required HEAD or branch information",
            "GIT_METADATA_UNAVAILABLE",
            workspace_root,
        )
    return GitSummary(head_sha=head_sha, branch=branch, is_dirty=bool(status_porcelain), status_porcelain=status_porcelain)


def build_snapshot_hash(git: GitSummary, inventory: Dict[str, Any], ignored_paths: List[str]) -> str:
    material = {
        "git": {
            "head_sha": git.head_sha,
            "branch": git.branch,
            "is_dirty": git.is_dirty,
            "status_porcelain": git.status_porcelain,
        },
        "inventory": inventory,
        "filters": {"ignored_paths": ignored_paths},
    }
    return f"sha256:{sha256_hex(canonical_json(material))}"


def _snapshot_error(message: str, code: str, workspace_root: Optional[str] = None) -> WorkspaceSnapshotError:
    return WorkspaceSnapshotError(message, code, workspace_root)


def create_workspace_snapshot_artifact(
    workspace_root: str,
    ignored_paths: Optional[List[str]] = None,
    now: Optional[Callable[[], Any]] = None,
    run_id_factory: Optional[Callable[[], Any]] = None,
    tool_version: Optional[str] = None,
) -> Dict[str, Any]:
    root = resolve_workspace_root(workspace_root, _snapshot_error, "Workspace snapshot workspaceRoot")
    ignored = normalize_patterns(
        ignored_paths,
        DEFAULT_IGNORED_PATHS,
        lambda message: WorkspaceSnapshotError(message, "INVALID_IGNORED_PATHS"),
        "Workspace snapshot ignoredPaths",
    )

    inventory = collect_inventory(root, ignored)
    git = read_git_summary(root)
    snapshot_hash = build_snapshot_hash(git, inventory, ignored)

    trace = {"workspace_root": root, "source": WORKSPACE_SNAPSHOT_TRACE_SOURCE}
    payload = {
        "git": {"head_sha": git.head_sha, "branch": git.branch, "is_dirty": git.is_dirty},
        "inventory": {
            "files_scanned": inventory["files_scanned"],
            "files_supported": inventory["files_supported"],
            "languages": inventory["languages"],
        },
        "filters": {"ignored_paths": ignored},
        "snapshot_hash": snapshot_hash,
    }
    digest = snapshot_hash.split(":", 1)[1]
    run_id = call_id_factory(run_id_factory) or resolve_run_id()

    logger.info(
        "Workspace snapshot captured",
        workspace_root=root,
        files_scanned=inventory["files_scanned"],
        is_dirty=git.is_dirty,
    )
    return build_envelope(
        WORKSPACE_SNAPSHOT_ARTIFACT_TYPE,
        WORKSPACE_SNAPSHOT_SCHEMA_VERSION,
        "wsnap",
        digest,
        run_id,
        now,
        tool_version,
        [],
        trace,
        payload,
    )
