"""Shared fixtures for governance runtime tests

Provides:
- fixed_now: deterministic clock hook
- contract_example: loader for bundled example contracts
- release_workspace: small Python workspace plus a snapshot artifact for it
- pipeline: helpers that build the artifact chain from that snapshot
"""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from governance_runtime.artifacts.intent_mapping import create_intent_mapping_artifact
from governance_runtime.artifacts.patch_run import create_patch_run_artifact
from governance_runtime.artifacts.safe_diff_plan import create_safe_diff_plan_artifact
from governance_runtime.artifacts.workspace_snapshot import (
    WORKSPACE_SNAPSHOT_ARTIFACT_TYPE,
    WORKSPACE_SNAPSHOT_SCHEMA_VERSION,
)

EXAMPLES_DIR = Path(__file__).parent.parent / "contracts" / "examples"
FIXED_TIME = datetime(2026, 2, 22, tzinfo=timezone.utc)
FIXED_TIMESTAMP = "2026-02-22T00:00:00.000Z"

RELEASE_MODULE = '''def publish_release(tag):
    """Publish a release."""
    return tag
'''

PASSING_RESULTS = [
    {"check": "lint", "status": "pass", "evidence_ref": "ci://lint/1"},
    {"check": "typecheck", "status": "pass", "evidence_ref": "ci://typecheck/1"},
    {"check": "test", "status": "pass", "evidence_ref": "ci://test/1"},
]


@pytest.fixture
def fixed_now():
    return lambda: FIXED_TIME


@pytest.fixture
def contract_example():
    def load(family: str, name: str, validity: str = "valid") -> dict:
        with open(EXAMPLES_DIR / family / validity / name, "r", encoding="utf-8") as f:
            return json.load(f)

    return load


def make_snapshot(root, run_id="run-test-1", ignored_paths=None):
    """Snapshot envelope for ``root`` without shelling out to git."""
    return {
        "artifact_type": WORKSPACE_SNAPSHOT_ARTIFACT_TYPE,
        "schema_version": WORKSPACE_SNAPSHOT_SCHEMA_VERSION,
        "artifact_id": "wsnap_0123456789ab",
        "run_id": run_id,
        "produced_at_utc": FIXED_TIMESTAMP,
        "tool_version": "governance-runtime@test",
        "inputs": [],
        "trace": {"workspace_root": str(root), "source": "local_git_worktree"},
        "payload": {
            "git": {"head_sha": "0" * 40, "branch": "main", "is_dirty": False},
            "inventory": {"files_scanned": 0, "files_supported": 0, "languages": []},
            "filters": {"ignored_paths": ignored_paths or [".git/**", "node_modules/**"]},
            "snapshot_hash": "sha256:" + "0" * 64,
        },
    }


@pytest.fixture
def release_workspace(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "release.py").write_text(RELEASE_MODULE, encoding="utf-8")
    return tmp_path


@pytest.fixture
def pipeline(release_workspace, fixed_now):
    """Builders for each stage, chained from a snapshot of ``release_workspace``."""

    class Pipeline:
        root = release_workspace
        snapshot = make_snapshot(release_workspace)

        def mapping(self, intent="update publish_release function", **kwargs):
            return create_intent_mapping_artifact(self.snapshot, intent, now=fixed_now, **kwargs)

        def plan(self, mapping=None, **kwargs):
            return create_safe_diff_plan_artifact(mapping or self.mapping(), now=fixed_now, **kwargs)

        def patch_run(self, plan=None, verification_results=PASSING_RESULTS, **kwargs):
            return create_patch_run_artifact(
                plan or self.plan(), verification_results=verification_results, now=fixed_now, **kwargs
            )

    return Pipeline()
