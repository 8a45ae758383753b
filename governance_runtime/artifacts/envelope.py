"""
Shared artifact envelope helpers.

Every pipeline output is a plain JSON-compatible dict with the same envelope
fields; downstream stages refer to upstream artifacts only through
``{artifact_id, artifact_type, schema_version}`` references.
"""

from __future__ import annotations

import copy
import hashlib
import json
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from governance_runtime.core.config import settings
from governance_runtime.utils.hooks import (
    call_id_factory,
    normalize_optional_str,
    resolve_run_id,
    resolve_timestamp,
)

logger = structlog.get_logger(__name__)

GATE_DECISIONS = ("continue", "escalate", "stop")


class ArtifactStageError(Exception):
    """Base error for pipeline stages; ``code`` is a stable machine identifier."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.message = message
        self.code = code


def canonical_json(value: Any) -> str:
    """Compact JSON preserving key insertion order."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def sha256_hex(value: Any) -> str:
    text = value if isinstance(value, str) else canonical_json(value)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def artifact_ref(artifact: Dict[str, Any]) -> Dict[str, str]:
    return {
        "artifact_id": artifact["artifact_id"],
        "artifact_type": artifact["artifact_type"],
        "schema_version": artifact["schema_version"],
    }


def dedupe_refs(refs: Iterable[Optional[Dict[str, str]]]) -> List[Dict[str, str]]:
    seen = set()
    unique = []
    for ref in refs:
        if ref is None:
            continue
        key = (ref["artifact_type"], ref["artifact_id"])
        if key in seen:
            continue
        seen.add(key)
        unique.append(ref)
    return unique


def resolve_tool_version(tool_version: Any = None) -> str:
    return normalize_optional_str(tool_version) or f"governance-runtime@{settings.tool_version}"


def resolve_artifact_run_id(
    preferred_run_id: Optional[str], run_id_factory: Optional[Callable[[], Any]]
) -> str:
    """Factory first, then the upstream run id, then a generated id."""
    generated = call_id_factory(run_id_factory)
    return generated or normalize_optional_str(preferred_run_id) or resolve_run_id()


def build_envelope(
    artifact_type: str,
    schema_version: str,
    id_prefix: str,
    digest: str,
    run_id: str,
    now: Optional[Callable[[], Any]],
    tool_version: Any,
    inputs: List[Dict[str, str]],
    trace: Dict[str, Any],
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    return {
        "artifact_type": artifact_type,
        "schema_version": schema_version,
        "artifact_id": f"{id_prefix}_{digest[:12]}",
        "run_id": run_id,
        "produced_at_utc": resolve_timestamp(now),
        "tool_version": resolve_tool_version(tool_version),
        "inputs": inputs,
        "trace": trace,
        "payload": payload,
    }


def require_envelope(
    artifact: Any,
    artifact_type: str,
    schema_version: str,
    error_cls,
    code: str,
    consumer: str,
) -> Dict[str, str]:
    """Check type, version, id and run id of an upstream artifact; return its reference."""
    if not isinstance(artifact, dict):
        raise error_cls(f"{consumer} requires a {artifact_type} artifact object", code)
    if artifact.get("artifact_type") != artifact_type:
        raise error_cls(f"{consumer} requires {artifact_type} input", code)
    if artifact.get("schema_version") != schema_version:
        raise error_cls(f"{consumer} requires {artifact_type}@{schema_version}", code)
    if not normalize_optional_str(artifact.get("artifact_id")) or not normalize_optional_str(artifact.get("run_id")):
        raise error_cls(f"{consumer} {artifact_type} is missing required envelope fields", code)
    if not isinstance(artifact.get("payload"), dict):
        raise error_cls(f"{consumer} {artifact_type} payload must be an object", code)
    return {
        "artifact_id": artifact["artifact_id"].strip(),
        "artifact_type": artifact_type,
        "schema_version": schema_version,
    }


class ArtifactStore:
    """
    Append-only in-memory arena of pipeline artifacts keyed by artifact id.

    Stored values are deep copies and reads return copies, so no two stages
    ever share a mutable artifact.
    """

    def __init__(self):
        self._artifacts: Dict[str, Dict[str, Any]] = {}
        self._order: List[str] = []

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, artifact_id: str) -> bool:
        return artifact_id in self._artifacts

    def put(self, artifact: Dict[str, Any]) -> Dict[str, str]:
        artifact_id = artifact["artifact_id"]
        existing = self._artifacts.get(artifact_id)
        if existing is not None:
            if canonical_json(existing) != canonical_json(artifact):
                raise ValueError(f"Artifact {artifact_id} is already stored with different content")
            return artifact_ref(existing)
        self._artifacts[artifact_id] = copy.deepcopy(artifact)
        self._order.append(artifact_id)
        logger.debug("Artifact stored", artifact_id=artifact_id, artifact_type=artifact["artifact_type"])
        return artifact_ref(artifact)

    def get(self, artifact_id: str) -> Dict[str, Any]:
        if artifact_id not in self._artifacts:
            raise KeyError(f"Unknown artifact: {artifact_id}")
        return copy.deepcopy(self._artifacts[artifact_id])

    def ids(self) -> List[str]:
        return list(self._order)

    def lineage(self, artifact_id: str) -> List[Dict[str, str]]:
        """Upstream references of an artifact, nearest first, walked transitively."""
        chain: List[Dict[str, str]] = []
        seen = set()
        pending = list(self._artifacts[artifact_id]["inputs"]) if artifact_id in self._artifacts else []
        while pending:
            ref = pending.pop(0)
            if ref["artifact_id"] in seen:
                continue
            seen.add(ref["artifact_id"])
            chain.append(dict(ref))
            upstream = self._artifacts.get(ref["artifact_id"])
            if upstream is not None:
                pending.extend(upstream["inputs"])
        return chain
