"""
Intent mapping stage: free-text intent + workspace snapshot -> ranked targets.

Two extraction methods feed one ranked candidate list:

* ``ast_symbol_lookup`` reads declarations from ``.ls`` documents and Python
  modules and carries a source range;
* ``text_match`` scores whole files by token overlap and points at the best
  matching line when there is one.

A file that yields declaration candidates is not text matched, so one
logical target never appears twice under different methods.
"""

from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from governance_runtime.artifacts.declarations import Declaration, read_ls_declarations, read_python_declarations
from governance_runtime.artifacts.envelope import ArtifactStageError, build_envelope, require_envelope, sha256_hex
from governance_runtime.artifacts.globs import normalize_patterns
from governance_runtime.artifacts.workspace_snapshot import (
    DEFAULT_IGNORED_PATHS,
    WORKSPACE_SNAPSHOT_ARTIFACT_TYPE,
    WORKSPACE_SNAPSHOT_SCHEMA_VERSION,
    resolve_workspace_root,
    walk_workspace,
)
from governance_runtime.utils.hooks import call_id_factory, normalize_optional_str

logger = structlog.get_logger(__name__)

INTENT_MAPPING_ARTIFACT_TYPE = "ls.m2.intent_mapping"
INTENT_MAPPING_SCHEMA_VERSION = "1.0.0"
DEFAULT_INTENT_SOURCE = "user_prompt"
DEFAULT_MIN_CONFIDENCE = 0.75
DEFAULT_AMBIGUITY_GAP = 0.05
DEFAULT_MAX_ALTERNATIVES = 5
MAX_ALTERNATIVES_LIMIT = 50
MAX_TEXT_SCAN_BYTES = 256_000

METHOD_AST = "ast_symbol_lookup"
METHOD_TEXT = "text_match"
EXTRACTION_METHODS = (METHOD_AST, METHOD_TEXT)
INTENT_MAPPING_REASON_CODES = ("ok", "unsupported_input", "mapping_ambiguous", "mapping_low_confidence")

TEXT_MATCHABLE_EXTENSIONS = frozenset(
    {
        ".cjs", ".js", ".json", ".jsx", ".ls", ".md", ".mdx", ".mjs",
        ".py", ".sh", ".ts", ".tsx", ".txt", ".yaml", ".yml",
    }
)

DECLARATION_READERS = {
    ".ls": read_ls_declarations,
    ".py": read_python_declarations,
}

STOP_WORDS = frozenset(
    {"a", "an", "and", "as", "at", "by", "for", "from", "in", "into", "of", "on", "or", "the", "to", "with"}
)

NO_TARGET_DETAIL = "No supported repository targets matched the requested intent."


class IntentMappingError(ArtifactStageError):
    def __init__(self, message: str, code: str, workspace_root: Optional[str] = None):
        super().__init__(message, code)
        self.workspace_root = workspace_root


def normalize_for_search(value: str) -> str:
    lowered = value.lower()
    lowered = re.sub(r"[_-]+", " ", lowered)
    lowered = re.sub(r"[^a-z0-9\s]+", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def tokenize_for_search(value: str) -> List[str]:
    tokens = re.findall(r"[a-z0-9]+", normalize_for_search(value))
    return sorted({token for token in tokens if token not in STOP_WORDS})


def create_target_id(path: str, symbol_path: Optional[str], start_line: Optional[int] = None) -> str:
    """
    Readable prefix plus a hash of the raw key, so sanitized collisions stay distinct.

    Symbol targets also key on their start line: a property and its setter
    share a qualified name.
    """
    raw = f"{path}#{symbol_path or 'file'}"
    if start_line is not None:
        raw = f"{raw}@L{start_line}"
    readable = re.sub(r"[^A-Za-z0-9._/#+:@-]", "_", raw)
    readable = re.sub(r"_+", "_", readable).strip("_")[:96]
    return f"{readable or 'target'}_{sha256_hex(raw)[:12]}"


@dataclass
class _Intent:
    summary: str
    normalized: str
    tokens: List[str]


@dataclass
class _Target:
    path: str
    method: str
    symbol_path: Optional[str] = None
    symbol_kind: str = "file"
    symbol_name: Optional[str] = None
    texts: List[str] = field(default_factory=list)
    range: Optional[Dict[str, int]] = None


def score_target(intent: _Intent, target: _Target) -> Optional[Dict[str, Any]]:
    """Confidence and rationale for one target, or None when nothing matches."""
    combined = " ".join([target.path, *target.texts])
    intent_tokens = set(intent.tokens)
    target_tokens = set(tokenize_for_search(combined))
    shared = len(intent_tokens & target_tokens)

    overlap_ratio = shared / len(intent_tokens) if intent_tokens else 0.0
    coverage_ratio = shared / len(target_tokens) if target_tokens else 0.0

    target_normalized = normalize_for_search(combined)
    phrase_hit = (
        len(intent.normalized) >= 4
        and bool(target_normalized)
        and (intent.normalized in target_normalized or target_normalized in intent.normalized)
    )
    symbol_normalized = normalize_for_search(target.symbol_name) if target.symbol_name else ""
    symbol_hit = bool(symbol_normalized) and symbol_normalized in intent.normalized
    base_normalized = normalize_for_search(os.path.basename(target.path))
    base_hit = bool(base_normalized) and (
        base_normalized in intent.normalized or intent.normalized in base_normalized
    )

    if not shared and not phrase_hit and not symbol_hit and not base_hit:
        return None

    is_ast = target.method == METHOD_AST
    score = 0.38 if is_ast else 0.18
    score += overlap_ratio * 0.4
    score += coverage_ratio * 0.08
    if phrase_hit:
        score += 0.1 if is_ast else 0.12
    if symbol_hit:
        score += 0.24
    if is_ast and target.symbol_kind != "file" and target.symbol_kind in intent.normalized:
        score += 0.05
    if base_hit:
        score += 0.05

    parts = ["AST symbol lookup" if is_ast else "Text match", f"token overlap {shared}/{max(1, len(intent_tokens))}"]
    if symbol_hit:
        parts.append("exact symbol-name hit")
    if phrase_hit:
        parts.append("exact phrase/path substring hit")

    return {
        "confidence": round(min(0.99, max(0.01, score)), 4),
        "rationale": "; ".join(parts) + ".",
    }


def build_candidate(intent: _Intent, target: _Target) -> Optional[Dict[str, Any]]:
    scored = score_target(intent, target)
    if scored is None:
        return None
    provenance: Dict[str, Any] = {"source_path": target.path, "method": target.method}
    if target.range is not None:
        provenance["range"] = target.range
    return {
        "target_id": create_target_id(
            target.path,
            target.symbol_path,
            target.range["start_line"] if target.symbol_path and target.range else None,
        ),
        "path": target.path,
        "symbol_path": target.symbol_path,
        "confidence": scored["confidence"],
        "rationale": scored["rationale"],
        "provenance": provenance,
    }


def best_matching_line(source: str, intent: _Intent) -> Optional[Dict[str, int]]:
    best_line, best_score = -1, -1
    lines = re.split(r"\r?\n", source)
    for index, line in enumerate(lines):
        line_tokens = set(tokenize_for_search(line))
        shared = sum(1 for token in intent.tokens if token in line_tokens)
        if intent.normalized and intent.normalized in normalize_for_search(line):
            shared += len(intent.tokens) or 1
        if shared > best_score:
            best_line, best_score = index, shared

    if best_line < 0 or best_score <= 0:
        return None
    return {
        "start_line": best_line + 1,
        "start_column": 1,
        "end_line": best_line + 1,
        "end_column": max(1, len(lines[best_line]) + 1),
    }


def declaration_target(path: str, declaration: Declaration) -> _Target:
    texts = [declaration.name] if declaration.kind == "goal" else [declaration.name, declaration.description]
    return _Target(
        path=path,
        method=METHOD_AST,
        symbol_path=declaration.symbol_path,
        symbol_kind=declaration.kind,
        symbol_name=declaration.name,
        texts=texts,
        range=declaration.range.to_dict(),
    )


def _candidate_sort_key(candidate: Dict[str, Any]):
    return (
        -candidate["confidence"],
        0 if candidate["provenance"]["method"] == METHOD_AST else 1,
        candidate["path"],
        candidate["symbol_path"] or "",
    )


def collect_candidates(workspace_root: str, ignored_paths: List[str], intent: _Intent):
    def unreadable(kind: str) -> IntentMappingError:
        return IntentMappingError(
            f"Intent mapping encountered an unreadable {kind} entry", "WORKSPACE_ENTRY_UNREADABLE", workspace_root
        )

    candidates: List[Dict[str, Any]] = []
    methods_used = set()

    for item in walk_workspace(workspace_root, ignored_paths, unreadable):
        extension = os.path.splitext(item.path)[1].lower()
        if extension not in TEXT_MATCHABLE_EXTENSIONS or item.size_bytes > MAX_TEXT_SCAN_BYTES:
            continue
        try:
            with open(item.absolute_path, "r", encoding="utf-8", errors="replace") as f:
                source = f.read()
        except OSError:
            raise unreadable("file")

        reader = DECLARATION_READERS.get(extension)
        if reader is not None:
            declarations = reader(source) or []
            found = [build_candidate(intent, declaration_target(item.path, d)) for d in declarations]
            found = [candidate for candidate in found if candidate is not None]
            if found:
                methods_used.add(METHOD_AST)
                candidates.extend(found)
                continue

        target = _Target(
            path=item.path,
            method=METHOD_TEXT,
            texts=[source[:MAX_TEXT_SCAN_BYTES]],
            range=best_matching_line(source, intent),
        )
        candidate = build_candidate(intent, target)
        if candidate is not None:
            methods_used.add(METHOD_TEXT)
            candidates.append(candidate)

    candidates.sort(key=_candidate_sort_key)
    return candidates, methods_used


def _candidate_label(candidate: Dict[str, Any]) -> str:
    if candidate["symbol_path"]:
        return f"{candidate['path']}#{candidate['symbol_path']}"
    return candidate["path"]


def resolve_decision(
    candidates: Sequence[Dict[str, Any]], min_confidence: float, ambiguity_gap: float, max_alternatives: int
) -> Dict[str, Any]:
    if not candidates:
        return {
            "candidates": [],
            "alternatives": [],
            "decision": "stop",
            "reason_code": "unsupported_input",
            "reason_detail": NO_TARGET_DETAIL,
        }

    top = candidates[0]
    if top["confidence"] < min_confidence:
        return {
            "candidates": [top],
            "alternatives": list(candidates[1 : 1 + max_alternatives]),
            "decision": "escalate",
            "reason_code": "mapping_low_confidence",
            "reason_detail": (
                f"Top mapping candidate scored {top['confidence']:.4f} "
                f"below minimum confidence {min_confidence:.4f}."
            ),
        }

    ambiguous = [
        candidate
        for candidate in candidates
        if candidate["confidence"] >= min_confidence and top["confidence"] - candidate["confidence"] <= ambiguity_gap
    ]
    if len(ambiguous) > 1:
        ambiguous_ids = {id(candidate) for candidate in ambiguous}
        labels = ", ".join(_candidate_label(candidate) for candidate in ambiguous)
        return {
            "candidates": ambiguous,
            "alternatives": [c for c in candidates if id(c) not in ambiguous_ids][:max_alternatives],
            "decision": "escalate",
            "reason_code": "mapping_ambiguous",
            "reason_detail": (
                f"Multiple high-confidence targets remain within ambiguity gap {ambiguity_gap:.4f}: {labels}."
            ),
        }

    return {
        "candidates": [top],
        "alternatives": list(candidates[1 : 1 + max_alternatives]),
        "decision": "continue",
        "reason_code": "ok",
        "reason_detail": "Single high-confidence target selected",
    }


def _probability_option(value: Any, default: float, name: str) -> float:
    if value is None:
        return default
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or not 0 <= value <= 1
    ):
        raise IntentMappingError(f"Intent mapping {name} must be a number between 0 and 1", "INVALID_OPTIONS")
    return float(value)


def _max_alternatives_option(value: Any) -> int:
    if value is None:
        return DEFAULT_MAX_ALTERNATIVES
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_ALTERNATIVES_LIMIT:
        raise IntentMappingError(
            f"Intent mapping maxAlternatives must be an integer between 0 and {MAX_ALTERNATIVES_LIMIT}",
            "INVALID_OPTIONS",
        )
    return value


def _snapshot_inputs(snapshot: Any):
    ref = require_envelope(
        snapshot,
        WORKSPACE_SNAPSHOT_ARTIFACT_TYPE,
        WORKSPACE_SNAPSHOT_SCHEMA_VERSION,
        IntentMappingError,
        "INVALID_WORKSPACE_SNAPSHOT",
        "Intent mapping",
    )
    trace = snapshot.get("trace") if isinstance(snapshot.get("trace"), dict) else {}
    if normalize_optional_str(trace.get("workspace_root")) is None:
        raise IntentMappingError(
            "Intent mapping workspace snapshot must include a non-empty trace.workspace_root",
            "INVALID_WORKSPACE_SNAPSHOT",
        )
    root = resolve_workspace_root(
        trace["workspace_root"],
        lambda message, code, workspace_root: IntentMappingError(message, code, workspace_root),
        "Intent mapping workspace root",
    )
    filters = snapshot["payload"].get("filters")
    ignored_value = filters.get("ignored_paths") if isinstance(filters, dict) else None
    ignored = normalize_patterns(
        ignored_value,
        DEFAULT_IGNORED_PATHS,
        lambda message: IntentMappingError(message, "INVALID_WORKSPACE_SNAPSHOT"),
        "Intent mapping workspace snapshot payload.filters.ignored_paths",
    )
    return ref, snapshot["run_id"].strip(), root, ignored


def create_intent_mapping_artifact(
    workspace_snapshot: Dict[str, Any],
    intent: str,
    intent_source: Optional[str] = None,
    min_confidence: Optional[float] = None,
    ambiguity_gap: Optional[float] = None,
    max_alternatives: Optional[int] = None,
    now: Optional[Callable[[], Any]] = None,
    run_id_factory: Optional[Callable[[], Any]] = None,
    tool_version: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Map ``intent`` onto targets in the snapshotted workspace.

    Decisions: ``stop/unsupported_input`` when nothing matches,
    ``escalate/mapping_low_confidence`` when the best candidate is below
    ``min_confidence``, ``escalate/mapping_ambiguous`` when more than one
    candidate sits within ``ambiguity_gap`` of the best, else ``continue/ok``.
    """
    snapshot_ref, snapshot_run_id, root, ignored = _snapshot_inputs(workspace_snapshot)

    summary = normalize_optional_str(intent)
    if summary is None:
        raise IntentMappingError("Intent mapping requires a non-empty intent string", "INVALID_INTENT")
    source = DEFAULT_INTENT_SOURCE
    if intent_source is not None:
        source = normalize_optional_str(intent_source)
        if source is None:
            raise IntentMappingError(
                "Intent mapping intentSource must be a non-empty string when provided", "INVALID_INTENT_SOURCE"
            )
    min_confidence = _probability_option(min_confidence, DEFAULT_MIN_CONFIDENCE, "minConfidence")
    ambiguity_gap = _probability_option(ambiguity_gap, DEFAULT_AMBIGUITY_GAP, "ambiguityGap")
    max_alternatives = _max_alternatives_option(max_alternatives)

    parsed = _Intent(summary=summary, normalized=normalize_for_search(summary), tokens=tokenize_for_search(summary))
    candidates, methods_used = collect_candidates(root, ignored, parsed)
    selection = resolve_decision(candidates, min_confidence, ambiguity_gap, max_alternatives)

    trace = {
        "intent_source": source,
        "extraction_methods": sorted(methods_used) if methods_used else list(EXTRACTION_METHODS),
    }
    payload = {"intent": {"summary": summary}, **selection}
    digest = sha256_hex({"inputs": [snapshot_ref], "trace": trace, "payload": payload})

    logger.info(
        "Intent mapped",
        decision=payload["decision"],
        reason_code=payload["reason_code"],
        candidates_considered=len(candidates),
    )
    return build_envelope(
        INTENT_MAPPING_ARTIFACT_TYPE,
        INTENT_MAPPING_SCHEMA_VERSION,
        "imap",
        digest,
        call_id_factory(run_id_factory) or snapshot_run_id,
        now,
        tool_version,
        [snapshot_ref],
        trace,
        payload,
    )
