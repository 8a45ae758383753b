"""
Safe diff plan stage: intent mapping + planned edits -> safety-checked plan.

Hard bounds (forbidden paths, paths escaping the workspace, change limits)
block or escalate the plan; edits that stay within bounds but touch an
escalation-class path (CI workflows, schemas, policy docs) escalate with
``policy_blocked`` so a human reviews them.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional

import structlog

from governance_runtime.artifacts.envelope import (
    GATE_DECISIONS,
    ArtifactStageError,
    build_envelope,
    require_envelope,
    sha256_hex,
)
from governance_runtime.artifacts.globs import (
    collect_matching_paths,
    is_outside_workspace,
    matches_any,
    normalize_patterns,
    normalize_relative_path,
)
from governance_runtime.artifacts.intent_mapping import (
    INTENT_MAPPING_ARTIFACT_TYPE,
    INTENT_MAPPING_REASON_CODES,
    INTENT_MAPPING_SCHEMA_VERSION,
    normalize_for_search,
)
from governance_runtime.utils.hooks import call_id_factory, normalize_optional_str

logger = structlog.get_logger(__name__)

SAFE_DIFF_PLAN_ARTIFACT_TYPE = "ls.m2.safe_diff_plan"
SAFE_DIFF_PLAN_SCHEMA_VERSION = "1.0.0"
DEFAULT_PLANNER_PROFILE = "default-conservative"
DEFAULT_FORBIDDEN_PATH_PATTERNS = (
    ".git/**",
    "node_modules/**",
    ".env*",
    "**/.env*",
    "*.pem",
    "**/*.pem",
    "*.key",
    "**/*.key",
)
DEFAULT_ESCALATION_PATH_PATTERNS = (
    ".github/workflows/**",
    ".github/actions/**",
    "docs/spec/schemas/**",
    "docs/spec/policyprofile-*.md",
    "docs/spec/verificationcontract-*.md",
)
DEFAULT_MAX_FILE_CHANGES = 5
DEFAULT_MAX_HUNKS = 20
BOUND_LIMIT = 10_000
EDIT_OPERATIONS = ("create", "modify", "delete")
SAFE_DIFF_PLAN_REASON_CODES = (
    "ok",
    "unsupported_input",
    "mapping_ambiguous",
    "mapping_low_confidence",
    "forbidden_path",
    "change_bound_exceeded",
    "conflict_detected",
    "policy_blocked",
)


class SafeDiffPlanError(ArtifactStageError):
    pass


def _options_error(message: str) -> SafeDiffPlanError:
    return SafeDiffPlanError(message, "INVALID_OPTIONS")


def _mapping_error(message: str) -> SafeDiffPlanError:
    return SafeDiffPlanError(message, "INVALID_INTENT_MAPPING")


def normalize_edit_path(value: Any) -> str:
    path = normalize_relative_path(value)
    if path is None:
        raise _options_error("Safe diff plan edits must include a non-empty path")
    if path == ".":
        raise _options_error("Safe diff plan edits must include a file path, not '.'")
    return path


def _bound_option(value: Any, default: int, name: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= BOUND_LIMIT:
        raise _options_error(f"Safe diff plan {name} must be an integer between 1 and {BOUND_LIMIT}")
    return value


def normalize_planned_edits(value: Any) -> Optional[List[Dict[str, Any]]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise _options_error("Safe diff plan plannedEdits must be an array when provided")

    edits = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise _options_error(f"Safe diff plan plannedEdits[{index}] must be an object")
        path = normalize_edit_path(item.get("path"))
        operation = item.get("operation", "modify")
        if operation not in EDIT_OPERATIONS:
            raise _options_error("Safe diff plan edit operation must be one of create, modify, or delete")
        edit: Dict[str, Any] = {
            "path": path,
            "operation": operation,
            "justification": normalize_optional_str(item.get("justification"))
            or f"Planner override requested {operation} on {path}.",
        }
        target_id = normalize_optional_str(item.get("target_id"))
        if target_id:
            edit["target_id"] = target_id
        if "symbol_path" in item:
            symbol_path = item["symbol_path"]
            if symbol_path is not None:
                symbol_path = normalize_optional_str(symbol_path)
                if symbol_path is None:
                    raise _options_error("Safe diff plan edit symbol_path must be null or a non-empty string")
            edit["symbol_path"] = symbol_path
        edits.append(edit)
    return edits


def _mapping_inputs(mapping: Any) -> Dict[str, Any]:
    ref = require_envelope(
        mapping,
        INTENT_MAPPING_ARTIFACT_TYPE,
        INTENT_MAPPING_SCHEMA_VERSION,
        SafeDiffPlanError,
        "INVALID_INTENT_MAPPING",
        "Safe diff plan",
    )
    payload = mapping["payload"]
    intent = payload.get("intent") if isinstance(payload.get("intent"), dict) else {}
    summary = normalize_optional_str(intent.get("summary"))
    if summary is None:
        raise _mapping_error("Safe diff plan intent mapping payload.intent.summary is required")

    decision = payload.get("decision")
    if decision not in GATE_DECISIONS:
        raise _mapping_error("Safe diff plan intent mapping payload.decision must be continue, escalate, or stop")

    reason_code = normalize_optional_str(payload.get("reason_code"))
    reason_detail = normalize_optional_str(payload.get("reason_detail"))
    if not reason_code or not reason_detail:
        raise _mapping_error(
            "Safe diff plan intent mapping payload.reason_code and payload.reason_detail are required"
        )
    if reason_code not in INTENT_MAPPING_REASON_CODES:
        raise _mapping_error(
            "Safe diff plan intent mapping payload.reason_code is unsupported for the pinned schema version"
        )

    raw_candidates = payload.get("candidates")
    if not isinstance(raw_candidates, list):
        raise _mapping_error("Safe diff plan intent mapping payload.candidates must be an array")

    candidates = []
    for index, raw in enumerate(raw_candidates):
        context = f"payload.candidates[{index}]"
        if not isinstance(raw, dict):
            raise _mapping_error(f"Safe diff plan {context} must contain candidate objects")
        target_id = normalize_optional_str(raw.get("target_id"))
        path = normalize_optional_str(raw.get("path"))
        if not target_id or not path:
            raise _mapping_error(f"Safe diff plan {context} candidate is missing target_id or path")
        candidates.append(
            {"target_id": target_id, "path": path, "symbol_path": normalize_optional_str(raw.get("symbol_path"))}
        )

    return {
        "ref": ref,
        "run_id": mapping["run_id"].strip(),
        "summary": summary,
        "decision": decision,
        "reason_code": reason_code,
        "reason_detail": reason_detail,
        "candidates": candidates,
    }


def infer_edit_operation(intent_summary: str) -> str:
    text = normalize_for_search(intent_summary)
    if re.search(r"\b(delete|remove)\b", text):
        return "delete"
    if re.search(r"\b(create|new)\b", text):
        return "create"
    if re.search(r"\badd\b", text) and re.search(
        r"\b(?:file|section|entry|field|rule|check|capability|goal)\b", text
    ):
        return "create"
    return "modify"


def default_planned_edits(mapping: Dict[str, Any]) -> List[Dict[str, Any]]:
    if len(mapping["candidates"]) != 1:
        return []
    candidate = mapping["candidates"][0]
    operation = infer_edit_operation(mapping["summary"])
    label = f"{candidate['path']}#{candidate['symbol_path']}" if candidate["symbol_path"] else candidate["path"]
    return [
        {
            "path": normalize_edit_path(candidate["path"]),
            "operation": operation,
            "justification": f"Mapped intent to {label} for conservative {operation} planning.",
            "target_id": candidate["target_id"],
            "symbol_path": candidate["symbol_path"],
        }
    ]


def _mapping_block_reason(decision: str, reason_code: str) -> str:
    if reason_code in ("mapping_ambiguous", "mapping_low_confidence"):
        return reason_code
    if decision == "stop":
        return "unsupported_input"
    return "conflict_detected"


def collect_forbidden_paths(edits: List[Dict[str, Any]], patterns: List[str]) -> List[str]:
    return sorted(
        {edit["path"] for edit in edits if is_outside_workspace(edit["path"]) or matches_any(edit["path"], patterns)}
    )


def collect_conflict_paths(edits: List[Dict[str, Any]]) -> List[str]:
    counts: Dict[str, int] = {}
    for edit in edits:
        counts[edit["path"]] = counts.get(edit["path"], 0) + 1
    return sorted(path for path, count in counts.items() if count > 1)


def evaluate_plan(
    edits: List[Dict[str, Any]],
    safety_checks: Dict[str, Any],
    forbidden_patterns: List[str],
    escalation_patterns: List[str],
):
    """Decision for a non-empty edit list, checked in severity order."""
    conflicts = collect_conflict_paths(edits)
    if conflicts:
        return (
            "escalate",
            "conflict_detected",
            f"Planner produced conflicting edits for the same path(s): {', '.join(conflicts)}.",
        )

    forbidden = collect_forbidden_paths(edits, forbidden_patterns)
    if forbidden:
        return "stop", "forbidden_path", f"Plan targets forbidden path(s): {', '.join(forbidden)}."

    exceeded = []
    for name in ("max_file_changes", "max_hunks"):
        bound = safety_checks[name]
        if bound["observed"] > bound["limit"]:
            exceeded.append(f"{name} {bound['observed']}/{bound['limit']}")
    if exceeded:
        return (
            "escalate",
            "change_bound_exceeded",
            f"Plan exceeds conservative safety bounds: {'; '.join(exceeded)}.",
        )

    sensitive = collect_matching_paths((edit["path"] for edit in edits), escalation_patterns)
    if sensitive:
        return (
            "escalate",
            "policy_blocked",
            f"Plan touches escalation-class path(s) requiring human review: {', '.join(sensitive)}.",
        )

    return "continue", "ok", "Plan is within conservative safety bounds"


def create_safe_diff_plan_artifact(
    intent_mapping: Dict[str, Any],
    planner_profile: Optional[str] = None,
    forbidden_path_patterns: Optional[List[str]] = None,
    escalation_path_patterns: Optional[List[str]] = None,
    max_file_changes: Optional[int] = None,
    max_hunks: Optional[int] = None,
    planned_edits: Optional[List[Dict[str, Any]]] = None,
    now: Optional[Callable[[], Any]] = None,
    run_id_factory: Optional[Callable[[], Any]] = None,
    tool_version: Optional[str] = None,
) -> Dict[str, Any]:
    mapping = _mapping_inputs(intent_mapping)
    profile = normalize_optional_str(planner_profile) or DEFAULT_PLANNER_PROFILE
    forbidden = normalize_patterns(
        forbidden_path_patterns,
        DEFAULT_FORBIDDEN_PATH_PATTERNS,
        _options_error,
        "Safe diff plan forbiddenPathPatterns",
    )
    escalation = normalize_patterns(
        escalation_path_patterns,
        DEFAULT_ESCALATION_PATH_PATTERNS,
        _options_error,
        "Safe diff plan escalationPathPatterns",
    )
    file_limit = _bound_option(max_file_changes, DEFAULT_MAX_FILE_CHANGES, "maxFileChanges")
    hunk_limit = _bound_option(max_hunks, DEFAULT_MAX_HUNKS, "maxHunks")

    edits: List[Dict[str, Any]] = []
    if mapping["decision"] != "continue":
        decision = mapping["decision"]
        reason_code = _mapping_block_reason(mapping["decision"], mapping["reason_code"])
        reason_detail = f"Intent mapping blocked diff planning: {mapping['reason_detail']}"
    elif len(mapping["candidates"]) > 1:
        decision, reason_code = "escalate", "mapping_ambiguous"
        reason_detail = "Intent mapping provided multiple selected candidates for a continue decision."
    else:
        overrides = normalize_planned_edits(planned_edits)
        edits = overrides if overrides is not None else default_planned_edits(mapping)
        decision, reason_code = "stop", "unsupported_input"
        reason_detail = "Planner produced no safe edits from the selected intent mapping target."

    safety_checks = {
        "forbidden_path_patterns": forbidden,
        "max_file_changes": {"limit": file_limit, "observed": len({edit["path"] for edit in edits})},
        "max_hunks": {"limit": hunk_limit, "observed": len(edits)},
    }
    if edits:
        decision, reason_code, reason_detail = evaluate_plan(edits, safety_checks, forbidden, escalation)

    trace = {"planner_profile": profile}
    payload = {
        "edits": edits,
        "safety_checks": safety_checks,
        "decision": decision,
        "reason_code": reason_code,
        "reason_detail": reason_detail,
    }
    digest = sha256_hex({"inputs": [mapping["ref"]], "trace": trace, "payload": payload})

    logger.info("Safe diff plan built", decision=decision, reason_code=reason_code, edits=len(edits))
    return build_envelope(
        SAFE_DIFF_PLAN_ARTIFACT_TYPE,
        SAFE_DIFF_PLAN_SCHEMA_VERSION,
        "dplan",
        digest,
        call_id_factory(run_id_factory) or mapping["run_id"],
        now,
        tool_version,
        [mapping["ref"]],
        trace,
        payload,
    )
