"""
Patch run stage: safe diff plan + verification results -> gated patch record.

The patch is materialized as deterministic unified-diff text with marker
lines; the verification section records which required checks passed and
whether every result links to evidence.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
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
    normalize_patterns,
    normalize_relative_path,
)
from governance_runtime.artifacts.safe_diff_plan import (
    DEFAULT_ESCALATION_PATH_PATTERNS,
    EDIT_OPERATIONS,
    SAFE_DIFF_PLAN_ARTIFACT_TYPE,
    SAFE_DIFF_PLAN_REASON_CODES,
    SAFE_DIFF_PLAN_SCHEMA_VERSION,
)
from governance_runtime.utils.hooks import call_id_factory, normalize_optional_str

logger = structlog.get_logger(__name__)

PATCH_RUN_ARTIFACT_TYPE = "ls.m2.patch_run"
PATCH_RUN_SCHEMA_VERSION = "1.0.0"
DEFAULT_PATCH_MATERIALIZATION = "deterministic_text_patch_v1"
DEFAULT_REQUIRED_CHECKS = ("lint", "typecheck", "test")
DEFAULT_POLICY_SENSITIVE_PATH_PATTERNS = DEFAULT_ESCALATION_PATH_PATTERNS
CHECK_STATUSES = ("pass", "fail", "not_run")
PATCH_FORMAT = "unified_diff"
PATCH_RUN_REASON_CODES = SAFE_DIFF_PLAN_REASON_CODES + ("verification_failed", "verification_incomplete")

CREATE_MARKER = "__ls_m2_patch_run_create__"
DELETE_MARKER = "__ls_m2_patch_run_delete__"
BEFORE_MARKER = "__ls_m2_patch_run_before__"
AFTER_MARKER = "__ls_m2_patch_run_after__"


class PatchRunError(ArtifactStageError):
    pass


def _options_error(message: str) -> PatchRunError:
    return PatchRunError(message, "INVALID_OPTIONS")


def _plan_error(message: str) -> PatchRunError:
    return PatchRunError(message, "INVALID_SAFE_DIFF_PLAN")


@dataclass
class PlannedEdit:
    path: str
    operation: str
    justification: str
    target_id: Optional[str] = None
    symbol_path: Optional[str] = None
    has_symbol_path: bool = False


@dataclass
class VerificationEvaluation:
    results: List[Dict[str, Any]]
    checks_complete: bool = True
    evidence_complete: bool = True
    all_required_passed: bool = True
    missing_required_checks: List[str] = field(default_factory=list)
    incomplete_checks: List[str] = field(default_factory=list)
    failing_checks: List[str] = field(default_factory=list)

    def to_dict(self, required_checks: List[str]) -> Dict[str, Any]:
        return {
            "required_checks": required_checks,
            "results": self.results,
            "checks_complete": self.checks_complete,
            "evidence_complete": self.evidence_complete,
            "all_required_passed": self.all_required_passed,
            "missing_required_checks": self.missing_required_checks,
            "incomplete_checks": self.incomplete_checks,
            "failing_checks": self.failing_checks,
        }


def normalize_required_checks(value: Any) -> List[str]:
    if value is None:
        return sorted(DEFAULT_REQUIRED_CHECKS)
    if not isinstance(value, (list, tuple)):
        raise _options_error("Patch run requiredChecks must be an array of non-empty strings")
    checks = set()
    for item in value:
        check = normalize_optional_str(item)
        if check is None:
            raise _options_error("Patch run requiredChecks must contain non-empty strings")
        checks.add(check)
    if not checks:
        raise _options_error("Patch run requiredChecks must include at least one required check")
    return sorted(checks)


def normalize_verification_results(value: Any) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise _options_error("Patch run verificationResults must be an array when provided")

    seen = set()
    results = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise _options_error(f"Patch run verificationResults[{index}] must be an object")
        check = normalize_optional_str(item.get("check"))
        if check is None:
            raise _options_error(f"Patch run verificationResults[{index}].check must be a non-empty string")
        if check in seen:
            raise _options_error(f'Patch run verificationResults contains duplicate check "{check}"')
        seen.add(check)

        status = item.get("status", "not_run")
        if status not in CHECK_STATUSES:
            raise _options_error("Patch run verification result status must be one of pass, fail, or not_run")
        result: Dict[str, Any] = {"check": check, "status": status}
        evidence_ref = normalize_optional_str(item.get("evidence_ref"))
        if evidence_ref:
            result["evidence_ref"] = evidence_ref
        detail = normalize_optional_str(item.get("detail"))
        if detail:
            result["detail"] = detail
        results.append(result)

    return sorted(results, key=lambda result: result["check"])


def _plan_edit(value: Any, index: int) -> PlannedEdit:
    context = f"Patch run safe diff plan payload.edits[{index}]"
    if not isinstance(value, dict):
        raise _plan_error(f"{context} must be an object")

    path = normalize_relative_path(value.get("path"))
    if path is None:
        raise _plan_error(f"{context} must include a non-empty path")
    if path == ".":
        raise _plan_error(f"{context} path must not be '.'")
    if is_outside_workspace(path):
        raise _plan_error(f"{context} path must remain within workspace-relative bounds")

    operation = value.get("operation")
    if operation not in EDIT_OPERATIONS:
        raise _plan_error("Patch run safe diff plan payload.edits operation is unsupported for the pinned schema version")

    justification = normalize_optional_str(value.get("justification"))
    if justification is None:
        raise _plan_error(f"{context}.justification is required")

    return PlannedEdit(
        path=path,
        operation=operation,
        justification=justification,
        target_id=normalize_optional_str(value.get("target_id")),
        symbol_path=normalize_optional_str(value.get("symbol_path")),
        has_symbol_path="symbol_path" in value,
    )


def _plan_inputs(plan: Any) -> Dict[str, Any]:
    ref = require_envelope(
        plan,
        SAFE_DIFF_PLAN_ARTIFACT_TYPE,
        SAFE_DIFF_PLAN_SCHEMA_VERSION,
        PatchRunError,
        "INVALID_SAFE_DIFF_PLAN",
        "Patch run",
    )
    payload = plan["payload"]
    decision = payload.get("decision")
    if decision not in GATE_DECISIONS:
        raise _plan_error("Patch run safe diff plan payload.decision must be continue, escalate, or stop")

    reason_code = normalize_optional_str(payload.get("reason_code"))
    reason_detail = normalize_optional_str(payload.get("reason_detail"))
    if not reason_code or not reason_detail:
        raise _plan_error("Patch run safe diff plan payload.reason_code and payload.reason_detail are required")
    if reason_code not in SAFE_DIFF_PLAN_REASON_CODES:
        raise _plan_error("Patch run safe diff plan payload.reason_code is unsupported for the pinned schema version")

    raw_edits = payload.get("edits")
    if not isinstance(raw_edits, list):
        raise _plan_error("Patch run safe diff plan payload.edits must be an array")

    return {
        "ref": ref,
        "run_id": plan["run_id"].strip(),
        "decision": decision,
        "reason_code": reason_code,
        "reason_detail": reason_detail,
        "edits": [_plan_edit(edit, index) for index, edit in enumerate(raw_edits)],
    }


def single_line(value: str, max_length: int = 180) -> str:
    collapsed = re.sub(r"\s+", " ", value).strip()
    if len(collapsed) <= max_length:
        return collapsed
    return collapsed[: max_length - 3] + "..."


def _metadata_label(edit: PlannedEdit) -> str:
    if not edit.has_symbol_path:
        symbol = "symbol:unspecified"
    elif edit.symbol_path is None:
        symbol = "symbol:file"
    else:
        symbol = f"symbol:{single_line(edit.symbol_path, 96)}"
    target = f"target:{single_line(edit.target_id, 96)}" if edit.target_id else "target:none"
    return " | ".join([symbol, target, f"why:{single_line(edit.justification, 120)}"])


def build_patch_chunk(edit: PlannedEdit) -> str:
    metadata = _metadata_label(edit)
    header = f"diff --git a/{edit.path} b/{edit.path}"
    if edit.operation == "create":
        lines = [header, "new file mode 100644", "--- /dev/null", f"+++ b/{edit.path}", "@@ -0,0 +1 @@",
                 f"+{CREATE_MARKER} {metadata}"]
    elif edit.operation == "delete":
        lines = [header, "deleted file mode 100644", f"--- a/{edit.path}", "+++ /dev/null", "@@ -1 +0,0 @@",
                 f"-{DELETE_MARKER} {metadata}"]
    else:
        lines = [header, f"--- a/{edit.path}", f"+++ b/{edit.path}", "@@ -1 +1 @@",
                 f"-{BEFORE_MARKER}", f"+{AFTER_MARKER} {metadata}"]
    return "\n".join(lines)


def build_patch_content(edits: List[PlannedEdit]) -> str:
    if not edits:
        return ""
    return "\n\n".join(build_patch_chunk(edit) for edit in edits) + "\n"


def patch_digest(content: str) -> str:
    return "sha256:" + hashlib.sha256(content.encode("utf-8")).hexdigest()


def evaluate_verification(required_checks: List[str], results: List[Dict[str, Any]]) -> VerificationEvaluation:
    by_check = {result["check"]: result for result in results}
    evaluation = VerificationEvaluation(results=results)
    incomplete = set()
    failing = set()

    for check in required_checks:
        result = by_check.get(check)
        if result is None:
            evaluation.missing_required_checks.append(check)
            incomplete.add(check)
            evaluation.checks_complete = False
            evaluation.evidence_complete = False
            evaluation.all_required_passed = False
            continue
        if not result.get("evidence_ref"):
            evaluation.evidence_complete = False
            incomplete.add(check)
        if result["status"] == "not_run":
            evaluation.checks_complete = False
            evaluation.all_required_passed = False
            incomplete.add(check)
        elif result["status"] == "fail":
            failing.add(check)
            evaluation.all_required_passed = False

    evaluation.incomplete_checks = sorted(incomplete)
    evaluation.failing_checks = sorted(failing)
    return evaluation


def format_incomplete_reason(evaluation: VerificationEvaluation) -> str:
    not_run = {result["check"] for result in evaluation.results if result["status"] == "not_run"}
    parts = []
    if evaluation.missing_required_checks:
        parts.append(f"missing required checks: {', '.join(evaluation.missing_required_checks)}")
    not_run_checks = [check for check in evaluation.incomplete_checks if check in not_run]
    evidence_only = [
        check
        for check in evaluation.incomplete_checks
        if check not in evaluation.missing_required_checks and check not in not_run
    ]
    if not_run_checks:
        parts.append(f"not-run required checks: {', '.join(not_run_checks)}")
    if evidence_only:
        parts.append(f"missing evidence links for: {', '.join(evidence_only)}")
    summary = "; ".join(parts) if parts else "required verification evidence is incomplete"
    return f"Required verification evidence is incomplete: {summary}."


def create_patch_run_artifact(
    safe_diff_plan: Dict[str, Any],
    patch_materialization: Optional[str] = None,
    required_checks: Optional[List[str]] = None,
    verification_results: Optional[List[Dict[str, Any]]] = None,
    policy_sensitive_path_patterns: Optional[List[str]] = None,
    now: Optional[Callable[[], Any]] = None,
    run_id_factory: Optional[Callable[[], Any]] = None,
    tool_version: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Materialize the plan's edits and gate them on verification evidence.

    Precedence: a non-continue plan propagates; incomplete evidence stops
    with ``verification_incomplete``; a failed check stops with
    ``verification_failed``; policy-sensitive paths escalate with
    ``policy_blocked``; otherwise ``continue/ok``.
    """
    plan = _plan_inputs(safe_diff_plan)
    materialization = normalize_optional_str(patch_materialization) or DEFAULT_PATCH_MATERIALIZATION
    checks = normalize_required_checks(required_checks)
    results = normalize_verification_results(verification_results)
    sensitive_patterns = normalize_patterns(
        policy_sensitive_path_patterns,
        DEFAULT_POLICY_SENSITIVE_PATH_PATTERNS,
        _options_error,
        "Patch run policySensitivePathPatterns",
    )

    edits: List[PlannedEdit] = []
    if plan["decision"] != "continue":
        if plan["reason_code"] not in PATCH_RUN_REASON_CODES:
            raise _plan_error("Patch run safe diff plan reason_code cannot be propagated by the pinned schema version")
        decision, reason_code = plan["decision"], plan["reason_code"]
        reason_detail = f"Safe diff plan blocked patch generation: {plan['reason_detail']}"
    elif not plan["edits"]:
        decision, reason_code = "stop", "unsupported_input"
        reason_detail = "Safe diff plan continue decision did not include any edits to materialize."
    else:
        edits = plan["edits"]

    content = build_patch_content(edits)
    patch = {
        "format": PATCH_FORMAT,
        "content": content,
        "file_count": len({edit.path for edit in edits}),
        "hunk_count": len(edits),
    }
    verification = evaluate_verification(checks, results)

    if edits:
        if not verification.checks_complete or not verification.evidence_complete:
            decision, reason_code = "stop", "verification_incomplete"
            reason_detail = format_incomplete_reason(verification)
        elif not verification.all_required_passed:
            decision, reason_code = "stop", "verification_failed"
            reason_detail = f"Required verification checks failed: {', '.join(verification.failing_checks)}."
        else:
            sensitive = collect_matching_paths((edit.path for edit in edits), sensitive_patterns)
            if sensitive:
                decision, reason_code = "escalate", "policy_blocked"
                reason_detail = (
                    f"Patch targets policy-sensitive paths requiring human review: {', '.join(sensitive)}."
                )
            else:
                decision, reason_code = "continue", "ok"
                reason_detail = "All required checks passed with complete evidence"

    trace = {"patch_materialization": materialization}
    payload = {
        "patch": patch,
        "patch_digest": patch_digest(content),
        "verification": verification.to_dict(checks),
        "decision": decision,
        "reason_code": reason_code,
        "reason_detail": reason_detail,
    }
    digest = sha256_hex({"inputs": [plan["ref"]], "trace": trace, "payload": payload})

    logger.info(
        "Patch run evaluated",
        decision=decision,
        reason_code=reason_code,
        hunks=patch["hunk_count"],
        failing_checks=verification.failing_checks,
    )
    return build_envelope(
        PATCH_RUN_ARTIFACT_TYPE,
        PATCH_RUN_SCHEMA_VERSION,
        "patch",
        digest,
        call_id_factory(run_id_factory) or plan["run_id"],
        now,
        tool_version,
        [plan["ref"]],
        trace,
        payload,
    )
