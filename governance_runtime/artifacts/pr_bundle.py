"""
PR bundle stage: patch run + upstream lineage -> human-reviewable package.

The bundle carries the patch, a reverse-patch rollback package, risk notes,
verification linkage and the full artifact chain. ``readiness`` stops the
bundle whenever a required section is missing and otherwise reports the
upstream outcome without overriding it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from governance_runtime.artifacts.envelope import (
    GATE_DECISIONS,
    ArtifactStageError,
    ArtifactStore,
    build_envelope,
    dedupe_refs,
    require_envelope,
    sha256_hex,
)
from governance_runtime.artifacts.globs import is_outside_workspace, normalize_relative_path, to_posix
from governance_runtime.artifacts.intent_mapping import INTENT_MAPPING_ARTIFACT_TYPE, INTENT_MAPPING_SCHEMA_VERSION
from governance_runtime.artifacts.patch_run import (
    CHECK_STATUSES,
    PATCH_FORMAT,
    PATCH_RUN_ARTIFACT_TYPE,
    PATCH_RUN_REASON_CODES,
    PATCH_RUN_SCHEMA_VERSION,
    patch_digest,
    single_line,
)
from governance_runtime.artifacts.safe_diff_plan import (
    EDIT_OPERATIONS,
    SAFE_DIFF_PLAN_ARTIFACT_TYPE,
    SAFE_DIFF_PLAN_SCHEMA_VERSION,
)
from governance_runtime.artifacts.workspace_snapshot import (
    WORKSPACE_SNAPSHOT_ARTIFACT_TYPE,
    WORKSPACE_SNAPSHOT_SCHEMA_VERSION,
)
from governance_runtime.utils.hooks import call_id_factory, normalize_optional_str

logger = structlog.get_logger(__name__)

PR_BUNDLE_ARTIFACT_TYPE = "ls.m2.pr_bundle"
PR_BUNDLE_SCHEMA_VERSION = "1.0.0"
BOUNDARY_MODE = "artifact_only"
ROLLBACK_STRATEGY = "reverse_patch"
PR_BUNDLE_REASON_CODES = PATCH_RUN_REASON_CODES + ("rollback_unavailable", "bundle_incomplete")

READINESS_SECTIONS = (
    "patch_digest",
    "patch_payload",
    "change_summary",
    "change_rationale",
    "risk_tradeoffs",
    "verification_link",
    "verification_results",
    "rollback_package",
    "rollback_instructions",
    "lineage_trace_complete",
)

READY_DETAIL = (
    "PR-equivalent bundle includes patch payload, rationale, risk tradeoffs, verification linkage/results, "
    "rollback package/instructions, and complete lineage trace."
)
PLACEHOLDER_RISK = (
    "Patch content remains a deterministic placeholder unified diff intended for review/package handoff, "
    "not full file-content patch synthesis."
)

_INVERSE_OPERATION = {"create": "delete", "delete": "create", "modify": "modify"}


class PrBundleError(ArtifactStageError):
    pass


def _patch_error(message: str) -> PrBundleError:
    return PrBundleError(message, "INVALID_PATCH_RUN")


def _lineage_error(message: str) -> PrBundleError:
    return PrBundleError(message, "INVALID_LINEAGE")


def _options_error(message: str) -> PrBundleError:
    return PrBundleError(message, "INVALID_OPTIONS")


def _string_list(value: Any, context: str, error_factory) -> Optional[List[str]]:
    """Trimmed, deduplicated strings with blanks dropped; None when absent."""
    if value is None:
        return None
    if not isinstance(value, list):
        raise error_factory(f"{context} must be an array of strings when provided")
    items: List[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise error_factory(f"{context}[{index}] must be a string")
        trimmed = item.strip()
        if trimmed and trimmed not in items:
            items.append(trimmed)
    return items


def _input_refs(value: Any, context: str, error_factory) -> List[Dict[str, str]]:
    if not isinstance(value, list):
        raise error_factory(f"{context} must be an array")
    refs = []
    for index, item in enumerate(value):
        item_context = f"{context}[{index}]"
        if not isinstance(item, dict):
            raise error_factory(f"{item_context} must be an object")
        ref = {key: normalize_optional_str(item.get(key)) for key in ("artifact_id", "artifact_type", "schema_version")}
        if not all(ref.values()):
            raise error_factory(f"{item_context} must include artifact_id, artifact_type, and schema_version")
        refs.append(ref)
    return refs


def _single_ref(refs: List[Dict[str, str]], artifact_type: str, context: str, error_factory) -> Optional[Dict[str, str]]:
    matches = [ref for ref in refs if ref["artifact_type"] == artifact_type]
    if len(matches) > 1:
        raise error_factory(f"{context} must not include multiple {artifact_type} inputs")
    return matches[0] if matches else None


@dataclass
class _PatchRun:
    ref: Dict[str, str]
    run_id: str
    plan_ref: Dict[str, str]
    patch: Dict[str, Any]
    verification: Dict[str, Any]
    decision: str
    reason_code: str
    reason_detail: str


@dataclass
class _Edit:
    path: str
    operation: str
    justification: str
    target_id: Optional[str] = None
    symbol_path: Optional[str] = None
    has_symbol_path: bool = False


@dataclass
class _Lineage:
    snapshot_ref: Optional[Dict[str, str]] = None
    snapshot_run_id: Optional[str] = None
    mapping_ref: Optional[Dict[str, str]] = None
    mapping_run_id: Optional[str] = None
    mapping_snapshot_ref: Optional[Dict[str, str]] = None
    intent_summary: Optional[str] = None
    mapped_targets: List[Dict[str, Any]] = field(default_factory=list)
    plan_ref: Optional[Dict[str, str]] = None
    plan_run_id: Optional[str] = None
    plan_mapping_ref: Optional[Dict[str, str]] = None
    edits: List[_Edit] = field(default_factory=list)
    complete: bool = False


def _verification_results(value: Any, context: str) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        raise _patch_error(f"{context} must be an array")
    results = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            raise _patch_error(f"{context}[{index}] must be an object")
        check = normalize_optional_str(item.get("check"))
        if check is None:
            raise _patch_error(f"{context}[{index}].check must be a non-empty string")
        if item.get("status") not in CHECK_STATUSES:
            raise _patch_error(f"{context}[{index}].status must be pass, fail, or not_run")
        result: Dict[str, Any] = {"check": check, "status": item["status"]}
        for key in ("evidence_ref", "detail"):
            text = normalize_optional_str(item.get(key))
            if text:
                result[key] = text
        results.append(result)
    return results


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def read_patch_run(artifact: Any) -> _PatchRun:
    ref = require_envelope(
        artifact, PATCH_RUN_ARTIFACT_TYPE, PATCH_RUN_SCHEMA_VERSION, PrBundleError, "INVALID_PATCH_RUN", "PR bundle"
    )
    refs = _input_refs(artifact.get("inputs"), "PR bundle patch run inputs", _patch_error)
    plan_ref = _single_ref(refs, SAFE_DIFF_PLAN_ARTIFACT_TYPE, "PR bundle patch run inputs", _patch_error)
    if plan_ref is None:
        raise _patch_error(f"PR bundle patch run inputs must include a {SAFE_DIFF_PLAN_ARTIFACT_TYPE} reference")

    payload = artifact["payload"]
    patch = payload.get("patch") if isinstance(payload.get("patch"), dict) else {}
    if patch.get("format") != PATCH_FORMAT:
        raise _patch_error("PR bundle patch run payload.patch.format must be unified_diff")
    if not isinstance(patch.get("content"), str):
        raise _patch_error("PR bundle patch run payload.patch.content must be a string")
    digest = normalize_optional_str(payload.get("patch_digest"))
    if digest is None:
        raise _patch_error("PR bundle patch run payload.patch_digest is required")
    if patch_digest(patch["content"]) != digest:
        raise _patch_error("PR bundle patch run payload.patch_digest does not match payload.patch.content")
    if not _is_count(patch.get("file_count")) or not _is_count(patch.get("hunk_count")):
        raise _patch_error("PR bundle patch run payload.patch.file_count and hunk_count must be non-negative integers")

    verification = payload.get("verification")
    if not isinstance(verification, dict):
        raise _patch_error("PR bundle patch run payload.verification is required")
    context = "PR bundle patch run payload.verification"
    required_checks = _string_list(verification.get("required_checks"), f"{context}.required_checks", _patch_error)
    if required_checks is None:
        raise _patch_error(f"{context}.required_checks must be an array")
    results = _verification_results(verification.get("results"), f"{context}.results")
    for flag in ("checks_complete", "evidence_complete", "all_required_passed"):
        if not isinstance(verification.get(flag), bool):
            raise _patch_error(f"{context}.{flag} must be a boolean")
    lists = {
        key: _string_list(verification.get(key), f"{context}.{key}", _patch_error) or []
        for key in ("missing_required_checks", "incomplete_checks", "failing_checks")
    }

    decision = payload.get("decision")
    if decision not in GATE_DECISIONS:
        raise _patch_error("PR bundle patch run payload.decision must be continue, escalate, or stop")
    reason_code = normalize_optional_str(payload.get("reason_code"))
    reason_detail = normalize_optional_str(payload.get("reason_detail"))
    if not reason_code or not reason_detail:
        raise _patch_error("PR bundle patch run payload.reason_code and payload.reason_detail are required")
    if reason_code not in PATCH_RUN_REASON_CODES:
        raise _patch_error("PR bundle patch run payload.reason_code is unsupported for the pinned schema version")

    artifact_id = ref["artifact_id"]
    return _PatchRun(
        ref=ref,
        run_id=artifact["run_id"].strip(),
        plan_ref=plan_ref,
        patch={
            "format": PATCH_FORMAT,
            "digest": digest,
            "content": patch["content"],
            "file_count": patch["file_count"],
            "hunk_count": patch["hunk_count"],
            "patch_run_artifact_id": artifact_id,
        },
        verification={
            "patch_run_artifact_id": artifact_id,
            "required_checks": required_checks,
            "results": results,
            "checks_complete": verification["checks_complete"],
            "evidence_complete": verification["evidence_complete"],
            "all_required_passed": verification["all_required_passed"],
            **lists,
        },
        decision=decision,
        reason_code=reason_code,
        reason_detail=reason_detail,
    )


def _lineage_envelope(artifact: Any, key: str, artifact_type: str, schema_version: str) -> Dict[str, str]:
    context = f"PR bundle lineage.{key}"
    if not isinstance(artifact, dict):
        raise _lineage_error(f"{context} must be an artifact object")
    if artifact.get("artifact_type") != artifact_type:
        raise _lineage_error(f"{context} must be {artifact_type}")
    if artifact.get("schema_version") != schema_version:
        raise _lineage_error(f"{context} must be {artifact_type}@{schema_version}")
    if not normalize_optional_str(artifact.get("artifact_id")) or not normalize_optional_str(artifact.get("run_id")):
        raise _lineage_error(f"{context} is missing required envelope fields")
    return {"artifact_id": artifact["artifact_id"].strip(), "artifact_type": artifact_type, "schema_version": schema_version}


def _optional_symbol_path(value: Dict[str, Any], context: str) -> Optional[str]:
    raw = value.get("symbol_path")
    if raw is None:
        return None
    symbol_path = normalize_optional_str(raw)
    if symbol_path is None:
        raise _lineage_error(f"{context}.symbol_path must be null or a non-empty string")
    return symbol_path


def _mapped_target(value: Any, context: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise _lineage_error(f"{context} must be an object")
    target_id = normalize_optional_str(value.get("target_id"))
    path = normalize_optional_str(value.get("path"))
    if not target_id or not path:
        raise _lineage_error(f"{context} must include target_id and path")
    return {"target_id": target_id, "path": to_posix(path), "symbol_path": _optional_symbol_path(value, context)}


def _plan_edit(value: Any, context: str) -> _Edit:
    if not isinstance(value, dict):
        raise _lineage_error(f"{context} must be an object")
    path = normalize_relative_path(value.get("path"))
    if path is None:
        raise _lineage_error(f"{context}.path must be a non-empty string")
    if path == "." or is_outside_workspace(path):
        raise _lineage_error(f"{context}.path must be workspace-relative")
    if value.get("operation") not in EDIT_OPERATIONS:
        raise _lineage_error(f"{context}.operation is unsupported for the pinned schema version")
    justification = normalize_optional_str(value.get("justification"))
    if justification is None:
        raise _lineage_error(f"{context}.justification is required")
    return _Edit(
        path=path,
        operation=value["operation"],
        justification=justification,
        target_id=normalize_optional_str(value.get("target_id")),
        symbol_path=_optional_symbol_path(value, context),
        has_symbol_path="symbol_path" in value,
    )


def read_lineage(value: Any, patch_run: _PatchRun) -> _Lineage:
    """Validate optional upstream artifacts and check that every reference chains."""
    lineage = _Lineage()
    if value is None:
        return lineage
    if not isinstance(value, dict):
        raise _options_error("PR bundle lineage must be an object when provided")

    snapshot = value.get("workspace_snapshot")
    if snapshot is not None:
        lineage.snapshot_ref = _lineage_envelope(
            snapshot, "workspaceSnapshot", WORKSPACE_SNAPSHOT_ARTIFACT_TYPE, WORKSPACE_SNAPSHOT_SCHEMA_VERSION
        )
        lineage.snapshot_run_id = snapshot["run_id"].strip()

    mapping = value.get("intent_mapping")
    if mapping is not None:
        lineage.mapping_ref = _lineage_envelope(
            mapping, "intentMapping", INTENT_MAPPING_ARTIFACT_TYPE, INTENT_MAPPING_SCHEMA_VERSION
        )
        lineage.mapping_run_id = mapping["run_id"].strip()
        context = "PR bundle lineage.intentMapping inputs"
        refs = _input_refs(mapping.get("inputs"), context, _lineage_error)
        lineage.mapping_snapshot_ref = _single_ref(refs, WORKSPACE_SNAPSHOT_ARTIFACT_TYPE, context, _lineage_error)
        payload = mapping.get("payload") if isinstance(mapping.get("payload"), dict) else {}
        intent = payload.get("intent") if isinstance(payload.get("intent"), dict) else {}
        lineage.intent_summary = normalize_optional_str(intent.get("summary"))
        if lineage.intent_summary is None:
            raise _lineage_error("PR bundle lineage.intentMapping payload.intent.summary is required")
        if not isinstance(payload.get("candidates"), list):
            raise _lineage_error("PR bundle lineage.intentMapping payload.candidates must be an array")
        lineage.mapped_targets = [
            _mapped_target(candidate, f"PR bundle lineage.intentMapping payload.candidates[{index}]")
            for index, candidate in enumerate(payload["candidates"])
        ]

    plan = value.get("safe_diff_plan")
    if plan is not None:
        lineage.plan_ref = _lineage_envelope(
            plan, "safeDiffPlan", SAFE_DIFF_PLAN_ARTIFACT_TYPE, SAFE_DIFF_PLAN_SCHEMA_VERSION
        )
        lineage.plan_run_id = plan["run_id"].strip()
        context = "PR bundle lineage.safeDiffPlan inputs"
        refs = _input_refs(plan.get("inputs"), context, _lineage_error)
        lineage.plan_mapping_ref = _single_ref(refs, INTENT_MAPPING_ARTIFACT_TYPE, context, _lineage_error)
        payload = plan.get("payload") if isinstance(plan.get("payload"), dict) else {}
        if not isinstance(payload.get("edits"), list):
            raise _lineage_error("PR bundle lineage.safeDiffPlan payload.edits must be an array")
        lineage.edits = [
            _plan_edit(edit, f"PR bundle lineage.safeDiffPlan payload.edits[{index}]")
            for index, edit in enumerate(payload["edits"])
        ]

    run_ids = []
    for run_id in (patch_run.run_id, lineage.plan_run_id, lineage.mapping_run_id, lineage.snapshot_run_id):
        if run_id is not None and run_id not in run_ids:
            run_ids.append(run_id)
    if len(run_ids) > 1:
        raise _lineage_error(
            f"PR bundle lineage artifacts must share a run_id with patch run; observed: {', '.join(run_ids)}"
        )

    if lineage.plan_ref and lineage.plan_ref != patch_run.plan_ref:
        raise _lineage_error("PR bundle lineage.safeDiffPlan does not match patch run inputs reference")
    if lineage.mapping_ref and lineage.plan_mapping_ref and lineage.plan_mapping_ref != lineage.mapping_ref:
        raise _lineage_error("PR bundle lineage.intentMapping does not match safe diff plan inputs reference")
    if lineage.snapshot_ref and lineage.mapping_snapshot_ref and lineage.mapping_snapshot_ref != lineage.snapshot_ref:
        raise _lineage_error("PR bundle lineage.workspaceSnapshot does not match intent mapping inputs reference")

    lineage.complete = bool(
        lineage.snapshot_ref
        and lineage.mapping_ref
        and lineage.plan_ref
        and lineage.plan_mapping_ref == lineage.mapping_ref
        and lineage.mapping_snapshot_ref == lineage.snapshot_ref
    )
    return lineage


def lineage_from_store(store: ArtifactStore, patch_run_id: str) -> Dict[str, Dict[str, Any]]:
    """Collect the upstream artifacts of a stored patch run, keyed for ``create_pr_bundle_artifact``."""
    keys = {
        WORKSPACE_SNAPSHOT_ARTIFACT_TYPE: "workspace_snapshot",
        INTENT_MAPPING_ARTIFACT_TYPE: "intent_mapping",
        SAFE_DIFF_PLAN_ARTIFACT_TYPE: "safe_diff_plan",
    }
    lineage = {}
    for ref in store.lineage(patch_run_id):
        key = keys.get(ref["artifact_type"])
        if key is not None and key not in lineage and ref["artifact_id"] in store:
            lineage[key] = store.get(ref["artifact_id"])
    return lineage


def _rollback_label(edit: _Edit) -> str:
    if not edit.has_symbol_path:
        symbol = "symbol:unspecified"
    elif edit.symbol_path is None:
        symbol = "symbol:file"
    else:
        symbol = f"symbol:{single_line(edit.symbol_path, 96)}"
    target = f"target:{single_line(edit.target_id, 96)}" if edit.target_id else "target:none"
    return " | ".join([symbol, target, f"why:{single_line(edit.justification, 120)}"])


def build_rollback_chunk(edit: _Edit) -> str:
    operation = _INVERSE_OPERATION[edit.operation]
    metadata = _rollback_label(edit)
    header = f"diff --git a/{edit.path} b/{edit.path}"
    if operation == "create":
        lines = [header, "new file mode 100644", "--- /dev/null", f"+++ b/{edit.path}", "@@ -0,0 +1 @@",
                 f"+__ls_m2_pr_bundle_rollback_create__ {metadata}"]
    elif operation == "delete":
        lines = [header, "deleted file mode 100644", f"--- a/{edit.path}", "+++ /dev/null", "@@ -1 +0,0 @@",
                 f"-__ls_m2_pr_bundle_rollback_delete__ {metadata}"]
    else:
        lines = [header, f"--- a/{edit.path}", f"+++ b/{edit.path}", "@@ -1 +1 @@",
                 "-__ls_m2_pr_bundle_rollback_before__", f"+__ls_m2_pr_bundle_rollback_after__ {metadata}"]
    return "\n".join(lines)


def build_rollback_content(edits: List[_Edit]) -> str:
    if not edits:
        return ""
    return "\n\n".join(build_rollback_chunk(edit) for edit in reversed(edits)) + "\n"


def default_rollback_instructions(package_ref: str, patch_run_id: str, plan_id: Optional[str]) -> List[str]:
    instructions = [
        f"Apply rollback package {package_ref} as a unified diff against the same workspace baseline "
        f"expected by patch run {patch_run_id}.",
        "Verify the target workspace state matches the expected pre-apply conditions before executing rollback.",
        "Re-run required checks and record evidence linkage in the follow-up apply/rollback artifact.",
    ]
    if plan_id:
        instructions.insert(
            1, f"Use safe diff plan {plan_id} as the authoritative path/order reference when reviewing rollback hunks."
        )
    return instructions


def derive_rollback(lineage: _Lineage, patch_run: _PatchRun, overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Build the reverse-patch package.

    The package exists only when the patch run materialized a patch and the
    planned edits are known; ``supported`` may force it off but never on.
    """
    overrides = overrides or {}
    if not isinstance(overrides, dict):
        raise _options_error("PR bundle rollback must be an object when provided")
    strategy = overrides.get("strategy", ROLLBACK_STRATEGY)
    if strategy != ROLLBACK_STRATEGY:
        raise _options_error("PR bundle rollback.strategy must be reverse_patch when provided")
    instructions_override = _string_list(overrides.get("instructions"), "PR bundle rollback.instructions", _options_error)
    package_ref_override = normalize_optional_str(overrides.get("package_ref"))

    can_build = bool(lineage.edits) and patch_run.patch["hunk_count"] > 0
    supported = overrides.get("supported", can_build)
    if not supported or not can_build:
        return {
            "strategy": strategy,
            "supported": False,
            "package_ref": package_ref_override,
            "package": None,
            "instructions": instructions_override or [],
        }

    content = build_rollback_content(lineage.edits)
    digest = patch_digest(content)
    package_ref = package_ref_override or f"rollback_{digest[len('sha256:'):len('sha256:') + 12]}"
    return {
        "strategy": strategy,
        "supported": True,
        "package_ref": package_ref,
        "package": {
            "format": PATCH_FORMAT,
            "content": content,
            "digest": digest,
            "file_count": len({edit.path for edit in lineage.edits}),
            "hunk_count": len(lineage.edits),
        },
        "instructions": instructions_override
        if instructions_override is not None
        else default_rollback_instructions(package_ref, patch_run.ref["artifact_id"], lineage.plan_ref["artifact_id"]),
    }


def resolve_summary(value: Any, lineage: _Lineage, patch_run: _PatchRun) -> str:
    explicit = normalize_optional_str(value)
    if explicit:
        return explicit
    if lineage.intent_summary:
        return single_line(lineage.intent_summary, 160)
    summary = f"PR-equivalent bundle for patch run {patch_run.ref['artifact_id']}"
    if patch_run.decision == "escalate":
        summary += " (human review required)"
    return summary


def resolve_rationale(value: Any, lineage: _Lineage, patch_run: _PatchRun) -> str:
    explicit = normalize_optional_str(value)
    if explicit:
        return explicit
    patch_id = patch_run.ref["artifact_id"]
    if lineage.edits:
        paths = ", ".join(edit.path for edit in lineage.edits[:3])
        extra = len(lineage.edits) - 3
        suffix = f" (+{extra} more)" if extra > 0 else ""
        return (
            f"Packages patch run {patch_id} with {len(lineage.edits)} planned edit(s) from safe diff plan "
            f"{lineage.plan_ref['artifact_id']}: {paths}{suffix}."
        )
    return (
        f"Packages patch run {patch_id} into a human-inspectable PR-equivalent artifact bundle "
        "for review and downstream apply/rollback gating."
    )


def resolve_risk_tradeoffs(value: Any, lineage: _Lineage, patch_run: _PatchRun) -> List[str]:
    explicit = _string_list(value, "PR bundle riskTradeoffs", _options_error)
    if explicit is not None:
        return explicit
    risks = [PLACEHOLDER_RISK]
    if patch_run.decision == "escalate" and patch_run.reason_code == "policy_blocked":
        risks.append("Patch run marked policy-sensitive paths; human review is required before any apply decision.")
    elif patch_run.decision == "stop":
        risks.append(
            f"Patch run blocked continuation ({patch_run.reason_code}); this bundle is inspection-only and not apply-ready."
        )
    if not lineage.complete:
        risks.append("Lineage trace is incomplete; bundle should not be used as an autonomous apply prerequisite.")
    return risks


_UNSET = object()


def resolve_evidence_ref(value: Any, patch_run: _PatchRun) -> Optional[str]:
    """Explicit ref wins; an explicit None or blank drops the link; omitted links the patch run."""
    if value is _UNSET:
        return patch_run.ref["artifact_id"]
    return normalize_optional_str(value)


def resolve_readiness(
    patch_run: _PatchRun,
    summary: str,
    rationale: str,
    risks: List[str],
    evidence_ref: Optional[str],
    rollback: Dict[str, Any],
    lineage_complete: bool,
) -> Dict[str, Any]:
    verification = patch_run.verification
    package = rollback["package"]
    rollback_ready = bool(
        rollback["supported"] and rollback["package_ref"] and package and package["content"] and package["digest"]
    )
    sections = {
        "patch_digest": bool(patch_run.patch["digest"]),
        "patch_payload": bool(patch_run.patch["content"]),
        "change_summary": bool(summary.strip()),
        "change_rationale": bool(rationale.strip()),
        "risk_tradeoffs": bool(risks),
        "verification_link": bool(evidence_ref),
        "verification_results": verification["checks_complete"]
        and verification["evidence_complete"]
        and verification["all_required_passed"],
        "rollback_package": rollback_ready,
        "rollback_instructions": bool(rollback["instructions"]),
        "lineage_trace_complete": lineage_complete,
    }
    missing = [name for name in READINESS_SECTIONS if not sections[name]]
    if not missing and patch_run.decision != "continue":
        # Complete bundles still carry the upstream decision forward
        return {
            "decision": patch_run.decision,
            "reason_code": patch_run.reason_code,
            "reason_detail": (
                "PR-equivalent bundle is complete but the upstream patch run did not continue; "
                f"outcome={patch_run.decision}/{patch_run.reason_code}."
            ),
            "required_sections": sections,
            "missing_sections": [],
        }
    if not missing:
        return {
            "decision": "continue",
            "reason_code": "ok",
            "reason_detail": READY_DETAIL,
            "required_sections": sections,
            "missing_sections": [],
        }

    if not verification["checks_complete"] or not verification["evidence_complete"]:
        reason_code = "verification_incomplete"
    elif not verification["all_required_passed"]:
        reason_code = "verification_failed"
    elif patch_run.decision == "stop":
        reason_code = patch_run.reason_code
    elif not rollback_ready:
        reason_code = "rollback_unavailable"
    else:
        reason_code = "bundle_incomplete"

    upstream = ""
    if patch_run.decision != "continue":
        upstream = f" Upstream patch run outcome={patch_run.decision}/{patch_run.reason_code}."
    return {
        "decision": "stop",
        "reason_code": reason_code,
        "reason_detail": f"PR-equivalent bundle is not ready; missing required sections: {', '.join(missing)}.{upstream}",
        "required_sections": sections,
        "missing_sections": missing,
    }


def create_pr_bundle_artifact(
    patch_run: Dict[str, Any],
    lineage: Optional[Dict[str, Dict[str, Any]]] = None,
    summary: Optional[str] = None,
    rationale: Optional[str] = None,
    risk_tradeoffs: Optional[List[str]] = None,
    verification_evidence_ref: Any = _UNSET,
    rollback: Optional[Dict[str, Any]] = None,
    now: Optional[Callable[[], Any]] = None,
    run_id_factory: Optional[Callable[[], Any]] = None,
    tool_version: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Assemble a PR-equivalent bundle.

    ``lineage`` holds the upstream artifacts under ``workspace_snapshot``,
    ``intent_mapping`` and ``safe_diff_plan``; every present artifact must
    share the patch run's ``run_id`` and chain through its ``inputs``.
    """
    run = read_patch_run(patch_run)
    chain = read_lineage(lineage, run)
    bundle_summary = resolve_summary(summary, chain, run)
    bundle_rationale = resolve_rationale(rationale, chain, run)
    risks = resolve_risk_tradeoffs(risk_tradeoffs, chain, run)
    evidence_ref = resolve_evidence_ref(verification_evidence_ref, run)
    rollback_section = derive_rollback(chain, run, rollback)

    chain_refs: Dict[str, Dict[str, str]] = {}
    if chain.snapshot_ref:
        chain_refs["workspace_snapshot"] = chain.snapshot_ref
    if chain.mapping_ref:
        chain_refs["intent_mapping"] = chain.mapping_ref
    if chain.plan_ref:
        chain_refs["safe_diff_plan"] = chain.plan_ref
    chain_refs["patch_run"] = run.ref

    traceability: Dict[str, Any] = {"lineage_complete": chain.complete, "chain": chain_refs}
    if chain.intent_summary:
        traceability["intent_summary"] = chain.intent_summary
    traceability["mapped_targets"] = chain.mapped_targets
    edit_summaries = []
    for edit in chain.edits:
        entry: Dict[str, Any] = {"path": edit.path, "operation": edit.operation}
        if edit.target_id:
            entry["target_id"] = edit.target_id
        if edit.has_symbol_path:
            entry["symbol_path"] = edit.symbol_path
        edit_summaries.append(entry)
    traceability["diff_plan_edits"] = edit_summaries
    traceability["patch_run_outcome"] = {
        "decision": run.decision,
        "reason_code": run.reason_code,
        "reason_detail": run.reason_detail,
    }

    readiness = resolve_readiness(
        run, bundle_summary, bundle_rationale, risks, evidence_ref, rollback_section, chain.complete
    )
    inputs = dedupe_refs([chain.snapshot_ref, chain.mapping_ref, chain.plan_ref, run.ref])
    trace = {"lineage": [ref["artifact_id"] for ref in inputs], "boundary_mode": BOUNDARY_MODE}
    payload = {
        "summary": bundle_summary,
        "rationale": bundle_rationale,
        "patch": run.patch,
        "risk_tradeoffs": risks,
        "verification_evidence_ref": evidence_ref,
        "verification": run.verification,
        "rollback": rollback_section,
        "traceability": traceability,
        "readiness": readiness,
    }
    digest = sha256_hex({"inputs": inputs, "trace": trace, "payload": payload})

    logger.info(
        "PR bundle assembled",
        decision=readiness["decision"],
        reason_code=readiness["reason_code"],
        missing_sections=readiness["missing_sections"],
    )
    return build_envelope(
        PR_BUNDLE_ARTIFACT_TYPE,
        PR_BUNDLE_SCHEMA_VERSION,
        "prb",
        digest,
        call_id_factory(run_id_factory) or run.run_id,
        now,
        tool_version,
        inputs,
        trace,
        payload,
    )
