"""
FeedbackTensor v1 records: normalized failure signal, confidence,
alternatives, proposed repair action and provenance.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from governance_runtime.audit.sink import append_ndjson
from governance_runtime.core.decisions import (
    CalibrationBand,
    FailureClass,
    RepairAction,
    enum_values,
)
from governance_runtime.utils.hooks import normalize_optional_str, utc_now

FEEDBACK_TENSOR_SCHEMA_VERSION = "1.0.0"

FAILURE_STAGES = ("compile", "runtime", "policy", "capability", "repair")
SOURCE_STAGES = ("runtime", "repair_loop", "policy_gate")

# Fields a VerificationContract may list in required_feedback_tensor_fields
FEEDBACK_TENSOR_FIELDS = (
    "schema_version",
    "feedback_id",
    "generated_at",
    "failure_signal",
    "confidence",
    "alternatives",
    "proposed_repair_action",
    "provenance",
)

DEFAULT_ALTERNATIVE_HYPOTHESIS = "Escalate to human review for deterministic adjudication."
DEFAULT_ALTERNATIVE_OUTCOME = "Task remains blocked pending review."


def _text(value: Any, fallback: str) -> str:
    normalized = normalize_optional_str(value)
    return normalized if normalized is not None else fallback


def clamp_probability(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return min(max(value, 0), 1)


def _enum_member(value: Any, allowed, field: str) -> str:
    raw = value.value if hasattr(value, "value") else value
    if raw not in allowed:
        raise ValueError(f"FeedbackTensor {field} must be one of: {', '.join(allowed)}")
    return raw


def _normalize_alternatives(alternatives: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    normalized = []
    for index, alternative in enumerate(alternatives or []):
        entry = {
            "id": _text(alternative.get("id"), f"alt-{index + 1}"),
            "hypothesis": _text(alternative.get("hypothesis"), DEFAULT_ALTERNATIVE_HYPOTHESIS),
            "expected_outcome": _text(alternative.get("expected_outcome"), DEFAULT_ALTERNATIVE_OUTCOME),
        }
        probability = clamp_probability(alternative.get("estimated_success_probability"))
        if probability is not None:
            entry["estimated_success_probability"] = probability
        normalized.append(entry)

    if normalized:
        return normalized

    return [
        {
            "id": "alt-manual-review",
            "hypothesis": DEFAULT_ALTERNATIVE_HYPOTHESIS,
            "expected_outcome": DEFAULT_ALTERNATIVE_OUTCOME,
            "estimated_success_probability": 0.95,
        }
    ]


def create_feedback_tensor_entry(
    feedback_id: str,
    generated_at: str,
    failure_signal: Dict[str, Any],
    confidence: Dict[str, Any],
    alternatives: Optional[List[Dict[str, Any]]],
    proposed_repair_action: Dict[str, Any],
    provenance: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Build a normalized FeedbackTensor v1 entry.

    Blank text falls back to fixed placeholder sentences, scores are clamped
    to [0, 1] (non-numeric scores become 0) and an empty alternatives list is
    replaced by a single manual-review alternative. Optional fields are
    omitted rather than written as null.
    """
    signal = {
        "class": _enum_member(failure_signal.get("class"), enum_values(FailureClass), "failure_signal.class"),
        "stage": _enum_member(failure_signal.get("stage"), FAILURE_STAGES, "failure_signal.stage"),
        "summary": _text(failure_signal.get("summary"), "Feedback summary unavailable."),
        "continuation_allowed": bool(failure_signal.get("continuation_allowed")),
    }
    error_code = normalize_optional_str(failure_signal.get("error_code"))
    if error_code is not None:
        signal["error_code"] = error_code

    score = clamp_probability(confidence.get("score"))
    confidence_entry = {
        "score": score if score is not None else 0,
        "rationale": _text(confidence.get("rationale"), "Confidence rationale unavailable."),
    }
    band = normalize_optional_str(confidence.get("calibration_band"))
    if band in enum_values(CalibrationBand):
        confidence_entry["calibration_band"] = band

    action = {
        "action": _enum_member(
            proposed_repair_action.get("action"), enum_values(RepairAction), "proposed_repair_action.action"
        ),
        "rationale": _text(proposed_repair_action.get("rationale"), "Repair action rationale unavailable."),
        "requires_human_approval": bool(proposed_repair_action.get("requires_human_approval")),
    }
    target = normalize_optional_str(proposed_repair_action.get("target"))
    if target is not None:
        action["target"] = target
    patch_excerpt = normalize_optional_str(proposed_repair_action.get("patch_excerpt"))
    if patch_excerpt is not None:
        action["patch_excerpt"] = patch_excerpt

    versions = provenance.get("contract_versions") or {}
    provenance_entry = {
        "run_id": _text(provenance.get("run_id"), "run-unavailable"),
        "source_stage": _enum_member(provenance.get("source_stage"), SOURCE_STAGES, "provenance.source_stage"),
    }
    trace_entry_id = normalize_optional_str(provenance.get("trace_entry_id"))
    if trace_entry_id is not None:
        provenance_entry["trace_entry_id"] = trace_entry_id
    provenance_entry["contract_versions"] = {
        "semantic_ir": _text(versions.get("semantic_ir"), "unknown"),
        "policy_profile": _text(versions.get("policy_profile"), "unknown"),
        "feedback_tensor": _text(versions.get("feedback_tensor"), FEEDBACK_TENSOR_SCHEMA_VERSION),
    }

    return {
        "schema_version": FEEDBACK_TENSOR_SCHEMA_VERSION,
        "feedback_id": _text(feedback_id, "ft-fallback"),
        "generated_at": _text(generated_at, utc_now()),
        "failure_signal": signal,
        "confidence": confidence_entry,
        "alternatives": _normalize_alternatives(alternatives),
        "proposed_repair_action": action,
        "provenance": provenance_entry,
    }


def emit_feedback_tensor_entry(entry: Dict[str, Any], output_path: Optional[str] = None) -> None:
    append_ndjson(output_path, entry)


def summarize_feedback_tensor(entry: Dict[str, Any], output_path: Optional[str], emitted: bool) -> Dict[str, Any]:
    """Trace inspection view of an emitted (or attempted) FeedbackTensor."""
    signal = entry["failure_signal"]
    confidence = entry["confidence"]
    action = entry["proposed_repair_action"]

    summary = {
        "configured": output_path is not None,
        "emitted": emitted,
        "output_path": output_path,
        "feedback_id": entry["feedback_id"],
        "trace_entry_id": entry["provenance"].get("trace_entry_id"),
        "failure_signal": {
            "class": signal["class"],
            "stage": signal["stage"],
            "continuation_allowed": signal["continuation_allowed"],
            "error_code": signal.get("error_code"),
        },
        "confidence": {
            "score": confidence["score"],
            "rationale": confidence["rationale"],
            "calibration_band": confidence.get("calibration_band"),
        },
        "proposed_repair_action": {
            "action": action["action"],
            "requires_human_approval": action["requires_human_approval"],
            "target": action.get("target"),
        },
    }
    return summary
