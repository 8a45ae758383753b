"""
Trace inspection: a single record (and a plain-text report) correlating the
invocation outcome with continuation gate, repair, trace ledger and
FeedbackTensor results of one run.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from governance_runtime.audit.sink import append_ndjson, append_text

TRACE_INSPECTION_SCHEMA_VERSION = "0.1.0"


def _drop_none(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if value is not None}


def _optional(value: Any) -> str:
    return "n/a" if value is None else str(value)


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def format_score(value: Any) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_trace_inspection_entry(
    run_id: str,
    started_at: str,
    completed_at: str,
    invocation: Dict[str, Any],
    trace_ledger: Dict[str, Any],
    feedback_tensor: Dict[str, Any],
    continuation_gate: Optional[Dict[str, Any]] = None,
    repair: Optional[Dict[str, Any]] = None,
    generated_at: Optional[str] = None,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "schema_version": TRACE_INSPECTION_SCHEMA_VERSION,
        "run_id": run_id,
        "started_at": started_at,
        "completed_at": completed_at,
        "generated_at": generated_at or completed_at,
        "invocation": invocation,
    }
    if continuation_gate is not None:
        entry["continuation_gate"] = continuation_gate
    if repair is not None:
        entry["repair"] = _drop_none(repair)
    entry["trace_ledger"] = _drop_none(trace_ledger)

    feedback = _drop_none(feedback_tensor)
    for section in ("failure_signal", "confidence", "proposed_repair_action"):
        if section in feedback:
            feedback[section] = _drop_none(feedback[section])
    entry["feedback_tensor"] = feedback
    return entry


def format_trace_inspection_report(entry: Dict[str, Any]) -> str:
    invocation = entry["invocation"]
    lines: List[str] = [
        "[Trace Inspection]",
        f"Run ID: {entry['run_id']}",
        f"Started At: {entry['started_at']}",
        f"Completed At: {entry['completed_at']}",
        f"Generated At: {entry['generated_at']}",
        f"Invocation Status: {invocation['status']}",
    ]

    if invocation["status"] == "success":
        lines.append(f"Trace ID: {invocation['trace_id']}")
    else:
        error = invocation["error"]
        lines.append(f"Failure Code: {invocation['failure_code']}")
        lines.append(f"Failure Error: {error['name']}: {error['message']}")

    gate = entry.get("continuation_gate")
    if gate:
        lines.append(f"Continuation Gate Configured: {_yes_no(gate['configured'])}")
        lines.append(f"Continuation Decision: {gate['decision']} ({gate['reason_code']})")
        lines.append(f"Continuation Allowed: {_yes_no(gate['continuation_allowed'])}")
        lines.append(f"Continuation Detail: {gate['detail']}")
    else:
        lines.append("Continuation Gate: n/a")

    repair = entry.get("repair")
    if repair:
        lines.append(f"Repair Decision: {repair['decision']} ({repair['reason_code']})")
        lines.append(f"Repair Continuation Allowed: {_yes_no(repair['continuation_allowed'])}")
        lines.append(f"Repair Attempts: {repair['attempts']}/{repair['max_attempts']}")
        lines.append(f"Repair Applied Rule: {_optional(repair.get('applied_rule_id'))}")
        lines.append(f"Repair Detail: {repair['detail']}")
        lines.append(f"Repair Repaired Excerpt: {_optional(repair.get('repaired_excerpt'))}")
        if not repair["history"]:
            lines.append("Repair History: none")
        else:
            lines.append("Repair History:")
            for record in repair["history"]:
                lines.append(
                    f"  - #{record['attempt']} {record['rule_id']}: "
                    f"{record['outcome']} ({record['reason_code']}) {record['detail']}"
                )
    else:
        lines.append("Repair Decision: n/a")

    ledger = entry["trace_ledger"]
    lines.append(f"Trace Ledger Configured: {_yes_no(ledger['configured'])}")
    lines.append(f"Trace Ledger Emitted: {_yes_no(ledger['emitted'])}")
    lines.append(f"Trace Ledger Entry ID: {_optional(ledger.get('trace_entry_id'))}")
    lines.append(f"Trace Ledger Path: {_optional(ledger.get('output_path'))}")

    feedback = entry["feedback_tensor"]
    signal = feedback.get("failure_signal") or {}
    confidence = feedback.get("confidence") or {}
    action = feedback.get("proposed_repair_action") or {}
    lines.append(f"FeedbackTensor Configured: {_yes_no(feedback['configured'])}")
    lines.append(f"FeedbackTensor Emitted: {_yes_no(feedback['emitted'])}")
    lines.append(f"FeedbackTensor ID: {_optional(feedback.get('feedback_id'))}")
    lines.append(f"FeedbackTensor Trace Entry ID: {_optional(feedback.get('trace_entry_id'))}")
    lines.append(f"FeedbackTensor Class: {_optional(signal.get('class'))}")
    lines.append(f"FeedbackTensor Stage: {_optional(signal.get('stage'))}")
    lines.append(
        f"FeedbackTensor Confidence: {format_score(confidence.get('score'))} "
        f"({_optional(confidence.get('calibration_band'))})"
    )
    lines.append(f"FeedbackTensor Confidence Rationale: {_optional(confidence.get('rationale'))}")
    lines.append(f"FeedbackTensor Proposed Action: {_optional(action.get('action'))}")
    lines.append(f"FeedbackTensor Path: {_optional(feedback.get('output_path'))}")

    return "\n".join(lines)


def emit_trace_inspection_entry(entry: Dict[str, Any], output_path: Optional[str] = None) -> None:
    append_ndjson(output_path, entry)


def emit_trace_inspection_report(entry: Dict[str, Any], output_path: Optional[str] = None) -> None:
    append_text(output_path, format_trace_inspection_report(entry) + "\n")
