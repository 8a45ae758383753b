import pytest

from governance_runtime.audit.feedback_tensor import (
    FEEDBACK_TENSOR_SCHEMA_VERSION,
    clamp_probability,
    create_feedback_tensor_entry,
    summarize_feedback_tensor,
)


def build(**overrides):
    arguments = {
        "feedback_id": "ft-1",
        "generated_at": "2026-02-22T00:00:00.000Z",
        "failure_signal": {"class": "parse", "stage": "compile", "summary": "missing quote"},
        "confidence": {"score": 0.9, "rationale": "deterministic", "calibration_band": "high"},
        "alternatives": [],
        "proposed_repair_action": {"action": "retry_with_patch", "rationale": "append quote"},
        "provenance": {"run_id": "run-1", "source_stage": "repair_loop"},
    }
    arguments.update(overrides)
    return create_feedback_tensor_entry(**arguments)


def test_entry_field_order_and_defaults():
    entry = build()

    assert list(entry) == [
        "schema_version",
        "feedback_id",
        "generated_at",
        "failure_signal",
        "confidence",
        "alternatives",
        "proposed_repair_action",
        "provenance",
    ]
    assert entry["schema_version"] == FEEDBACK_TENSOR_SCHEMA_VERSION
    assert entry["alternatives"] == [
        {
            "id": "alt-manual-review",
            "hypothesis": "Escalate to human review for deterministic adjudication.",
            "expected_outcome": "Task remains blocked pending review.",
            "estimated_success_probability": 0.95,
        }
    ]
    assert entry["provenance"]["contract_versions"] == {
        "semantic_ir": "unknown",
        "policy_profile": "unknown",
        "feedback_tensor": "1.0.0",
    }
    assert "error_code" not in entry["failure_signal"]
    assert "target" not in entry["proposed_repair_action"]


def test_blank_text_falls_back_to_placeholders():
    entry = build(
        failure_signal={"class": "parse", "stage": "compile", "summary": "  "},
        confidence={"score": "high", "rationale": ""},
        provenance={"run_id": "", "source_stage": "runtime"},
    )

    assert entry["failure_signal"]["summary"] == "Feedback summary unavailable."
    assert entry["confidence"] == {"score": 0, "rationale": "Confidence rationale unavailable."}
    assert entry["provenance"]["run_id"] == "run-unavailable"


def test_alternatives_are_normalized():
    entry = build(
        alternatives=[
            {"id": " ", "hypothesis": "retry", "expected_outcome": "ok", "estimated_success_probability": 1.7},
            {"id": "alt-b", "estimated_success_probability": float("nan")},
        ]
    )

    first, second = entry["alternatives"]
    assert first == {"id": "alt-1", "hypothesis": "retry", "expected_outcome": "ok", "estimated_success_probability": 1}
    assert second["id"] == "alt-b"
    assert "estimated_success_probability" not in second


@pytest.mark.parametrize("value, expected", [(-0.5, 0), (0.4, 0.4), (3, 1), (True, None), ("0.3", None)])
def test_clamp_probability(value, expected):
    assert clamp_probability(value) == expected


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"failure_signal": {"class": "lexer", "stage": "compile"}}, "failure_signal.class"),
        ({"failure_signal": {"class": "parse", "stage": "deploy"}}, "failure_signal.stage"),
        ({"proposed_repair_action": {"action": "rewrite"}}, "proposed_repair_action.action"),
        ({"provenance": {"source_stage": "unknown"}}, "provenance.source_stage"),
    ],
)
def test_unknown_enum_values_are_rejected(overrides, message):
    with pytest.raises(ValueError, match=message):
        build(**overrides)


def test_summary_view():
    entry = build(
        failure_signal={"class": "parse", "stage": "repair", "summary": "x", "error_code": "PARSE_APPEND_MISSING_QUOTE"},
        provenance={"run_id": "run-1", "source_stage": "repair_loop", "trace_entry_id": "run-1"},
    )

    summary = summarize_feedback_tensor(entry, "/tmp/feedback.ndjson", True)

    assert summary["configured"] is True
    assert summary["emitted"] is True
    assert summary["trace_entry_id"] == "run-1"
    assert summary["failure_signal"]["error_code"] == "PARSE_APPEND_MISSING_QUOTE"
    assert summary["proposed_repair_action"]["target"] is None
