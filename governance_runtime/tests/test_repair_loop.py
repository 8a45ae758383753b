import json

import pytest

from governance_runtime.core.decisions import FailureClass, enum_values
from governance_runtime.repair.loop import RepairLoopInputError, run_repair_loop
from governance_runtime.repair.rules import RULE_ORDER, RepairRule, parse_confidence_tuple

from .conftest import FIXED_TIMESTAMP


def test_missing_goal_quote_is_repaired_on_first_attempt():
    result = run_repair_loop("parse", "compile", "ls_source", 'goal "Ship release')

    assert result.decision == "repaired"
    assert result.continuation_allowed is True
    assert result.attempts == 1
    assert result.reason_code == "PARSE_APPEND_MISSING_QUOTE"
    assert result.applied_rule_id == "parse.append_missing_goal_quote"
    assert result.repaired_excerpt == 'goal "Ship release"'
    assert [record.outcome for record in result.history] == ["repaired"]


def test_truncated_goal_escalates():
    result = run_repair_loop("parse", "compile", "ls_source", 'goal "')

    assert result.decision == "escalate"
    assert result.reason_code == "PARSE_TRUNCATED_CONTEXT"
    assert result.continuation_allowed is False


def test_retryable_timeout_recovers_on_second_attempt():
    result = run_repair_loop(
        "deterministic_runtime",
        "runtime",
        "runtime_event",
        "step=resolve_manifest; error=timeout; retryable=true",
        max_attempts=2,
    )

    assert result.decision == "repaired"
    assert result.attempts == 2
    assert [record.outcome for record in result.history] == ["retry", "repaired"]
    assert result.reason_code == "DETERMINISTIC_TIMEOUT_RECOVERED"
    assert result.repaired_excerpt == "step=resolve_manifest; error=none; retryable=false"


def test_retryable_timeout_with_single_attempt_stops():
    result = run_repair_loop(
        "deterministic_runtime",
        "runtime",
        "runtime_event",
        "step=resolve_manifest; error=timeout; retryable=true",
        max_attempts=1,
    )

    assert result.decision == "stop"
    assert result.reason_code == "MAX_ATTEMPTS_EXCEEDED"
    assert result.attempts == 1
    assert result.max_attempts == 1
    assert "DETERMINISTIC_TIMEOUT_RETRY" in result.detail
    assert [record.outcome for record in result.history] == ["retry"]


def test_terminal_policy_deny_ignores_retry_budget():
    result = run_repair_loop(
        "policy_gate",
        "policy_gate",
        "policy_profile",
        "action=delete_resource; environment=production; rule=deny",
        max_attempts=5,
    )

    assert result.decision == "stop"
    assert result.reason_code == "POLICY_DENY_TERMINAL"
    assert result.attempts == 1
    assert result.applied_rule_id == "policy_gate.terminal_deny_production_destructive_write"


def test_unmatched_excerpt_escalates_without_history():
    result = run_repair_loop("parse", "compile", "ls_source", "goal Ship release")

    assert result.decision == "escalate"
    assert result.reason_code == "NO_SAFE_DETERMINISTIC_REPAIR"
    assert result.attempts == 1
    assert result.history == []
    assert result.applied_rule_id is None


def test_budget_fallback_plan_is_applied():
    result = run_repair_loop(
        "policy_gate",
        "policy_gate",
        "policy_profile",
        "max_tokens exceeded; fallback_plan=summarize_then_retry",
    )

    assert result.decision == "repaired"
    assert result.reason_code == "POLICY_FALLBACK_PLAN_APPLIED"
    assert result.repaired_excerpt.endswith("; selected_fallback=summarize_then_retry")


def test_padded_schema_version_is_normalized():
    result = run_repair_loop(
        "schema_contract", "contract_load", "semantic_ir", '{"schema_version": " 0.1.0 "}'
    )

    assert result.decision == "repaired"
    assert result.repaired_excerpt == '{"schema_version": "0.1.0"}'


def test_incompatible_schema_version_escalates():
    result = run_repair_loop(
        "schema_contract", "contract_load", "policy_profile", '{"schema_version": "0.2.0"}'
    )

    assert result.decision == "escalate"
    assert result.reason_code == "SCHEMA_VERSION_INCOMPATIBLE"


def test_write_capability_downgrades_to_readonly():
    result = run_repair_loop(
        "capability_denied",
        "runtime",
        "capability_manifest",
        "requested=filesystem.write; available=filesystem.read",
    )

    assert result.decision == "repaired"
    assert result.repaired_excerpt == "requested=filesystem.read; available=filesystem.read"


def test_low_confidence_reprompt_keeps_threshold_literal():
    result = run_repair_loop(
        "stochastic_extraction_uncertainty",
        "extraction",
        "model_output",
        "field=release_owner; confidence=0.61; threshold=0.7000",
    )

    assert result.decision == "repaired"
    assert result.attempts == 2
    assert result.repaired_excerpt == "field=release_owner; confidence=0.7000; threshold=0.7000"


def test_ambiguous_entity_exhausts_budget():
    result = run_repair_loop(
        "stochastic_extraction_uncertainty",
        "extraction",
        "model_output",
        "top_candidates overlap; confidence delta < 0.02",
        max_attempts=3,
    )

    assert result.decision == "stop"
    assert result.reason_code == "MAX_ATTEMPTS_EXCEEDED"
    assert result.attempts == 3
    assert [record.attempt for record in result.history] == [1, 2, 3]


def test_confidence_tuple_accepts_either_order():
    forward = parse_confidence_tuple("confidence=0.5; threshold=0.75")
    reverse = parse_confidence_tuple("threshold=0.75;confidence=0.5")

    assert (forward.confidence, forward.threshold) == (0.5, 0.75)
    assert (reverse.confidence_literal, reverse.threshold_literal) == ("0.5", "0.75")
    assert parse_confidence_tuple("confidence=0.5") is None


def test_rule_order_is_grouped_by_failure_class():
    classes = [rule_id.split(".")[0] for rule_id in RULE_ORDER]
    assert classes == sorted(classes, key=enum_values(FailureClass).index)


@pytest.mark.parametrize("failure_class", enum_values(FailureClass))
def test_zero_max_attempts_is_rejected_for_every_class(failure_class):
    with pytest.raises(RepairLoopInputError, match="maxAttempts must be an integer greater than or equal to 1"):
        run_repair_loop(failure_class, "runtime", "runtime_event", "error=timeout", max_attempts=0)


@pytest.mark.parametrize("max_attempts", [1.5, "2", True])
def test_non_integer_max_attempts_is_rejected(max_attempts):
    with pytest.raises(RepairLoopInputError):
        run_repair_loop("parse", "compile", "ls_source", 'goal "x', max_attempts=max_attempts)


def test_max_attempts_above_ceiling_is_rejected():
    with pytest.raises(RepairLoopInputError, match="less than or equal to 10"):
        run_repair_loop("parse", "compile", "ls_source", 'goal "x', max_attempts=11)


@pytest.mark.parametrize(
    "args, message",
    [
        (("lexer", "compile", "ls_source", 'goal "x'), "failureClass must be one of"),
        (("parse", "link", "ls_source", 'goal "x'), "stage must be one of"),
        (("parse", "compile", "binary", 'goal "x'), "artifact must be one of"),
        (("parse", "compile", "ls_source", "   "), "excerpt must be a non-empty string"),
        ((None, "compile", "ls_source", 'goal "x'), "failureClass must be a non-empty string"),
    ],
)
def test_malformed_input_is_rejected(args, message):
    with pytest.raises(RepairLoopInputError, match=message):
        run_repair_loop(*args)


def test_empty_rule_override_escalates():
    result = run_repair_loop("parse", "compile", "ls_source", 'goal "x', rules=[])

    assert result.decision == "escalate"
    assert result.reason_code == "NO_RULES_REGISTERED"
    assert result.attempts == 0


def test_custom_rule_table_is_respected():
    from governance_runtime.core.decisions import AttemptOutcome
    from governance_runtime.repair.rules import RuleOutcome

    always_stop = RepairRule(
        "parse.always_stop",
        FailureClass.PARSE,
        lambda ctx: True,
        lambda ctx: RuleOutcome(AttemptOutcome.STOP, "CUSTOM_STOP", "Stopped by custom rule."),
    )

    result = run_repair_loop("parse", "compile", "ls_source", 'goal "x', rules=[always_stop])

    assert result.decision == "stop"
    assert result.applied_rule_id == "parse.always_stop"


def test_feedback_and_inspection_are_emitted(tmp_path, fixed_now):
    feedback_path = tmp_path / "feedback.ndjson"
    inspection_path = tmp_path / "inspection.ndjson"
    report_path = tmp_path / "inspection.txt"

    result = run_repair_loop(
        "parse",
        "compile",
        "ls_source",
        'goal "Ship release',
        feedback_tensor_path=str(feedback_path),
        trace_inspection_path=str(inspection_path),
        trace_inspection_report_path=str(report_path),
        now=fixed_now,
        run_id_factory=lambda: "run-repair-1",
        feedback_id_factory=lambda: "ft-repair-1",
    )

    assert result.decision == "repaired"

    feedback = json.loads(feedback_path.read_text(encoding="utf-8"))
    assert feedback["feedback_id"] == "ft-repair-1"
    assert feedback["generated_at"] == FIXED_TIMESTAMP
    assert feedback["failure_signal"]["class"] == "parse"
    assert feedback["failure_signal"]["stage"] == "repair"
    assert feedback["confidence"] == {
        "score": 0.9,
        "rationale": "Deterministic repair rules produced a policy-safe continuation outcome.",
        "calibration_band": "high",
    }
    assert feedback["proposed_repair_action"]["patch_excerpt"] == 'goal "Ship release"'
    assert feedback["provenance"]["source_stage"] == "repair_loop"

    inspection = json.loads(inspection_path.read_text(encoding="utf-8"))
    assert inspection["run_id"] == "run-repair-1"
    assert inspection["invocation"] == {"status": "success", "trace_id": "repair-run-repair-1"}
    assert inspection["repair"]["decision"] == "repaired"
    assert "excerpt" not in inspection["repair"]["history"][0]
    assert inspection["feedback_tensor"]["emitted"] is True

    assert report_path.read_text(encoding="utf-8").startswith("[Trace Inspection]")


@pytest.mark.parametrize(
    "excerpt, decision, score, band",
    [
        ('goal "', "escalate", 0.45, "medium"),
        ("action=delete_resource; environment=production; rule=deny", "stop", 0.2, "low"),
    ],
)
def test_feedback_confidence_follows_decision(tmp_path, excerpt, decision, score, band):
    feedback_path = tmp_path / "feedback.ndjson"
    failure_class, stage, artifact = (
        ("parse", "compile", "ls_source") if decision == "escalate" else ("policy_gate", "policy_gate", "policy_profile")
    )

    run_repair_loop(failure_class, stage, artifact, excerpt, feedback_tensor_path=str(feedback_path))

    feedback = json.loads(feedback_path.read_text(encoding="utf-8"))
    assert feedback["confidence"]["score"] == score
    assert feedback["confidence"]["calibration_band"] == band
    assert feedback["failure_signal"]["continuation_allowed"] is False


def test_hooks_are_not_called_without_sinks():
    def explode():
        raise AssertionError("hook should not run")

    result = run_repair_loop(
        "parse", "compile", "ls_source", 'goal "x', now=explode, run_id_factory=explode, feedback_id_factory=explode
    )

    assert result.decision == "repaired"


def test_failing_hooks_fall_back(tmp_path):
    feedback_path = tmp_path / "feedback.ndjson"

    def explode():
        raise RuntimeError("boom")

    run_repair_loop(
        "parse",
        "compile",
        "ls_source",
        'goal "x',
        feedback_tensor_path=str(feedback_path),
        now=lambda: float("nan"),
        run_id_factory=explode,
        feedback_id_factory=explode,
    )

    feedback = json.loads(feedback_path.read_text(encoding="utf-8"))
    assert feedback["feedback_id"].startswith("ft-")
    assert feedback["generated_at"].endswith("Z")
    assert feedback["provenance"]["run_id"]


def test_sink_failure_does_not_change_result(tmp_path):
    missing = tmp_path / "missing-dir" / "feedback.ndjson"

    result = run_repair_loop(
        "parse", "compile", "ls_source", 'goal "Ship release', feedback_tensor_path=str(missing)
    )

    assert result.decision == "repaired"
    assert not missing.exists()
