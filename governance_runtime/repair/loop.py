"""
Rule-first repair loop.

Given a classified failure, try the registered rules for that class in their
fixed order. The first matching rule decides the attempt: ``repaired``,
``escalate`` and ``stop`` end the loop, ``retry`` consumes one attempt from a
bounded budget. Nothing matching is an escalation; the loop never guesses.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

from governance_runtime.audit.feedback_tensor import (
    create_feedback_tensor_entry,
    emit_feedback_tensor_entry,
    summarize_feedback_tensor,
)
from governance_runtime.audit.sink import safe_append
from governance_runtime.audit.trace_inspection import (
    build_trace_inspection_entry,
    emit_trace_inspection_entry,
    emit_trace_inspection_report,
)
from governance_runtime.contracts.validator import (
    SUPPORTED_POLICY_PROFILE_SCHEMA_VERSION,
    SUPPORTED_SEMANTIC_IR_SCHEMA_VERSION,
)
from governance_runtime.core.config import ABSOLUTE_MAX_REPAIR_ATTEMPTS, settings
from governance_runtime.core.decisions import (
    AttemptOutcome,
    CalibrationBand,
    FailureClass,
    RepairAction,
    RepairArtifact,
    RepairDecision,
    RepairStage,
    enum_values,
)
from governance_runtime.repair.rules import RepairRule, RuleContext, rules_for
from governance_runtime.utils.hooks import (
    normalize_optional_str,
    resolve_feedback_id,
    resolve_run_id,
    resolve_timestamp,
)

logger = structlog.get_logger(__name__)


class RepairLoopInputError(ValueError):
    """Raised for malformed repair loop input or out-of-range options."""

    pass


@dataclass
class RepairAttemptRecord:
    attempt: int
    rule_id: str
    outcome: str
    reason_code: str
    detail: str
    excerpt: str


@dataclass
class RepairLoopResult:
    classification: str
    decision: str
    continuation_allowed: bool
    reason_code: str
    detail: str
    attempts: int
    max_attempts: int
    applied_rule_id: Optional[str] = None
    repaired_excerpt: Optional[str] = None
    history: List[RepairAttemptRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _require_member(value: Any, enum_cls, path: str):
    if not isinstance(value, str) or not value.strip():
        raise RepairLoopInputError(f"{path} must be a non-empty string")
    normalized = value.strip()
    try:
        return enum_cls(normalized)
    except ValueError:
        raise RepairLoopInputError(
            f'{path} must be one of: {", ".join(enum_values(enum_cls))}; received "{normalized}"'
        ) from None


def normalize_max_attempts(value: Any) -> int:
    if value is None:
        return settings.repair_max_attempts
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise RepairLoopInputError("maxAttempts must be an integer greater than or equal to 1")
    if value > ABSOLUTE_MAX_REPAIR_ATTEMPTS:
        raise RepairLoopInputError(
            f"maxAttempts must be less than or equal to {ABSOLUTE_MAX_REPAIR_ATTEMPTS}"
        )
    return value


def _feedback_confidence(decision: RepairDecision) -> Dict[str, Any]:
    if decision == RepairDecision.REPAIRED:
        return {
            "score": 0.9,
            "rationale": "Deterministic repair rules produced a policy-safe continuation outcome.",
            "calibration_band": CalibrationBand.HIGH.value,
        }
    if decision == RepairDecision.ESCALATE:
        return {
            "score": 0.45,
            "rationale": "No deterministic in-scope repair satisfied safety constraints for continuation.",
            "calibration_band": CalibrationBand.MEDIUM.value,
        }
    if decision == RepairDecision.STOP:
        return {
            "score": 0.2,
            "rationale": "Repair loop reached an explicit terminal stop condition with continuation blocked.",
            "calibration_band": CalibrationBand.LOW.value,
        }
    raise ValueError(f"Unhandled repair decision: {decision}")


def _feedback_alternatives(decision: RepairDecision) -> List[Dict[str, Any]]:
    if decision == RepairDecision.REPAIRED:
        return [
            {
                "id": "alt-continue-with-repair",
                "hypothesis": "Proceed using the deterministic repaired payload.",
                "expected_outcome": "Execution continues with a bounded, reason-coded repair lineage.",
                "estimated_success_probability": 0.9,
            },
            {
                "id": "alt-manual-verify-repair",
                "hypothesis": "Escalate the repaired payload for manual verification before continuation.",
                "expected_outcome": "Continuation remains blocked until a reviewer approves the repaired path.",
                "estimated_success_probability": 0.98,
            },
        ]
    if decision == RepairDecision.ESCALATE:
        return [
            {
                "id": "alt-request-manual-review",
                "hypothesis": "Escalate repair decision to a human reviewer.",
                "expected_outcome": "Manual adjudication selects an approved remediation path.",
                "estimated_success_probability": 0.95,
            },
            {
                "id": "alt-abort",
                "hypothesis": "Abort autonomous continuation for this run.",
                "expected_outcome": "System halts unsafe continuation until explicit external intervention.",
                "estimated_success_probability": 1,
            },
        ]
    if decision == RepairDecision.STOP:
        return [
            {
                "id": "alt-abort",
                "hypothesis": "Terminate autonomous continuation immediately.",
                "expected_outcome": "No unsafe continuation after terminal stop condition.",
                "estimated_success_probability": 1,
            },
            {
                "id": "alt-manual-postmortem",
                "hypothesis": "Route full repair history to human review for postmortem triage.",
                "expected_outcome": "Reviewer determines whether to retry externally or leave run terminated.",
                "estimated_success_probability": 0.95,
            },
        ]
    raise ValueError(f"Unhandled repair decision: {decision}")


def _feedback_action(target: str, result: RepairLoopResult) -> Dict[str, Any]:
    decision = RepairDecision(result.decision)
    if decision == RepairDecision.REPAIRED:
        return {
            "action": RepairAction.RETRY_WITH_PATCH.value,
            "rationale": result.detail,
            "requires_human_approval": False,
            "target": target,
            "patch_excerpt": result.repaired_excerpt,
        }
    if decision == RepairDecision.ESCALATE:
        return {
            "action": RepairAction.REQUEST_MANUAL_REVIEW.value,
            "rationale": result.detail,
            "requires_human_approval": True,
            "target": target,
        }
    if decision == RepairDecision.STOP:
        return {
            "action": RepairAction.ABORT.value,
            "rationale": result.detail,
            "requires_human_approval": False,
            "target": target,
        }
    raise ValueError(f"Unhandled repair decision: {decision}")


class _RepairEmitter:
    """Best-effort FeedbackTensor and trace inspection emission for one loop run."""

    def __init__(
        self,
        stage: RepairStage,
        artifact: RepairArtifact,
        feedback_tensor_path: Optional[str],
        trace_inspection_path: Optional[str],
        trace_inspection_report_path: Optional[str],
        run_id: Optional[str],
        trace_entry_id: Optional[str],
        now: Optional[Callable[[], Any]],
        run_id_factory: Optional[Callable[[], Any]],
        feedback_id_factory: Optional[Callable[[], Any]],
    ):
        self.target = f"{stage.value}.{artifact.value}"
        self.feedback_tensor_path = normalize_optional_str(feedback_tensor_path)
        self.trace_inspection_path = normalize_optional_str(trace_inspection_path)
        self.trace_inspection_report_path = normalize_optional_str(trace_inspection_report_path)
        self.trace_entry_id = normalize_optional_str(trace_entry_id)
        self.now = now
        self.feedback_id_factory = feedback_id_factory

        self.inspect = bool(self.trace_inspection_path or self.trace_inspection_report_path)
        self.enabled = self.inspect or self.feedback_tensor_path is not None
        # Hooks are only evaluated when some sink is configured
        self.run_id = resolve_run_id(run_id, run_id_factory) if self.enabled else ""
        self.started_at = resolve_timestamp(now) if self.inspect else ""

    def emit(self, result: RepairLoopResult) -> None:
        if not self.enabled:
            return
        completed_at = resolve_timestamp(self.now) if self.inspect else ""

        feedback_summary: Dict[str, Any] = {
            "configured": self.feedback_tensor_path is not None,
            "emitted": False,
            "output_path": self.feedback_tensor_path,
            "trace_entry_id": self.trace_entry_id,
        }
        if self.feedback_tensor_path is not None:
            entry = self._feedback_entry(result)
            emitted = safe_append(
                lambda: emit_feedback_tensor_entry(entry, self.feedback_tensor_path),
                "feedback_tensor",
                self.feedback_tensor_path,
            )
            feedback_summary = summarize_feedback_tensor(entry, self.feedback_tensor_path, emitted)
            if feedback_summary["trace_entry_id"] is None:
                feedback_summary["trace_entry_id"] = self.trace_entry_id

        if self.inspect:
            self._emit_inspection(result, completed_at, feedback_summary)

    def _feedback_entry(self, result: RepairLoopResult) -> Dict[str, Any]:
        decision = RepairDecision(result.decision)
        return create_feedback_tensor_entry(
            feedback_id=resolve_feedback_id(self.feedback_id_factory, self.run_id),
            generated_at=resolve_timestamp(self.now),
            failure_signal={
                "class": result.classification,
                "stage": "repair",
                "summary": result.detail,
                "continuation_allowed": result.continuation_allowed,
                "error_code": result.reason_code,
            },
            confidence=_feedback_confidence(decision),
            alternatives=_feedback_alternatives(decision),
            proposed_repair_action=_feedback_action(self.target, result),
            provenance={
                "run_id": self.run_id,
                "source_stage": "repair_loop",
                "trace_entry_id": self.trace_entry_id,
                "contract_versions": {
                    "semantic_ir": SUPPORTED_SEMANTIC_IR_SCHEMA_VERSION,
                    "policy_profile": SUPPORTED_POLICY_PROFILE_SCHEMA_VERSION,
                },
            },
        )

    def _emit_inspection(
        self, result: RepairLoopResult, completed_at: str, feedback_summary: Dict[str, Any]
    ) -> None:
        if result.decision == RepairDecision.REPAIRED.value:
            invocation = {
                "status": "success",
                "trace_id": self.trace_entry_id or f"repair-{self.run_id}",
            }
        else:
            invocation = {
                "status": "failure",
                "failure_code": result.reason_code,
                "error": {"name": "RepairLoopDecisionError", "message": result.detail},
            }

        repair = result.to_dict()
        repair["history"] = [
            {key: record[key] for key in ("attempt", "rule_id", "outcome", "reason_code", "detail")}
            for record in repair["history"]
        ]
        repair.pop("classification")

        entry = build_trace_inspection_entry(
            run_id=self.run_id,
            started_at=self.started_at,
            completed_at=completed_at,
            invocation=invocation,
            repair=repair,
            trace_ledger={
                "configured": self.trace_entry_id is not None,
                "emitted": self.trace_entry_id is not None,
                "trace_entry_id": self.trace_entry_id,
            },
            feedback_tensor=feedback_summary,
        )
        safe_append(
            lambda: emit_trace_inspection_entry(entry, self.trace_inspection_path),
            "trace_inspection",
            self.trace_inspection_path,
        )
        safe_append(
            lambda: emit_trace_inspection_report(entry, self.trace_inspection_report_path),
            "trace_inspection_report",
            self.trace_inspection_report_path,
        )


def run_repair_loop(
    failure_class: Any,
    stage: Any,
    artifact: Any,
    excerpt: Any,
    max_attempts: Optional[int] = None,
    feedback_tensor_path: Optional[str] = None,
    trace_inspection_path: Optional[str] = None,
    trace_inspection_report_path: Optional[str] = None,
    run_id: Optional[str] = None,
    trace_entry_id: Optional[str] = None,
    now: Optional[Callable[[], Any]] = None,
    run_id_factory: Optional[Callable[[], Any]] = None,
    feedback_id_factory: Optional[Callable[[], Any]] = None,
    rules: Optional[List[RepairRule]] = None,
) -> RepairLoopResult:
    """
    Run the bounded rule-first repair loop for one classified failure.

    Args:
        failure_class: One of the ``FailureClass`` values
        stage: One of the ``RepairStage`` values
        artifact: One of the ``RepairArtifact`` values
        excerpt: Failure payload excerpt; surrounding whitespace is preserved
        max_attempts: Attempt budget, 1..10 (defaults to settings)
        rules: Override of the global rule table

    Returns:
        RepairLoopResult with the terminal decision and attempt history

    Raises:
        RepairLoopInputError: If input or options are invalid
    """
    failure_class = _require_member(failure_class, FailureClass, "failureClass")
    stage = _require_member(stage, RepairStage, "stage")
    artifact = _require_member(artifact, RepairArtifact, "artifact")
    if not isinstance(excerpt, str) or not excerpt.strip():
        raise RepairLoopInputError("excerpt must be a non-empty string")
    budget = normalize_max_attempts(max_attempts)

    ordered_rules = rules_for(failure_class, rules)
    emitter = _RepairEmitter(
        stage,
        artifact,
        feedback_tensor_path,
        trace_inspection_path,
        trace_inspection_report_path,
        run_id,
        trace_entry_id,
        now,
        run_id_factory,
        feedback_id_factory,
    )
    history: List[RepairAttemptRecord] = []

    def finish(
        decision: RepairDecision,
        reason_code: str,
        detail: str,
        attempts: int,
        applied_rule_id: Optional[str] = None,
        repaired_excerpt: Optional[str] = None,
    ) -> RepairLoopResult:
        result = RepairLoopResult(
            classification=failure_class.value,
            decision=decision.value,
            continuation_allowed=decision == RepairDecision.REPAIRED,
            reason_code=reason_code,
            detail=detail,
            attempts=attempts,
            max_attempts=budget,
            applied_rule_id=applied_rule_id,
            repaired_excerpt=repaired_excerpt,
            history=history,
        )
        logger.info(
            "Repair loop finished",
            failure_class=result.classification,
            decision=result.decision,
            reason_code=reason_code,
            attempts=attempts,
            applied_rule_id=applied_rule_id,
        )
        emitter.emit(result)
        return result

    if not ordered_rules:
        return finish(
            RepairDecision.ESCALATE,
            "NO_RULES_REGISTERED",
            f'No deterministic repair rules are registered for failure class "{failure_class.value}".',
            0,
        )

    working = excerpt
    for attempt in range(1, budget + 1):
        context = RuleContext(failure_class, stage, artifact, working, attempt)
        rule = next((candidate for candidate in ordered_rules if candidate.matches(context)), None)

        if rule is None:
            return finish(
                RepairDecision.ESCALATE,
                "NO_SAFE_DETERMINISTIC_REPAIR",
                "No deterministic repair rule matched this failure payload safely.",
                attempt,
            )

        outcome = rule.apply(context)
        history.append(
            RepairAttemptRecord(
                attempt=attempt,
                rule_id=rule.id,
                outcome=outcome.outcome.value,
                reason_code=outcome.reason_code,
                detail=outcome.detail,
                excerpt=working,
            )
        )
        logger.debug(
            "Repair rule applied",
            attempt=attempt,
            rule_id=rule.id,
            outcome=outcome.outcome.value,
            reason_code=outcome.reason_code,
        )

        if outcome.outcome == AttemptOutcome.RETRY:
            if outcome.next_excerpt is not None:
                working = outcome.next_excerpt
            if attempt == budget:
                return finish(
                    RepairDecision.STOP,
                    "MAX_ATTEMPTS_EXCEEDED",
                    f"Maximum retry attempts reached ({budget}) after {outcome.reason_code}.",
                    attempt,
                    applied_rule_id=rule.id,
                )
            continue

        if outcome.outcome == AttemptOutcome.REPAIRED:
            return finish(
                RepairDecision.REPAIRED,
                outcome.reason_code,
                outcome.detail,
                attempt,
                applied_rule_id=rule.id,
                repaired_excerpt=outcome.repaired_excerpt if outcome.repaired_excerpt is not None else working,
            )

        if outcome.outcome in (AttemptOutcome.ESCALATE, AttemptOutcome.STOP):
            return finish(
                RepairDecision(outcome.outcome.value),
                outcome.reason_code,
                outcome.detail,
                attempt,
                applied_rule_id=rule.id,
            )

        raise ValueError(f"Unhandled attempt outcome: {outcome.outcome}")

    return finish(
        RepairDecision.STOP,
        "MAX_ATTEMPTS_EXCEEDED",
        f"Maximum retry attempts reached ({budget}).",
        budget,
    )
