"""
Governed runtime invocation.

``run_semantic_ir`` validates a minimal SemanticIR envelope, evaluates the
optional continuation gate and records the invocation in the configured
audit sinks. Audit writes are best-effort; the caller always sees the
governed outcome itself, including the original exception on failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

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
from governance_runtime.audit.trace_ledger import (
    build_trace_ledger_entry,
    emit_trace_ledger_entry,
    normalize_error,
)
from governance_runtime.contracts.validator import (
    SUPPORTED_POLICY_PROFILE_SCHEMA_VERSION,
    SUPPORTED_SEMANTIC_IR_SCHEMA_VERSION,
    ContractValidationError,
    load_policy_profile,
    load_verification_contract,
)
from governance_runtime.core.decisions import (
    CalibrationBand,
    FailureClass,
    GateDecision,
    RepairAction,
)
from governance_runtime.utils.hooks import (
    normalize_optional_str,
    resolve_feedback_id,
    resolve_run_id,
    resolve_timestamp,
)
from governance_runtime.verification.continuation_gate import (
    ContinuationDecision,
    create_bypass_decision,
    evaluate_continuation_gate,
)

logger = structlog.get_logger(__name__)


class SemanticIRInputError(ValueError):
    """Raised when the SemanticIR envelope is missing or malformed."""

    pass


class RuntimeContinuationGateError(Exception):
    """Raised when the continuation gate does not allow the invocation to continue."""

    def __init__(self, decision: ContinuationDecision):
        self.decision = decision
        self.code = decision.reason_code
        super().__init__(
            f'Continuation gate returned "{decision.decision.value}" ({decision.reason_code}): '
            f"{decision.detail} Autonomous continuation is blocked."
        )


@dataclass
class ContinuationGateConfig:
    verification_contract: Dict[str, Any]
    policy_profile: Optional[Dict[str, Any]] = None
    verification_status: Optional[Any] = None
    feedback_tensor: Optional[Dict[str, Any]] = None


def _require_text(value: Any, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SemanticIRInputError(message)
    return value.strip()


def _coerce_gate_config(value: Union[ContinuationGateConfig, Dict[str, Any], None]) -> Optional[ContinuationGateConfig]:
    if value is None or isinstance(value, ContinuationGateConfig):
        return value
    return ContinuationGateConfig(**value)


class _GovernedInvocation:
    """State for one invocation: resolved hooks, gate decision and sink outcomes."""

    def __init__(
        self,
        trace_ledger_path: Optional[str],
        feedback_tensor_path: Optional[str],
        trace_inspection_path: Optional[str],
        trace_inspection_report_path: Optional[str],
        run_id_factory: Optional[Callable[[], Any]],
        feedback_id_factory: Optional[Callable[[], Any]],
        now: Optional[Callable[[], Any]],
        gate_configured: bool,
    ):
        self.trace_ledger_path = normalize_optional_str(trace_ledger_path)
        self.feedback_tensor_path = normalize_optional_str(feedback_tensor_path)
        self.trace_inspection_path = normalize_optional_str(trace_inspection_path)
        self.trace_inspection_report_path = normalize_optional_str(trace_inspection_report_path)
        self.feedback_id_factory = feedback_id_factory
        self.now = now
        self.gate_configured = gate_configured
        self.gate_decision: Optional[ContinuationDecision] = None

        self.enabled = any(
            (
                self.trace_ledger_path,
                self.feedback_tensor_path,
                self.trace_inspection_path,
                self.trace_inspection_report_path,
            )
        )
        # Hooks are evaluated lazily, only when some sink is configured
        self.run_id = resolve_run_id(None, run_id_factory) if self.enabled else ""
        self.started_at = resolve_timestamp(now) if self.enabled else ""

    def record(self, trace_id: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        if not self.enabled:
            return
        try:
            self._record(trace_id, error)
        except Exception as exc:
            logger.warning("Audit recording failed", run_id=self.run_id, error=str(exc))

    def _record(self, trace_id: Optional[str], error: Optional[BaseException]) -> None:
        completed_at = resolve_timestamp(self.now)
        normalized = normalize_error(error) if error is not None else None

        ledger_emitted = False
        if self.trace_ledger_path:
            entry = build_trace_ledger_entry(
                self.run_id,
                self.started_at,
                completed_at,
                SUPPORTED_SEMANTIC_IR_SCHEMA_VERSION,
                SUPPORTED_POLICY_PROFILE_SCHEMA_VERSION,
                normalized,
            )
            ledger_emitted = safe_append(
                lambda: emit_trace_ledger_entry(entry, self.trace_ledger_path),
                "trace_ledger",
                self.trace_ledger_path,
            )
        trace_entry_id = self.run_id if ledger_emitted else None

        feedback_summary: Dict[str, Any] = {
            "configured": self.feedback_tensor_path is not None,
            "emitted": False,
            "output_path": self.feedback_tensor_path,
        }
        if error is not None and self.feedback_tensor_path:
            feedback = self._failure_feedback(error, normalized, completed_at, trace_entry_id)
            emitted = safe_append(
                lambda: emit_feedback_tensor_entry(feedback, self.feedback_tensor_path),
                "feedback_tensor",
                self.feedback_tensor_path,
            )
            feedback_summary = summarize_feedback_tensor(feedback, self.feedback_tensor_path, emitted)

        if self.trace_inspection_path or self.trace_inspection_report_path:
            self._emit_inspection(
                completed_at, trace_id, error, normalized, ledger_emitted, trace_entry_id, feedback_summary
            )

    def failure_code(self, error: BaseException, normalized: Dict[str, str]) -> str:
        if isinstance(error, RuntimeContinuationGateError):
            return error.decision.reason_code
        code = getattr(error, "code", None)
        return code if isinstance(code, str) and code.strip() else normalized["name"]

    def _failure_feedback(
        self,
        error: BaseException,
        normalized: Dict[str, str],
        generated_at: str,
        trace_entry_id: Optional[str],
    ) -> Dict[str, Any]:
        if isinstance(error, ContractValidationError):
            failure_class = FailureClass.SCHEMA_CONTRACT
            confidence = {
                "score": 0.9,
                "rationale": "Contract validation rejected the payload; schema and version checks are deterministic.",
                "calibration_band": CalibrationBand.HIGH.value,
            }
        else:
            failure_class = FailureClass.DETERMINISTIC_RUNTIME
            confidence = {
                "score": 0.7,
                "rationale": "Runtime failure classified from a deterministic local error signal.",
                "calibration_band": CalibrationBand.MEDIUM.value,
            }

        return create_feedback_tensor_entry(
            feedback_id=resolve_feedback_id(self.feedback_id_factory, self.run_id),
            generated_at=generated_at,
            failure_signal={
                "class": failure_class.value,
                "stage": "runtime",
                "summary": f"{normalized['name']}: {normalized['message']}",
                "continuation_allowed": False,
                "error_code": self.failure_code(error, normalized),
            },
            confidence=confidence,
            alternatives=[
                {
                    "id": "alt-retry-with-patch",
                    "hypothesis": "Correct the rejected input and re-run the invocation.",
                    "expected_outcome": "Invocation succeeds once the deterministic failure cause is removed.",
                    "estimated_success_probability": confidence["score"],
                },
                {
                    "id": "alt-manual-review",
                    "hypothesis": "Escalate to human review for deterministic adjudication.",
                    "expected_outcome": "Task remains blocked pending review.",
                    "estimated_success_probability": 0.95,
                },
            ],
            proposed_repair_action={
                "action": RepairAction.RETRY_WITH_PATCH.value,
                "rationale": normalized["message"],
                "requires_human_approval": isinstance(error, RuntimeContinuationGateError),
                "target": "runtime.semantic_ir",
            },
            provenance={
                "run_id": self.run_id,
                "source_stage": "runtime",
                "trace_entry_id": trace_entry_id,
                "contract_versions": {
                    "semantic_ir": SUPPORTED_SEMANTIC_IR_SCHEMA_VERSION,
                    "policy_profile": SUPPORTED_POLICY_PROFILE_SCHEMA_VERSION,
                },
            },
        )

    def _gate_section(self) -> Optional[Dict[str, Any]]:
        if not self.gate_configured:
            decision = create_bypass_decision()
        elif self.gate_decision is not None:
            decision = self.gate_decision
        else:
            return None
        return {
            "configured": self.gate_configured,
            "decision": decision.decision.value,
            "continuation_allowed": decision.continuation_allowed,
            "reason_code": decision.reason_code,
            "detail": decision.detail,
        }

    def _emit_inspection(
        self,
        completed_at: str,
        trace_id: Optional[str],
        error: Optional[BaseException],
        normalized: Optional[Dict[str, str]],
        ledger_emitted: bool,
        trace_entry_id: Optional[str],
        feedback_summary: Dict[str, Any],
    ) -> None:
        if error is None:
            invocation = {"status": "success", "trace_id": trace_id}
        else:
            invocation = {
                "status": "failure",
                "failure_code": self.failure_code(error, normalized),
                "error": normalized,
            }

        entry = build_trace_inspection_entry(
            run_id=self.run_id,
            started_at=self.started_at,
            completed_at=completed_at,
            invocation=invocation,
            continuation_gate=self._gate_section(),
            trace_ledger={
                "configured": self.trace_ledger_path is not None,
                "emitted": ledger_emitted,
                "output_path": self.trace_ledger_path,
                "trace_entry_id": trace_entry_id,
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


def _execute(ir: Any, gate: Optional[ContinuationGateConfig], invocation: _GovernedInvocation) -> Dict[str, Any]:
    if not isinstance(ir, dict):
        raise SemanticIRInputError("SemanticIR input must be an object")
    version = _require_text(ir.get("version"), "SemanticIR version is required")
    _require_text(ir.get("goal"), "SemanticIR goal is required")

    if gate is None:
        decision = create_bypass_decision()
    else:
        contract = load_verification_contract(gate.verification_contract)
        profile = load_policy_profile(gate.policy_profile) if gate.policy_profile is not None else None
        decision = evaluate_continuation_gate(
            contract,
            policy_profile=profile,
            verification_status=gate.verification_status,
            feedback_tensor=gate.feedback_tensor,
        )
        invocation.gate_decision = decision
        if decision.decision != GateDecision.CONTINUE:
            raise RuntimeContinuationGateError(decision)

    return {
        "ok": True,
        "trace_id": f"trace-{version}",
        "continuation_decision": decision.to_dict(),
    }


def run_semantic_ir(
    ir: Any,
    trace_ledger_path: Optional[str] = None,
    feedback_tensor_path: Optional[str] = None,
    trace_inspection_path: Optional[str] = None,
    trace_inspection_report_path: Optional[str] = None,
    run_id_factory: Optional[Callable[[], Any]] = None,
    feedback_id_factory: Optional[Callable[[], Any]] = None,
    now: Optional[Callable[[], Any]] = None,
    continuation_gate: Union[ContinuationGateConfig, Dict[str, Any], None] = None,
) -> Dict[str, Any]:
    """
    Run one governed SemanticIR invocation.

    Args:
        ir: Envelope with ``version`` and ``goal``
        continuation_gate: Gate inputs; when omitted the bypass decision is recorded

    Returns:
        Dict with ``ok``, ``trace_id`` and ``continuation_decision``

    Raises:
        SemanticIRInputError: If the envelope is malformed
        ContractValidationError: If a gate contract is rejected
        RuntimeContinuationGateError: If the gate decision is not ``continue``
    """
    invocation = _GovernedInvocation(
        trace_ledger_path,
        feedback_tensor_path,
        trace_inspection_path,
        trace_inspection_report_path,
        run_id_factory,
        feedback_id_factory,
        now,
        gate_configured=continuation_gate is not None,
    )

    try:
        result = _execute(ir, _coerce_gate_config(continuation_gate), invocation)
    except Exception as exc:
        logger.info(
            "Governed invocation failed",
            run_id=invocation.run_id or None,
            error_type=type(exc).__name__,
            reason_code=getattr(exc, "code", None),
        )
        invocation.record(error=exc)
        raise

    invocation.record(trace_id=result["trace_id"])
    logger.info("Governed invocation completed", run_id=invocation.run_id or None, trace_id=result["trace_id"])
    return result
