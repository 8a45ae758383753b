"""
Continuation Gate

Combines verification check results, PolicyProfile assertions and required
FeedbackTensor evidence into one continue / escalate / stop decision.
The gate fails closed: only the final branch allows continuation.

Precedence (first match wins):
1. policy profile required but absent         -> stop
2. required FeedbackTensor fields missing      -> stop
3. enforced policy assertion failed            -> escalate
4. checks missing / incomplete / below ratio   -> continuation.on_failure
5. warnings above max_warning_count            -> continuation.on_failure
6. otherwise                                   -> continuation.on_success
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from governance_runtime.core.decisions import GateDecision

logger = structlog.get_logger(__name__)

_MISSING = object()


class VerificationCheckResult(BaseModel):
    """Result of one verification check"""
    id: str = Field(min_length=1, description="Check id as declared in the VerificationContract")
    kind: Literal["test", "static_analysis"] = Field(description="Requirement group the check belongs to")
    passed: bool = Field(description="Whether the check passed")


class VerificationStatus(BaseModel):
    """Verification summary supplied by the caller"""
    checks: List[VerificationCheckResult] = Field(default_factory=list)
    warning_count: int = Field(default=0, ge=0, description="Warnings reported across all checks")


class ContinuationDecision(BaseModel):
    """Outcome of one gate evaluation"""
    decision: GateDecision
    continuation_allowed: bool
    reason_code: str
    detail: str
    required_checks_passed: int = 0
    required_checks_total: int = 0
    required_checks_pass_ratio: float = 1
    warning_count: int = 0
    max_warning_count: int = 0
    missing_feedback_fields: List[str] = Field(default_factory=list)
    failed_policy_assertion_ids: List[str] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _suffix(items: List[str]) -> str:
    return f" ({', '.join(items)})" if items else ""


def _decision(
    contract: Dict[str, Any],
    decision: GateDecision,
    reason_code: str,
    detail: str,
    passed: int = 0,
    total: int = 0,
    warning_count: int = 0,
    missing_feedback_fields: Optional[List[str]] = None,
    failed_policy_assertion_ids: Optional[List[str]] = None,
) -> ContinuationDecision:
    return ContinuationDecision(
        decision=decision,
        continuation_allowed=decision == GateDecision.CONTINUE,
        reason_code=reason_code,
        detail=detail,
        required_checks_passed=passed,
        required_checks_total=total,
        required_checks_pass_ratio=1 if total == 0 else passed / total,
        warning_count=warning_count,
        max_warning_count=contract["pass_criteria"]["max_warning_count"],
        missing_feedback_fields=missing_feedback_fields or [],
        failed_policy_assertion_ids=failed_policy_assertion_ids or [],
    )


def create_bypass_decision() -> ContinuationDecision:
    """Decision recorded when a governed invocation has no gate configured."""
    return ContinuationDecision(
        decision=GateDecision.CONTINUE,
        continuation_allowed=True,
        reason_code="CONTINUATION_GATE_NOT_CONFIGURED",
        detail="Continuation gate was not configured for this runtime invocation.",
    )


def missing_feedback_fields(required_fields: List[str], feedback_tensor: Optional[Dict[str, Any]]) -> List[str]:
    """Required fields absent from the tensor; a key holding None counts as absent."""
    if not feedback_tensor:
        return list(required_fields)
    return [name for name in required_fields if feedback_tensor.get(name) is None]


def resolve_policy_path(policy_profile: Dict[str, Any], policy_path: str) -> Any:
    current: Any = policy_profile
    for segment in (part for part in policy_path.split(".") if part):
        if not isinstance(current, dict) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


def assertion_matches(actual: Any, expected: Any) -> bool:
    """
    Strict identity of JSON scalars.

    Booleans only match booleans, numbers compare by value, and objects or
    arrays never match because they are distinct documents.
    """
    if actual is _MISSING or isinstance(actual, (dict, list)) or isinstance(expected, (dict, list)):
        return False
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    if isinstance(actual, (int, float)) and isinstance(expected, (int, float)):
        return actual == expected
    return type(actual) is type(expected) and actual == expected


def _required_checks(contract: Dict[str, Any]) -> List[str]:
    requirements = contract["requirements"]
    keys = [f"test:{check['id']}" for check in requirements["tests"] if check["required"]]
    keys += [f"static_analysis:{check['id']}" for check in requirements["static_analysis"] if check["required"]]
    return keys


def _check_coverage(required: List[str], status: VerificationStatus) -> Tuple[int, List[str]]:
    results = {f"{check.kind}:{check.id}": check for check in status.checks}
    passed = 0
    missing = []
    for key in required:
        result = results.get(key)
        if result is None:
            missing.append(key)
        elif result.passed:
            passed += 1
    return passed, missing


def evaluate_continuation_gate(
    verification_contract: Dict[str, Any],
    policy_profile: Optional[Dict[str, Any]] = None,
    verification_status: Optional[Any] = None,
    feedback_tensor: Optional[Dict[str, Any]] = None,
) -> ContinuationDecision:
    """
    Evaluate the continuation gate.

    Args:
        verification_contract: A validated VerificationContract
        policy_profile: A validated PolicyProfile, if one is available
        verification_status: ``VerificationStatus`` or an equivalent dict
        feedback_tensor: FeedbackTensor evidence for the run

    Returns:
        ContinuationDecision; non-continue outcomes are values, not errors
    """
    contract = verification_contract
    continuation = contract["continuation"]
    criteria = contract["pass_criteria"]
    on_failure = GateDecision(continuation["on_failure"])
    status = (
        VerificationStatus.model_validate(verification_status)
        if isinstance(verification_status, dict)
        else verification_status
    )
    warning_count = status.warning_count if status is not None else 0

    assertions = contract["requirements"]["policy_assertions"]
    enforced = assertions if criteria["require_all_policy_assertions"] else [a for a in assertions if a["required"]]
    required_assertions = [a for a in assertions if a["required"]]

    if policy_profile is None and (continuation["require_policy_profile"] or enforced):
        return _decision(
            contract,
            GateDecision.STOP,
            "POLICY_PROFILE_REQUIRED",
            "Verification continuation policy requires a validated PolicyProfile contract.",
            warning_count=warning_count,
        )

    missing_fields = missing_feedback_fields(continuation["required_feedback_tensor_fields"], feedback_tensor)
    if missing_fields:
        return _decision(
            contract,
            GateDecision.STOP,
            "VERIFICATION_REQUIRED_FEEDBACK_MISSING",
            f"Verification evidence is missing required FeedbackTensor fields{_suffix(missing_fields)}.",
            warning_count=warning_count,
            missing_feedback_fields=missing_fields,
        )

    required_checks = _required_checks(contract)
    checks_passed, missing_checks = (0, list(required_checks))
    if status is not None:
        checks_passed, missing_checks = _check_coverage(required_checks, status)

    evaluations = [
        (
            assertion,
            assertion_matches(resolve_policy_path(policy_profile, assertion["policy_path"]), assertion["expected"]),
        )
        for assertion in enforced
    ] if policy_profile is not None else []
    failed_ids = [assertion["id"] for assertion, ok in evaluations if not ok]
    assertions_passed = sum(1 for assertion, ok in evaluations if ok and assertion["required"])

    passed = checks_passed + assertions_passed
    total = len(required_checks) + len(required_assertions)

    if failed_ids:
        logger.info("Continuation gate policy assertion failed", failed_policy_assertion_ids=failed_ids)
        return _decision(
            contract,
            GateDecision.ESCALATE,
            "VERIFICATION_POLICY_ASSERTION_FAILED",
            f"Policy assertion verification failed{_suffix(failed_ids)}.",
            passed,
            total,
            warning_count,
            failed_policy_assertion_ids=failed_ids,
        )

    if status is None:
        return _decision(
            contract,
            on_failure,
            "VERIFICATION_REQUIRED_CHECKS_BELOW_THRESHOLD",
            "Verification status summary is required to evaluate continuation.",
            passed,
            total,
        )

    if missing_checks:
        return _decision(
            contract,
            on_failure,
            "VERIFICATION_REQUIRED_CHECKS_BELOW_THRESHOLD",
            f"Verification status is missing required check results{_suffix(missing_checks)}.",
            passed,
            total,
            warning_count,
        )

    minimum = criteria["minimum_required_checks_pass_ratio"]
    ratio = 1 if total == 0 else passed / total
    if ratio < minimum:
        return _decision(
            contract,
            on_failure,
            "VERIFICATION_REQUIRED_CHECKS_BELOW_THRESHOLD",
            f"Required verification pass ratio {ratio:.2f} is below minimum {minimum:.2f}.",
            passed,
            total,
            warning_count,
        )

    if warning_count > criteria["max_warning_count"]:
        return _decision(
            contract,
            on_failure,
            "VERIFICATION_WARNING_LIMIT_EXCEEDED",
            f"Verification warnings {warning_count} exceed max allowed {criteria['max_warning_count']}.",
            passed,
            total,
            warning_count,
        )

    return _decision(
        contract,
        GateDecision(continuation["on_success"]),
        "VERIFICATION_GATE_PASSED",
        "Verification and policy checks passed; autonomous continuation is allowed.",
        passed,
        total,
        warning_count,
    )
