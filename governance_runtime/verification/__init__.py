from .continuation_gate import (  # noqa: F401
    ContinuationDecision,
    VerificationCheckResult,
    VerificationStatus,
    create_bypass_decision,
    evaluate_continuation_gate,
)
