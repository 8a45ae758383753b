"""
Decision Types

Closed decision variants shared by the repair loop, the continuation gate,
the audit records and the artifact pipeline. Serialized records carry the
plain string values.
"""

from enum import Enum


class GateDecision(str, Enum):
    """Outcome of the continuation gate and of every pipeline stage"""
    CONTINUE = "continue"
    ESCALATE = "escalate"
    STOP = "stop"


class RepairDecision(str, Enum):
    """Terminal outcome of the rule-first repair loop"""
    REPAIRED = "repaired"
    ESCALATE = "escalate"
    STOP = "stop"


class AttemptOutcome(str, Enum):
    """Outcome of a single rule application inside the loop"""
    REPAIRED = "repaired"
    RETRY = "retry"
    ESCALATE = "escalate"
    STOP = "stop"


class FailureClass(str, Enum):
    """Fixed failure taxonomy, in global rule priority order"""
    PARSE = "parse"
    SCHEMA_CONTRACT = "schema_contract"
    POLICY_GATE = "policy_gate"
    CAPABILITY_DENIED = "capability_denied"
    DETERMINISTIC_RUNTIME = "deterministic_runtime"
    STOCHASTIC_EXTRACTION_UNCERTAINTY = "stochastic_extraction_uncertainty"


class RepairStage(str, Enum):
    COMPILE = "compile"
    CONTRACT_LOAD = "contract_load"
    POLICY_GATE = "policy_gate"
    RUNTIME = "runtime"
    EXTRACTION = "extraction"


class RepairArtifact(str, Enum):
    LS_SOURCE = "ls_source"
    SEMANTIC_IR = "semantic_ir"
    POLICY_PROFILE = "policy_profile"
    CAPABILITY_MANIFEST = "capability_manifest"
    RUNTIME_EVENT = "runtime_event"
    MODEL_OUTPUT = "model_output"


class Recoverability(str, Enum):
    RECOVERABLE = "recoverable"
    NON_RECOVERABLE = "non_recoverable"


class CalibrationBand(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RepairAction(str, Enum):
    """Proposed repair actions recorded in a FeedbackTensor"""
    RETRY_WITH_PATCH = "retry_with_patch"
    ADJUST_PROMPT = "adjust_prompt"
    REQUEST_MANUAL_REVIEW = "request_manual_review"
    ABORT = "abort"


def enum_values(enum_cls) -> list:
    return [member.value for member in enum_cls]
