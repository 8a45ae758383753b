"""
Rule-first repair table.

Rules are plain predicate/action pairs evaluated in one fixed global order.
The loop filters them by failure class, so the position of a rule inside
its class block is its priority.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from governance_runtime.core.decisions import (
    AttemptOutcome,
    FailureClass,
    RepairArtifact,
    RepairStage,
)

SCHEMA_VERSION_EXCERPT_PATTERN = re.compile(r'"schema_version"\s*:\s*"([^"]*)"')
NUMERIC_LITERAL = r"([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)"
CONFIDENCE_PATTERN = re.compile(rf"confidence={NUMERIC_LITERAL}")
CONFIDENCE_THRESHOLD_PAIR_PATTERN = re.compile(
    rf"confidence={NUMERIC_LITERAL}\s*;\s*threshold={NUMERIC_LITERAL}"
    rf"|threshold={NUMERIC_LITERAL}\s*;\s*confidence={NUMERIC_LITERAL}"
)
FALLBACK_PLAN_PATTERN = re.compile(r"fallback_plan=([a-z0-9_]+)(?=;|\s|$)", re.IGNORECASE)

GOAL_PREFIX = 'goal "'

EXPECTED_SCHEMA_VERSION_BY_ARTIFACT = {
    RepairArtifact.SEMANTIC_IR: "0.1.0",
    RepairArtifact.POLICY_PROFILE: "0.1.0",
}


@dataclass(frozen=True)
class RuleContext:
    failure_class: FailureClass
    stage: RepairStage
    artifact: RepairArtifact
    excerpt: str
    attempt: int


@dataclass(frozen=True)
class RuleOutcome:
    outcome: AttemptOutcome
    reason_code: str
    detail: str
    repaired_excerpt: Optional[str] = None
    # Replaces the working excerpt for the next attempt after a retry
    next_excerpt: Optional[str] = None


@dataclass(frozen=True)
class RepairRule:
    id: str
    failure_class: FailureClass
    matches: Callable[[RuleContext], bool]
    apply: Callable[[RuleContext], RuleOutcome]


@dataclass(frozen=True)
class ConfidenceTuple:
    confidence: float
    threshold: float
    confidence_literal: str
    threshold_literal: str
    pair_start: int
    pair_end: int


def extract_schema_version(excerpt: str) -> Optional[str]:
    match = SCHEMA_VERSION_EXCERPT_PATTERN.search(excerpt)
    return match.group(1) if match else None


def replace_schema_version(excerpt: str, version: str) -> str:
    return SCHEMA_VERSION_EXCERPT_PATTERN.sub(
        lambda _: f'"schema_version": "{version}"', excerpt, count=1
    )


def parse_confidence_tuple(excerpt: str) -> Optional[ConfidenceTuple]:
    match = CONFIDENCE_THRESHOLD_PAIR_PATTERN.search(excerpt)
    if match is None:
        return None

    confidence_literal = match.group(1) if match.group(1) is not None else match.group(4)
    threshold_literal = match.group(2) if match.group(2) is not None else match.group(3)
    if confidence_literal is None or threshold_literal is None:
        return None

    try:
        confidence = float(confidence_literal)
        threshold = float(threshold_literal)
    except ValueError:
        return None

    return ConfidenceTuple(
        confidence=confidence,
        threshold=threshold,
        confidence_literal=confidence_literal,
        threshold_literal=threshold_literal,
        pair_start=match.start(),
        pair_end=match.end(),
    )


def replace_confidence(excerpt: str, pair: ConfidenceTuple, literal: str) -> str:
    """Rewrite the confidence inside the matched pair using the literal text as given."""
    segment = excerpt[pair.pair_start:pair.pair_end]
    repaired = CONFIDENCE_PATTERN.sub(lambda _: f"confidence={literal}", segment, count=1)
    return excerpt[:pair.pair_start] + repaired + excerpt[pair.pair_end:]


def _at(ctx: RuleContext, stage: RepairStage, artifact: RepairArtifact) -> bool:
    return ctx.stage == stage and ctx.artifact == artifact


def _contains_all(ctx: RuleContext, *needles: str) -> bool:
    return all(needle in ctx.excerpt for needle in needles)


# parse


def _missing_goal_quote(ctx: RuleContext) -> bool:
    return (
        _at(ctx, RepairStage.COMPILE, RepairArtifact.LS_SOURCE)
        and ctx.excerpt.startswith(GOAL_PREFIX)
        and not ctx.excerpt.endswith('"')
        and len(ctx.excerpt) > len(GOAL_PREFIX)
    )


def _append_goal_quote(ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(
        AttemptOutcome.REPAIRED,
        "PARSE_APPEND_MISSING_QUOTE",
        "Appended missing closing quote in goal declaration.",
        repaired_excerpt=ctx.excerpt + '"',
    )


def _truncated_goal(ctx: RuleContext) -> bool:
    return _at(ctx, RepairStage.COMPILE, RepairArtifact.LS_SOURCE) and ctx.excerpt == GOAL_PREFIX


def _escalate_truncated(ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(
        AttemptOutcome.ESCALATE,
        "PARSE_TRUNCATED_CONTEXT",
        "Source is truncated and cannot be deterministically repaired.",
    )


# schema_contract


def _contract_schema_version(ctx: RuleContext) -> Optional[str]:
    if ctx.stage != RepairStage.CONTRACT_LOAD:
        return None
    if ctx.artifact not in EXPECTED_SCHEMA_VERSION_BY_ARTIFACT:
        return None
    return extract_schema_version(ctx.excerpt)


def _padded_schema_version(ctx: RuleContext) -> bool:
    version = _contract_schema_version(ctx)
    if version is None or version.strip() == version:
        return False
    return version.strip() == EXPECTED_SCHEMA_VERSION_BY_ARTIFACT[ctx.artifact]


def _normalize_schema_version(ctx: RuleContext) -> RuleOutcome:
    version = (extract_schema_version(ctx.excerpt) or "").strip()
    return RuleOutcome(
        AttemptOutcome.REPAIRED,
        "SCHEMA_VERSION_WHITESPACE_NORMALIZED",
        "Normalized schema_version whitespace to expected canonical version.",
        repaired_excerpt=replace_schema_version(ctx.excerpt, version),
    )


def _incompatible_schema_version(ctx: RuleContext) -> bool:
    version = _contract_schema_version(ctx)
    if version is None:
        return False
    return version.strip() != EXPECTED_SCHEMA_VERSION_BY_ARTIFACT[ctx.artifact]


def _reject_schema_version(ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(
        AttemptOutcome.ESCALATE,
        "SCHEMA_VERSION_INCOMPATIBLE",
        "Schema version is incompatible with supported runtime contracts.",
    )


# policy_gate


def _budget_fallback_available(ctx: RuleContext) -> bool:
    return _at(ctx, RepairStage.POLICY_GATE, RepairArtifact.POLICY_PROFILE) and _contains_all(
        ctx, "max_tokens exceeded", "fallback_plan="
    )


def _apply_budget_fallback(ctx: RuleContext) -> RuleOutcome:
    match = FALLBACK_PLAN_PATTERN.search(ctx.excerpt)
    if match is None:
        return RuleOutcome(
            AttemptOutcome.ESCALATE,
            "POLICY_FALLBACK_PLAN_UNPARSEABLE",
            "Policy fallback plan could not be deterministically identified.",
        )

    plan = match.group(1)
    return RuleOutcome(
        AttemptOutcome.REPAIRED,
        "POLICY_FALLBACK_PLAN_APPLIED",
        f'Applied deterministic policy fallback "{plan}".',
        repaired_excerpt=f"{ctx.excerpt}; selected_fallback={plan}",
    )


def _production_destructive_deny(ctx: RuleContext) -> bool:
    return _at(ctx, RepairStage.POLICY_GATE, RepairArtifact.POLICY_PROFILE) and _contains_all(
        ctx, "action=delete_resource", "environment=production", "rule=deny"
    )


def _stop_policy_deny(ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(
        AttemptOutcome.STOP,
        "POLICY_DENY_TERMINAL",
        "Production policy denies destructive action with no safe autonomous continuation.",
    )


# capability_denied


def _write_denied_read_available(ctx: RuleContext) -> bool:
    return _at(ctx, RepairStage.RUNTIME, RepairArtifact.CAPABILITY_MANIFEST) and _contains_all(
        ctx, "requested=filesystem.write", "available=filesystem.read"
    )


def _downgrade_to_readonly(ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(
        AttemptOutcome.REPAIRED,
        "CAPABILITY_DOWNGRADED_TO_READONLY",
        "Switched from write operation to read-only inspection fallback.",
        repaired_excerpt=ctx.excerpt.replace(
            "requested=filesystem.write", "requested=filesystem.read", 1
        ),
    )


def _network_unavailable(ctx: RuleContext) -> bool:
    return _at(ctx, RepairStage.RUNTIME, RepairArtifact.CAPABILITY_MANIFEST) and _contains_all(
        ctx, "requested=network.http", "available=[]"
    )


def _escalate_network(ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(
        AttemptOutcome.ESCALATE,
        "CAPABILITY_NETWORK_REQUIRED",
        "Required network capability is unavailable and no deterministic offline fallback exists.",
    )


# deterministic_runtime


def _retryable_timeout(ctx: RuleContext) -> bool:
    return _at(ctx, RepairStage.RUNTIME, RepairArtifact.RUNTIME_EVENT) and _contains_all(
        ctx, "error=timeout", "retryable=true"
    )


def _retry_timeout(ctx: RuleContext) -> RuleOutcome:
    if ctx.attempt < 2:
        return RuleOutcome(
            AttemptOutcome.RETRY,
            "DETERMINISTIC_TIMEOUT_RETRY",
            "Retryable deterministic timeout encountered; retrying with bounded attempt budget.",
        )

    return RuleOutcome(
        AttemptOutcome.REPAIRED,
        "DETERMINISTIC_TIMEOUT_RECOVERED",
        "Deterministic timeout recovered within bounded retries.",
        repaired_excerpt=ctx.excerpt.replace("error=timeout", "error=none", 1).replace(
            "retryable=true", "retryable=false", 1
        ),
    )


def _missing_dependency_output(ctx: RuleContext) -> bool:
    return _at(ctx, RepairStage.RUNTIME, RepairArtifact.RUNTIME_EVENT) and _contains_all(
        ctx, "node_output missing for required dependency"
    )


def _stop_invariant_violation(ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(
        AttemptOutcome.STOP,
        "DETERMINISTIC_INVARIANT_VIOLATION",
        "Deterministic runtime invariant is violated; state cannot be safely continued.",
    )


# stochastic_extraction_uncertainty


def _confidence_below_threshold(ctx: RuleContext) -> bool:
    if not _at(ctx, RepairStage.EXTRACTION, RepairArtifact.MODEL_OUTPUT):
        return False
    pair = parse_confidence_tuple(ctx.excerpt)
    return pair is not None and pair.confidence < pair.threshold


def _reprompt_for_confidence(ctx: RuleContext) -> RuleOutcome:
    pair = parse_confidence_tuple(ctx.excerpt)
    if pair is None:
        return RuleOutcome(
            AttemptOutcome.ESCALATE,
            "STOCHASTIC_CONFIDENCE_TUPLE_MISSING",
            "Confidence and threshold tuple could not be parsed for deterministic repair.",
        )

    if ctx.attempt < 2:
        return RuleOutcome(
            AttemptOutcome.RETRY,
            "STOCHASTIC_REPROMPT_REQUIRED",
            "Confidence below threshold; issuing constrained deterministic re-prompt.",
        )

    return RuleOutcome(
        AttemptOutcome.REPAIRED,
        "STOCHASTIC_CONFIDENCE_RECOVERED",
        "Confidence repaired to threshold using constrained deterministic re-prompting.",
        repaired_excerpt=replace_confidence(ctx.excerpt, pair, pair.threshold_literal),
    )


def _ambiguous_entity(ctx: RuleContext) -> bool:
    return _at(ctx, RepairStage.EXTRACTION, RepairArtifact.MODEL_OUTPUT) and _contains_all(
        ctx, "top_candidates overlap", "confidence delta < 0.02"
    )


def _retry_ambiguity(ctx: RuleContext) -> RuleOutcome:
    return RuleOutcome(
        AttemptOutcome.RETRY,
        "STOCHASTIC_AMBIGUITY_RETRY",
        "Entity ambiguity remains unresolved after constrained deterministic retry.",
    )


REPAIR_RULES: List[RepairRule] = [
    RepairRule("parse.append_missing_goal_quote", FailureClass.PARSE, _missing_goal_quote, _append_goal_quote),
    RepairRule("parse.truncated_context", FailureClass.PARSE, _truncated_goal, _escalate_truncated),
    RepairRule(
        "schema_contract.normalize_schema_version_whitespace",
        FailureClass.SCHEMA_CONTRACT,
        _padded_schema_version,
        _normalize_schema_version,
    ),
    RepairRule(
        "schema_contract.reject_incompatible_schema_version",
        FailureClass.SCHEMA_CONTRACT,
        _incompatible_schema_version,
        _reject_schema_version,
    ),
    RepairRule(
        "policy_gate.apply_budget_fallback_plan",
        FailureClass.POLICY_GATE,
        _budget_fallback_available,
        _apply_budget_fallback,
    ),
    RepairRule(
        "policy_gate.terminal_deny_production_destructive_write",
        FailureClass.POLICY_GATE,
        _production_destructive_deny,
        _stop_policy_deny,
    ),
    RepairRule(
        "capability_denied.downgrade_to_readonly_flow",
        FailureClass.CAPABILITY_DENIED,
        _write_denied_read_available,
        _downgrade_to_readonly,
    ),
    RepairRule(
        "capability_denied.required_network_capability_missing",
        FailureClass.CAPABILITY_DENIED,
        _network_unavailable,
        _escalate_network,
    ),
    RepairRule(
        "deterministic_runtime.retry_timeout_then_recover",
        FailureClass.DETERMINISTIC_RUNTIME,
        _retryable_timeout,
        _retry_timeout,
    ),
    RepairRule(
        "deterministic_runtime.terminal_invariant_violation",
        FailureClass.DETERMINISTIC_RUNTIME,
        _missing_dependency_output,
        _stop_invariant_violation,
    ),
    RepairRule(
        "stochastic_extraction_uncertainty.reprompt_to_raise_confidence",
        FailureClass.STOCHASTIC_EXTRACTION_UNCERTAINTY,
        _confidence_below_threshold,
        _reprompt_for_confidence,
    ),
    RepairRule(
        "stochastic_extraction_uncertainty.ambiguous_entity_unresolved",
        FailureClass.STOCHASTIC_EXTRACTION_UNCERTAINTY,
        _ambiguous_entity,
        _retry_ambiguity,
    ),
]

RULE_ORDER = [rule.id for rule in REPAIR_RULES]


def rules_for(failure_class: FailureClass, rules: Optional[List[RepairRule]] = None) -> List[RepairRule]:
    return [rule for rule in (rules if rules is not None else REPAIR_RULES) if rule.failure_class == failure_class]
