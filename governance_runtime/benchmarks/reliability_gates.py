"""
Reliability gate metrics.

Every corpus fixture is replayed through the repair loop and scored:

- recovery_rate: recoverable fixtures the loop actually repaired
- safe_block_rate: non-recoverable fixtures whose continuation was blocked
- safe_allow_rate: recoverable fixtures whose continuation was allowed
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from governance_runtime.benchmarks.reliability_corpus import (
    RELIABILITY_FAILURE_CLASSES,
    read_json_file,
    resolve_cli_path,
)
from governance_runtime.core.decisions import Recoverability, RepairDecision
from governance_runtime.repair.loop import run_repair_loop

logger = structlog.get_logger(__name__)

REPORT_SCHEMA_VERSION = "0.1.0"
THRESHOLD_SCHEMA_VERSION = "1.0.0"
DETERMINISTIC_GENERATED_AT = "2026-02-22T00:00:00.000Z"
GATE_METRICS = ("recovery_rate", "safe_block_rate", "safe_allow_rate")
DEFAULT_THRESHOLDS_PATH = Path(__file__).parent / "fixtures" / "reliability-gates-thresholds.v1.json"

_CLASS_COUNTERS = (
    "fixture_count",
    "recoverable_fixture_count",
    "non_recoverable_fixture_count",
    "recovered_fixture_count",
    "blocked_unsafe_continuation_count",
    "unsafe_continuation_allowed_count",
    "allowed_compliant_continuation_count",
    "compliant_continuation_blocked_count",
)


class ReliabilityThresholdsError(ValueError):
    """Raised for unreadable or invalid gate threshold documents."""

    pass


def _require_object(value: Any, path: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ReliabilityThresholdsError(f"Reliability threshold field {path} must be an object")
    return value


def _require_text(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ReliabilityThresholdsError(f"Reliability threshold field {path} must be a non-empty string")
    return value.strip()


def _require_unit_interval(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ReliabilityThresholdsError(f"Reliability threshold field {path} must be a finite number")
    if value < 0 or value > 1:
        raise ReliabilityThresholdsError(f"Reliability threshold field {path} must be within [0, 1]; received {value}")
    return value


def validate_threshold_config(candidate: Any) -> Dict[str, Any]:
    config = _require_object(candidate, "thresholds")
    schema_version = _require_text(config.get("schema_version"), "schema_version")
    if schema_version != THRESHOLD_SCHEMA_VERSION:
        raise ReliabilityThresholdsError(
            f'Reliability threshold schema_version "{schema_version}" is incompatible; '
            f'expected "{THRESHOLD_SCHEMA_VERSION}"'
        )
    threshold_id = _require_text(config.get("threshold_id"), "threshold_id")
    corpus_schema_version = _require_text(config.get("corpus_schema_version"), "corpus_schema_version")
    metrics = _require_object(config.get("metrics"), "metrics")
    return {
        "schema_version": schema_version,
        "threshold_id": threshold_id,
        "corpus_schema_version": corpus_schema_version,
        "metrics": {name: _require_unit_interval(metrics.get(name), f"metrics.{name}") for name in GATE_METRICS},
    }


def load_threshold_config(thresholds_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    path = resolve_cli_path(thresholds_path, DEFAULT_THRESHOLDS_PATH)
    return validate_threshold_config(read_json_file(path, "reliability thresholds", ReliabilityThresholdsError))


def require_matching_corpus_version(thresholds: Dict[str, Any], corpus: Dict[str, Any]) -> None:
    if thresholds["corpus_schema_version"] != corpus["schema_version"]:
        raise ReliabilityThresholdsError(
            f'Reliability thresholds corpus_schema_version "{thresholds["corpus_schema_version"]}" '
            f'does not match corpus schema_version "{corpus["schema_version"]}"'
        )


def safe_rate(numerator: int, denominator: int) -> float:
    if denominator == 0:
        return 0
    return numerator / denominator


def evaluate_fixture(
    fixture: Dict[str, Any],
    max_attempts: Optional[int] = None,
    sink_paths: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    observed = run_repair_loop(
        fixture["failure_class"],
        fixture["input"]["stage"],
        fixture["input"]["artifact"],
        fixture["input"]["excerpt"],
        max_attempts=max_attempts,
        run_id=f"reliability-{fixture['id']}",
        **(sink_paths or {}),
    )
    expected_allowed = fixture["expected"]["continuation_allowed"]
    observed_allowed = observed.continuation_allowed
    recoverable = fixture["recoverability"] == Recoverability.RECOVERABLE.value
    non_recoverable = fixture["recoverability"] == Recoverability.NON_RECOVERABLE.value

    return {
        "fixture_id": fixture["id"],
        "failure_class": fixture["failure_class"],
        "recoverability": fixture["recoverability"],
        "expected": {
            "classification": fixture["expected"]["classification"],
            "continuation_allowed": expected_allowed,
        },
        "observed": {
            "classification": observed.classification,
            "decision": observed.decision,
            "reason_code": observed.reason_code,
            "continuation_allowed": observed_allowed,
        },
        "checks": {
            "classification_matches": observed.classification == fixture["expected"]["classification"],
            "recovered": recoverable and observed.decision == RepairDecision.REPAIRED.value,
            "blocked_unsafe_continuation": non_recoverable and not expected_allowed and not observed_allowed,
            "unsafe_continuation_allowed": non_recoverable and not expected_allowed and observed_allowed,
            "allowed_compliant_continuation": recoverable and expected_allowed and observed_allowed,
            "compliant_continuation_blocked": recoverable and expected_allowed and not observed_allowed,
        },
    }


def evaluate_fixtures(
    corpus: Dict[str, Any],
    max_attempts: Optional[int] = None,
    sink_paths: Optional[Dict[str, Optional[str]]] = None,
) -> List[Dict[str, Any]]:
    return [evaluate_fixture(fixture, max_attempts, sink_paths) for fixture in corpus["fixtures"]]


def summarize_by_failure_class(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    buckets = {
        failure_class: dict({"failure_class": failure_class}, **{name: 0 for name in _CLASS_COUNTERS})
        for failure_class in RELIABILITY_FAILURE_CLASSES
    }
    for result in results:
        bucket = buckets.get(result["failure_class"])
        if bucket is None:
            continue
        checks = result["checks"]
        bucket["fixture_count"] += 1
        if result["recoverability"] == Recoverability.RECOVERABLE.value:
            bucket["recoverable_fixture_count"] += 1
        else:
            bucket["non_recoverable_fixture_count"] += 1
        bucket["recovered_fixture_count"] += checks["recovered"]
        bucket["blocked_unsafe_continuation_count"] += checks["blocked_unsafe_continuation"]
        bucket["unsafe_continuation_allowed_count"] += checks["unsafe_continuation_allowed"]
        bucket["allowed_compliant_continuation_count"] += checks["allowed_compliant_continuation"]
        bucket["compliant_continuation_blocked_count"] += checks["compliant_continuation_blocked"]

    summaries = []
    for failure_class in RELIABILITY_FAILURE_CLASSES:
        bucket = buckets[failure_class]
        bucket["recovery_rate"] = safe_rate(bucket["recovered_fixture_count"], bucket["recoverable_fixture_count"])
        bucket["safe_block_rate"] = safe_rate(
            bucket["blocked_unsafe_continuation_count"], bucket["non_recoverable_fixture_count"]
        )
        bucket["safe_allow_rate"] = safe_rate(
            bucket["allowed_compliant_continuation_count"], bucket["recoverable_fixture_count"]
        )
        summaries.append(bucket)
    return summaries


def aggregate_results(results: List[Dict[str, Any]], thresholds: Dict[str, Any]) -> Dict[str, Any]:
    recoverable = [r for r in results if r["recoverability"] == Recoverability.RECOVERABLE.value]
    non_recoverable = [r for r in results if r["recoverability"] == Recoverability.NON_RECOVERABLE.value]

    def count(items: List[Dict[str, Any]], check: str) -> int:
        return sum(1 for item in items if item["checks"][check])

    recovered = count(recoverable, "recovered")
    blocked = count(non_recoverable, "blocked_unsafe_continuation")
    allowed = count(recoverable, "allowed_compliant_continuation")
    matches = count(results, "classification_matches")

    rates = {
        "recovery_rate": safe_rate(recovered, len(recoverable)),
        "safe_block_rate": safe_rate(blocked, len(non_recoverable)),
        "safe_allow_rate": safe_rate(allowed, len(recoverable)),
    }
    passes = {name: rates[name] >= thresholds["metrics"][name] for name in GATE_METRICS}

    return {
        "recovery": {
            "recoverable_fixture_count": len(recoverable),
            "recovered_fixture_count": recovered,
            "recovery_rate": rates["recovery_rate"],
            "threshold": thresholds["metrics"]["recovery_rate"],
            "pass": passes["recovery_rate"],
        },
        "safe_continuation": {
            "non_recoverable_fixture_count": len(non_recoverable),
            "blocked_unsafe_continuation_count": blocked,
            "unsafe_continuation_allowed_count": count(non_recoverable, "unsafe_continuation_allowed"),
            "safe_block_rate": rates["safe_block_rate"],
            "safe_block_rate_threshold": thresholds["metrics"]["safe_block_rate"],
            "safe_block_rate_pass": passes["safe_block_rate"],
            "recoverable_fixture_count": len(recoverable),
            "allowed_compliant_continuation_count": allowed,
            "compliant_continuation_blocked_count": count(recoverable, "compliant_continuation_blocked"),
            "safe_allow_rate": rates["safe_allow_rate"],
            "safe_allow_rate_threshold": thresholds["metrics"]["safe_allow_rate"],
            "safe_allow_rate_pass": passes["safe_allow_rate"],
        },
        "classification": {
            "fixture_count": len(results),
            "match_count": matches,
            "mismatch_count": len(results) - matches,
            "match_rate": safe_rate(matches, len(results)),
        },
        "gates": {
            "pass": all(passes.values()),
            "failed_metrics": [name for name in GATE_METRICS if not passes[name]],
        },
    }


def build_reliability_report(
    corpus: Dict[str, Any],
    thresholds: Dict[str, Any],
    max_attempts: Optional[int] = None,
    sink_paths: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    """
    Replay the corpus and build the gate report.

    ``generated_at`` is pinned so that reports for the same corpus and
    thresholds are byte-identical. ``sink_paths`` maps the repair loop's
    ``feedback_tensor_path`` / ``trace_inspection_path`` /
    ``trace_inspection_report_path`` keywords to audit files; sink output
    never affects the report.
    """
    require_matching_corpus_version(thresholds, corpus)
    results = evaluate_fixtures(corpus, max_attempts, sink_paths)
    aggregate = aggregate_results(results, thresholds)
    logger.info(
        "Reliability gates evaluated",
        corpus_id=corpus["corpus_id"],
        fixture_count=len(results),
        gate_pass=aggregate["gates"]["pass"],
        failed_metrics=aggregate["gates"]["failed_metrics"],
    )
    return {
        "schema_version": REPORT_SCHEMA_VERSION,
        "generated_at": DETERMINISTIC_GENERATED_AT,
        "corpus_id": corpus["corpus_id"],
        "corpus_schema_version": corpus["schema_version"],
        "thresholds": thresholds,
        "fixture_count": len(results),
        "results": results,
        "aggregate": aggregate,
        "by_failure_class": summarize_by_failure_class(results),
    }
