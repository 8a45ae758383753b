"""
Reliability fixture corpus loader.

A corpus lists classified failures with an a-priori recoverability label.
Recoverable fixtures must expect continuation, non-recoverable ones must
expect a block, and every failure class must carry both labels.
"""

from __future__ import annotations

import copy
import json
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import structlog

from governance_runtime.core.decisions import (
    CalibrationBand,
    FailureClass,
    Recoverability,
    RepairArtifact,
    RepairStage,
    enum_values,
)

logger = structlog.get_logger(__name__)

RELIABILITY_CORPUS_SCHEMA_VERSION = "0.1.0"
RELIABILITY_FAILURE_CLASSES = enum_values(FailureClass)
DEFAULT_CORPUS_PATH = Path(__file__).parent / "fixtures" / "failure-corpus.v0.json"


class ReliabilityCorpusError(ValueError):
    """Raised when a fixture corpus cannot be read or fails validation."""

    pass


def _require_object(value: Any, path: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ReliabilityCorpusError(f"Reliability corpus field {path} must be an object")
    return value


def _require_text(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ReliabilityCorpusError(f"Reliability corpus field {path} must be a non-empty string")
    return value.strip()


def _require_member(value: Any, values: List[str], path: str) -> str:
    normalized = _require_text(value, path)
    if normalized not in values:
        raise ReliabilityCorpusError(
            f'Reliability corpus field {path} must be one of: {", ".join(values)}; received "{normalized}"'
        )
    return normalized


def _require_unit_interval(value: Any, path: str, fixture_id: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ReliabilityCorpusError(f'Reliability corpus fixture "{fixture_id}" field {path} must be a finite number')
    if value < 0 or value > 1:
        raise ReliabilityCorpusError(
            f'Reliability corpus fixture "{fixture_id}" field {path} must be within [0, 1]; received {value}'
        )
    return value


def _expected_confidence(value: Any, path: str, fixture_id: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ReliabilityCorpusError(f'Reliability corpus fixture "{fixture_id}" field {path} must be an object')
    score_min = _require_unit_interval(value.get("score_min"), f"{path}.score_min", fixture_id)
    score_max = _require_unit_interval(value.get("score_max"), f"{path}.score_max", fixture_id)
    if score_min > score_max:
        raise ReliabilityCorpusError(
            f'Reliability corpus fixture "{fixture_id}" field {path}.score_min must be less than '
            f"or equal to {path}.score_max"
        )
    band = _require_text(value.get("calibration_band"), f"{path}.calibration_band")
    bands = enum_values(CalibrationBand)
    if band not in bands:
        raise ReliabilityCorpusError(
            f'Reliability corpus fixture "{fixture_id}" field {path}.calibration_band must be one of: '
            f'{", ".join(bands)}; received "{band}"'
        )
    return {"score_min": score_min, "score_max": score_max, "calibration_band": band}


def _validate_fixture(fixture: Any, index: int, seen_ids: Set[str]) -> None:
    path = f"fixtures[{index}]"
    fixture = _require_object(fixture, path)

    fixture_id = _require_text(fixture.get("id"), f"{path}.id")
    if fixture_id in seen_ids:
        raise ReliabilityCorpusError(f'Reliability corpus fixture id "{fixture_id}" must be unique')
    seen_ids.add(fixture_id)
    fixture["id"] = fixture_id

    failure_class = _require_member(fixture.get("failure_class"), RELIABILITY_FAILURE_CLASSES, f"{path}.failure_class")
    fixture["failure_class"] = failure_class
    fixture["scenario"] = _require_text(fixture.get("scenario"), f"{path}.scenario")
    recoverability = _require_member(
        fixture.get("recoverability"), enum_values(Recoverability), f"{path}.recoverability"
    )
    fixture["recoverability"] = recoverability

    expected = _require_object(fixture.get("expected"), f"{path}.expected")
    classification = _require_member(
        expected.get("classification"), RELIABILITY_FAILURE_CLASSES, f"{path}.expected.classification"
    )
    expected["classification"] = classification
    continuation_allowed = expected.get("continuation_allowed")
    if not isinstance(continuation_allowed, bool):
        raise ReliabilityCorpusError(
            f"Reliability corpus field {path}.expected.continuation_allowed must be a boolean"
        )
    if "expected_confidence" in expected:
        expected["expected_confidence"] = _expected_confidence(
            expected["expected_confidence"], f"{path}.expected.expected_confidence", fixture_id
        )

    if classification != failure_class:
        raise ReliabilityCorpusError(
            f'Reliability corpus fixture "{fixture_id}" expected.classification must match failure_class'
        )
    if recoverability == Recoverability.RECOVERABLE.value and continuation_allowed is not True:
        raise ReliabilityCorpusError(
            f'Reliability corpus fixture "{fixture_id}" recoverable fixtures must allow continuation'
        )
    if recoverability == Recoverability.NON_RECOVERABLE.value and continuation_allowed is not False:
        raise ReliabilityCorpusError(
            f'Reliability corpus fixture "{fixture_id}" non_recoverable fixtures must block continuation'
        )

    fixture_input = _require_object(fixture.get("input"), f"{path}.input")
    fixture_input["stage"] = _require_member(fixture_input.get("stage"), enum_values(RepairStage), f"{path}.input.stage")
    fixture_input["artifact"] = _require_member(
        fixture_input.get("artifact"), enum_values(RepairArtifact), f"{path}.input.artifact"
    )
    fixture_input["excerpt"] = _require_text(fixture_input.get("excerpt"), f"{path}.input.excerpt")


def missing_recoverability_coverage(corpus: Dict[str, Any]) -> List[str]:
    """``class:recoverability`` pairs that no fixture covers, in taxonomy order."""
    covered: Set[Tuple[str, str]] = {
        (fixture["failure_class"], fixture["recoverability"]) for fixture in corpus["fixtures"]
    }
    missing = []
    for failure_class in RELIABILITY_FAILURE_CLASSES:
        for recoverability in enum_values(Recoverability):
            if (failure_class, recoverability) not in covered:
                missing.append(f"{failure_class}:{recoverability}")
    return missing


def validate_reliability_fixture_corpus(corpus: Any) -> Dict[str, Any]:
    """
    Validate a parsed corpus and return a normalized copy.

    The caller's object is never mutated. Text fields come back trimmed.

    Raises:
        ReliabilityCorpusError: On the first structural or semantic violation
    """
    candidate = copy.deepcopy(_require_object(corpus, "corpus"))

    schema_version = _require_text(candidate.get("schema_version"), "schema_version")
    if schema_version != RELIABILITY_CORPUS_SCHEMA_VERSION:
        raise ReliabilityCorpusError(
            f'Reliability corpus schema_version "{schema_version}" is incompatible; '
            f'expected "{RELIABILITY_CORPUS_SCHEMA_VERSION}"'
        )
    candidate["schema_version"] = schema_version
    candidate["corpus_id"] = _require_text(candidate.get("corpus_id"), "corpus_id")
    candidate["description"] = _require_text(candidate.get("description"), "description")

    fixtures = candidate.get("fixtures")
    if not isinstance(fixtures, list) or not fixtures:
        raise ReliabilityCorpusError("Reliability corpus fixtures must be a non-empty array")
    seen_ids: Set[str] = set()
    for index, fixture in enumerate(fixtures):
        _validate_fixture(fixture, index, seen_ids)

    missing = missing_recoverability_coverage(candidate)
    if missing:
        raise ReliabilityCorpusError(
            f"Reliability corpus missing required recoverability coverage for gate metrics: {', '.join(missing)}"
        )
    return candidate


def read_json_file(path: Path, label: str, error_cls=ReliabilityCorpusError) -> Any:
    try:
        source = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise error_cls(f"Failed to read {label} at {path}: {exc}") from exc
    try:
        return json.loads(source)
    except json.JSONDecodeError as exc:
        raise error_cls(f"Failed to parse {label} JSON at {path}: {exc}") from exc


def resolve_cli_path(value: Optional[Union[str, Path]], default: Path) -> Path:
    """Blank or missing paths fall back to ``default``; others resolve against the cwd."""
    if value is None or not str(value).strip():
        return default
    return Path(str(value).strip()).resolve()


def load_reliability_fixture_corpus(corpus_path: Optional[Union[str, Path]] = None) -> Tuple[Path, Dict[str, Any]]:
    path = resolve_cli_path(corpus_path, DEFAULT_CORPUS_PATH)
    corpus = validate_reliability_fixture_corpus(read_json_file(path, "reliability corpus"))
    logger.debug("Reliability corpus loaded", corpus_path=str(path), fixture_count=len(corpus["fixtures"]))
    return path, corpus
