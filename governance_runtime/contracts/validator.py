"""
Versioned contract validation for SemanticIR, PolicyProfile and
VerificationContract payloads.

Each family is accepted only when its ``schema_version`` equals the single
supported literal and the payload conforms to the published JSON Schema.
Rejected payloads raise ``ContractValidationError`` carrying every schema
issue found, never just the first one.
"""

from __future__ import annotations

import copy
import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from jsonschema import Draft202012Validator

logger = structlog.get_logger(__name__)

SCHEMA_DIR = Path(__file__).parent / "schemas"

SUPPORTED_SEMANTIC_IR_SCHEMA_VERSION = "0.1.0"
SUPPORTED_POLICY_PROFILE_SCHEMA_VERSION = "0.1.0"
SUPPORTED_VERIFICATION_CONTRACT_SCHEMA_VERSION = "1.0.0"

# contract name -> (schema file, supported version)
CONTRACT_FAMILIES = {
    "SemanticIR": ("semanticir-v0.schema.json", SUPPORTED_SEMANTIC_IR_SCHEMA_VERSION),
    "PolicyProfile": ("policyprofile-v0.schema.json", SUPPORTED_POLICY_PROFILE_SCHEMA_VERSION),
    "VerificationContract": (
        "verificationcontract-v1.schema.json",
        SUPPORTED_VERIFICATION_CONTRACT_SCHEMA_VERSION,
    ),
}

INVALID_INPUT = "INVALID_INPUT"
VERSION_INCOMPATIBLE = "VERSION_INCOMPATIBLE"
SCHEMA_VALIDATION_FAILED = "SCHEMA_VALIDATION_FAILED"


class ContractValidationError(Exception):
    """Raised when a contract payload is malformed, incompatible or schema-invalid."""

    def __init__(
        self,
        contract: str,
        code: str,
        message: str,
        issues: Optional[List[Dict[str, str]]] = None,
    ):
        super().__init__(message)
        self.contract = contract
        self.code = code
        self.message = message
        self.issues = list(issues or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract": self.contract,
            "code": self.code,
            "message": self.message,
            "issues": self.issues,
        }


def load_schema(file_name: str) -> Dict[str, Any]:
    with open(SCHEMA_DIR / file_name, "r", encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=None)
def get_validator(file_name: str) -> Draft202012Validator:
    schema = load_schema(file_name)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _instance_path(error) -> str:
    parts = [str(part) for part in error.absolute_path]
    return "/" + "/".join(parts) if parts else ""


def collect_schema_issues(validator: Draft202012Validator, value: Any) -> List[Dict[str, str]]:
    """Every schema violation as ``{instancePath, keyword, message}``, ordered by path."""
    errors = sorted(
        validator.iter_errors(value),
        key=lambda e: (tuple(str(p) for p in e.absolute_path), str(e.validator)),
    )
    return [
        {
            "instancePath": _instance_path(error),
            "keyword": str(error.validator),
            "message": error.message or "validation failed",
        }
        for error in errors
    ]


def _require_record(value: Any, contract: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ContractValidationError(
            contract, INVALID_INPUT, f"{contract} contract input must be an object"
        )
    return value


def _require_compatible_schema_version(contract: str, value: Dict[str, Any], expected: str) -> None:
    schema_version = value.get("schema_version")

    if schema_version is None or (isinstance(schema_version, str) and not schema_version.strip()):
        raise ContractValidationError(
            contract,
            SCHEMA_VALIDATION_FAILED,
            f"{contract} schema_version is required",
            [
                {
                    "instancePath": "/schema_version",
                    "keyword": "required",
                    "message": "schema_version is required",
                }
            ],
        )

    if not isinstance(schema_version, str):
        raise ContractValidationError(
            contract,
            SCHEMA_VALIDATION_FAILED,
            f"{contract} schema_version must be a string",
            [
                {
                    "instancePath": "/schema_version",
                    "keyword": "type",
                    "message": "schema_version must be a string",
                }
            ],
        )

    # Exact literal match; no range or minor-version tolerance
    if schema_version != expected:
        raise ContractValidationError(
            contract,
            VERSION_INCOMPATIBLE,
            f'{contract} schema_version "{schema_version}" is incompatible; expected "{expected}"',
            [
                {
                    "instancePath": "/schema_version",
                    "keyword": "const",
                    "message": f'expected "{expected}"',
                }
            ],
        )


def validate_contract(contract: str, payload: Any) -> Dict[str, Any]:
    """
    Validate one contract family payload.

    Args:
        contract: One of ``SemanticIR``, ``PolicyProfile``, ``VerificationContract``
        payload: Decoded JSON payload

    Returns:
        A deep copy of the validated payload

    Raises:
        ContractValidationError: If the payload is rejected
    """
    schema_file, expected_version = CONTRACT_FAMILIES[contract]
    candidate = _require_record(payload, contract)
    _require_compatible_schema_version(contract, candidate, expected_version)

    issues = collect_schema_issues(get_validator(schema_file), candidate)
    if issues:
        first = issues[0]
        logger.debug(
            "Contract rejected by schema",
            contract=contract,
            issue_count=len(issues),
            first_path=first["instancePath"] or "/",
        )
        raise ContractValidationError(
            contract,
            SCHEMA_VALIDATION_FAILED,
            f"{contract} contract validation failed at {first['instancePath'] or '/'}: {first['message']}",
            issues,
        )

    return copy.deepcopy(candidate)


def load_semantic_ir(payload: Any) -> Dict[str, Any]:
    return validate_contract("SemanticIR", payload)


def load_policy_profile(payload: Any) -> Dict[str, Any]:
    return validate_contract("PolicyProfile", payload)


def load_verification_contract(payload: Any) -> Dict[str, Any]:
    return validate_contract("VerificationContract", payload)


def load_runtime_contracts(payload: Any) -> Dict[str, Any]:
    """
    Validate the runtime contract bundle.

    ``semanticIr`` and ``policyProfile`` are mandatory; ``verificationContract``
    is validated only when the key is present.
    """
    candidate = _require_record(payload, "RuntimeContracts")

    contracts = {
        "semanticIr": load_semantic_ir(candidate.get("semanticIr")),
        "policyProfile": load_policy_profile(candidate.get("policyProfile")),
    }
    if "verificationContract" in candidate:
        contracts["verificationContract"] = load_verification_contract(
            candidate.get("verificationContract")
        )
    return contracts
