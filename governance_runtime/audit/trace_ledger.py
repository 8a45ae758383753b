"""Trace ledger: one NDJSON record per governed runtime invocation."""

from __future__ import annotations

from typing import Any, Dict, Optional

from governance_runtime.audit.sink import append_ndjson

TRACE_LEDGER_SCHEMA_VERSION = "0.1.0"

NON_ERROR_THROWN = "NonErrorThrown"
UNSTRINGIFIABLE_VALUE = "[unstringifiable thrown value]"


def normalize_error(error: Any) -> Dict[str, str]:
    """
    Reduce anything raised by a governed operation to ``{name, message}``.

    Exceptions keep their class name (blank names become ``Error``); any
    other value is reported as ``NonErrorThrown`` with its string form.
    """
    if isinstance(error, BaseException):
        name = getattr(error, "name", None)
        if not isinstance(name, str):
            name = type(error).__name__
        name = name.strip() or "Error"
        try:
            message = str(error)
        except Exception:
            message = UNSTRINGIFIABLE_VALUE
        return {"name": name, "message": message}

    try:
        message = str(error)
    except Exception:
        message = UNSTRINGIFIABLE_VALUE
    return {"name": NON_ERROR_THROWN, "message": message}


def build_trace_ledger_entry(
    run_id: str,
    started_at: str,
    completed_at: str,
    semantic_ir_version: str,
    policy_profile_version: str,
    error: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    outcome: Dict[str, Any] = {"status": "success"}
    if error is not None:
        outcome = {"status": "failure", "error": error}

    return {
        "schema_version": TRACE_LEDGER_SCHEMA_VERSION,
        "run_id": run_id,
        "started_at": started_at,
        "completed_at": completed_at,
        "contract_versions": {
            "semantic_ir": semantic_ir_version,
            "policy_profile": policy_profile_version,
        },
        "outcome": outcome,
    }


def emit_trace_ledger_entry(entry: Dict[str, Any], output_path: Optional[str] = None) -> None:
    append_ndjson(output_path, entry)
