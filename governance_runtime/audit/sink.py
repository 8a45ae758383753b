"""
Append-only NDJSON / text sinks for audit records.

Callers treat every write as best-effort: use ``safe_append`` from governed
code paths so that a failing sink never alters the governed result.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


def to_json_line(record: Dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=False, separators=(",", ":"))


def append_text(output_path: Optional[str], text: str) -> None:
    if not output_path:
        return
    with open(output_path, "a", encoding="utf-8") as f:
        f.write(text)


def append_ndjson(output_path: Optional[str], record: Dict[str, Any]) -> None:
    """Append one JSON record followed by a newline."""
    append_text(output_path, to_json_line(record) + "\n")


def safe_append(write: Callable[[], None], sink: str, output_path: Optional[str]) -> bool:
    """Run a sink write, logging and swallowing any failure. Returns whether it succeeded."""
    try:
        write()
        return True
    except Exception as exc:
        logger.warning("Audit sink write failed", sink=sink, output_path=output_path, error=str(exc))
        return False
