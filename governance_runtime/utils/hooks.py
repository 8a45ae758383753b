"""
Fault-tolerant resolution of caller-supplied id and clock hooks.

Hooks are only evaluated when a sink is configured. A hook that raises or
returns an unusable value falls back to a generated id or the real clock.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], Any]
IdFactory = Callable[[], Any]


def normalize_optional_str(value: Any) -> Optional[str]:
    """Trimmed string, or None for non-strings and blank strings."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def utc_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def _coerce_timestamp(candidate: Any) -> Optional[str]:
    if isinstance(candidate, datetime):
        return format_timestamp(candidate)
    if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
        if math.isfinite(candidate):
            try:
                return format_timestamp(datetime.fromtimestamp(candidate, tz=timezone.utc))
            except (OverflowError, OSError, ValueError):
                return None
    return None


def resolve_timestamp(now: Optional[Clock]) -> str:
    """Evaluate the clock hook, falling back to real time on any fault."""
    if now is None:
        return utc_now()
    try:
        resolved = _coerce_timestamp(now())
    except Exception as exc:
        logger.debug("Clock hook failed; using system clock", error=str(exc))
        resolved = None
    return resolved or utc_now()


def call_id_factory(factory: Optional[IdFactory]) -> Optional[str]:
    if factory is None:
        return None
    try:
        return normalize_optional_str(factory())
    except Exception as exc:
        logger.debug("Id factory failed; using generated id", error=str(exc))
        return None


def resolve_run_id(run_id: Any = None, run_id_factory: Optional[IdFactory] = None) -> str:
    explicit = normalize_optional_str(run_id)
    if explicit is not None:
        return explicit
    return call_id_factory(run_id_factory) or str(uuid.uuid4())


def resolve_feedback_id(feedback_id_factory: Optional[IdFactory], run_id: str) -> str:
    return call_id_factory(feedback_id_factory) or f"ft-{run_id}-{uuid.uuid4()}"
