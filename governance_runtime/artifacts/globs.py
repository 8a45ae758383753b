"""Workspace-relative path normalization and glob matching shared by pipeline stages."""

from __future__ import annotations

import functools
import posixpath
import re
from typing import Any, Iterable, List, Optional, Sequence

from governance_runtime.utils.hooks import normalize_optional_str

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:/")
_LEADING_DOT_SLASH = re.compile(r"^\./+")


def to_posix(value: str) -> str:
    return value.replace("\\", "/")


@functools.lru_cache(maxsize=512)
def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """``**`` spans directories, ``*`` stays within one segment, everything else is literal."""
    expression = "^"
    index = 0
    while index < len(pattern):
        character = pattern[index]
        if character == "*":
            if index + 1 < len(pattern) and pattern[index + 1] == "*":
                expression += ".*"
                index += 2
                continue
            expression += "[^/]*"
        else:
            expression += re.escape(character)
        index += 1
    return re.compile(expression + "$")


def matches_glob(path: str, pattern: str) -> bool:
    if glob_to_regex(pattern).match(path):
        return True
    # "dir/**" also covers the directory entry itself
    return pattern.endswith("/**") and path == pattern[:-3]


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(matches_glob(path, pattern) for pattern in patterns)


def collect_matching_paths(paths: Iterable[str], patterns: Sequence[str]) -> List[str]:
    return sorted({path for path in paths if matches_any(path, patterns)})


def is_outside_workspace(path: str) -> bool:
    if path.startswith("/") or _DRIVE_LETTER.match(path):
        return True
    return path == ".." or path.startswith("../")


def normalize_relative_path(value: Any) -> Optional[str]:
    """
    Collapse a user supplied path to its workspace-relative POSIX form.

    Returns None for blank input and ``"."`` for a path that resolves to the
    workspace root itself; callers decide how to report either.
    """
    text = normalize_optional_str(value)
    if text is None:
        return None
    normalized = posixpath.normpath(to_posix(text))
    if normalized == ".":
        return normalized
    return _LEADING_DOT_SLASH.sub("", normalized)


def normalize_patterns(value: Any, defaults: Sequence[str], error_factory, label: str) -> List[str]:
    """Validate a list of glob patterns; deduplicated and sorted."""
    if value is None:
        return list(defaults)
    if not isinstance(value, (list, tuple)):
        raise error_factory(f"{label} must be an array of non-empty strings")
    patterns = set()
    for item in value:
        pattern = normalize_optional_str(item)
        if pattern is None:
            raise error_factory(f"{label} must contain only non-empty strings")
        patterns.add(to_posix(pattern))
    return sorted(patterns)
