"""Path normalization for matching sources across OS separator and case differences."""

import ntpath
import os
import posixpath
import re
from collections.abc import Iterable

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_LEADING_SLASH_DRIVE_RE = re.compile(r"^/([a-z]:)")


def is_url(path: str) -> bool:
    return bool(_URL_RE.match(path))


def normalize_path(path: str) -> str:
    """Canonical comparison form: ``/`` separators, lower-cased, no ``/`` before a drive.

    ``C:\\docs\\a.txt``, ``C:/docs/a.txt`` and ``/c:/docs/a.txt`` all map to
    ``c:/docs/a.txt``.
    """
    if not path:
        return path
    normalized = path.replace("\\", "/").lower()
    return _LEADING_SLASH_DRIVE_RE.sub(r"\1", normalized)


def source_variants(path: str) -> list[str]:
    """All spellings under which ``path`` may have been stored, de-duplicated."""
    if not path:
        return []

    forward = path.replace("\\", "/")
    backward = path.replace("/", "\\")
    normalized = normalize_path(path)
    candidates = [
        path,
        normalized,
        forward,
        backward,
        os.path.normpath(path),
        normalized.replace("/", "\\"),
        forward.lower(),
        backward.lower(),
    ]
    if not is_url(path):
        candidates.append(posixpath.normpath(forward))
        candidates.append(ntpath.normpath(path))

    seen: dict[str, None] = {}
    for candidate in candidates:
        if candidate:
            seen.setdefault(candidate, None)
    return list(seen)


def escape_sql_literal(value: str) -> str:
    return value.replace("'", "''")


def build_in_clause(column: str, values: Iterable[str]) -> str:
    """``column IN ('a', 'b')`` with single quotes escaped."""
    quoted = ", ".join(f"'{escape_sql_literal(v)}'" for v in values)
    return f"{column} IN ({quoted})"


def source_matches(source: str, requested: Iterable[str]) -> bool:
    """True if ``source`` equals (or, for short lists, ends with) a requested path.

    Comparison is on normalized paths. Suffix matching is only used when fewer
    than 50 paths are requested, to keep it from matching broadly.
    """
    targets = [normalize_path(r) for r in requested if r]
    if not targets:
        return True
    normalized = normalize_path(source)
    if not normalized:
        return False
    if normalized in targets:
        return True
    if len(targets) < 50:
        return any(normalized.endswith(t) or t.endswith(normalized) for t in targets)
    return False
