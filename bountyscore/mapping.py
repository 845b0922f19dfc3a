"""Path-based component mapping: changed files -> lines credited per component.

Runs before every evaluation and is independent of the classifier verdict.
Each file is checked against every rule; a file matched by rules of several
components credits its lines once to each of them. The primary component is the
one with the highest rule priority, then the most lines. When nothing
matches, the PR is credited to OTHER.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Iterable

MATCH_TYPES = ("prefix", "suffix", "regex", "glob")


@dataclass(frozen=True)
class FileRule:
    component_id: int
    match_type: str
    pattern: str
    priority: int = 0


@dataclass(frozen=True)
class ComponentShare:
    component_id: int
    lines_changed: int
    is_primary: bool


def check_pattern(match_type: str, pattern: str) -> None:
    """Raise ValueError for an unknown match type or an uncompilable regex."""
    if match_type not in MATCH_TYPES:
        raise ValueError(f"match_type must be one of {', '.join(MATCH_TYPES)}")
    if not pattern:
        raise ValueError("pattern must not be empty")
    if match_type == "regex":
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"Invalid regex {pattern!r}: {exc}") from exc


def matches_rule(path: str, rule: FileRule) -> bool:
    if rule.match_type == "prefix":
        return path.startswith(rule.pattern)
    if rule.match_type == "suffix":
        return path.endswith(rule.pattern)
    if rule.match_type == "regex":
        try:
            return re.search(rule.pattern, path) is not None
        except re.error:
            return False
    if rule.match_type == "glob":
        return fnmatchcase(path, rule.pattern)
    return False


def map_components(
    files: Iterable[dict[str, Any]],
    rules: list[FileRule],
    other_id: int | None,
) -> list[ComponentShare]:
    """Credit changed lines to components and pick the primary one.

    *files* are code-host file entries (``filename``, ``additions``,
    ``deletions``). Returns an empty list only when nothing matched and
    there is no OTHER component to fall back to.
    """
    lines: dict[int, int] = {}
    priority: dict[int, int] = {}
    for f in files:
        path = f.get("filename") or ""
        changed = int(f.get("additions") or 0) + int(f.get("deletions") or 0)
        credited: set[int] = set()
        for rule in rules:
            if not matches_rule(path, rule):
                continue
            cid = rule.component_id
            priority[cid] = max(priority.get(cid, rule.priority), rule.priority)
            if cid not in credited:
                credited.add(cid)
                lines[cid] = lines.get(cid, 0) + changed

    if not lines:
        if other_id is None:
            return []
        return [ComponentShare(other_id, 0, True)]

    # Ties on priority and lines go to the lowest id so reruns agree
    primary = min(lines, key=lambda cid: (-priority[cid], -lines[cid], cid))
    return [ComponentShare(cid, lines[cid], cid == primary) for cid in sorted(lines)]
