"""Bounded classifier input for a single pull request."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

NO_DESCRIPTION = "No description provided"
DIFF_NOT_AVAILABLE = "Diff not available"
TRUNCATION_MARKER = "\n... [diff truncated at {limit} characters]"


@dataclass
class PRInfo:
    title: str
    repository: str
    author: str
    number: int = 0
    body: str | None = None
    merged_at: datetime | None = None
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    url: str = ""


def build_diff(files: list[dict[str, Any]], max_chars: int = 30_000) -> str:
    """Concatenate per-file patches, truncated at *max_chars* with a marker."""
    parts = []
    for f in files:
        patch = f.get("patch")
        header = f"--- {f.get('filename', '?')} (+{f.get('additions', 0)} -{f.get('deletions', 0)})"
        parts.append(f"{header}\n{patch}" if patch else f"{header}\n[binary or no patch]")
    diff = "\n\n".join(parts)
    if len(diff) > max_chars:
        return diff[:max_chars] + TRUNCATION_MARKER.format(limit=max_chars)
    return diff


def build_pr_context(
    pr: PRInfo,
    files: list[dict[str, Any]] | None,
    max_files: int = 50,
    max_diff_chars: int = 30_000,
) -> str:
    """Prompt body for the classifier.

    *files* is ``None`` when the file listing could not be fetched; the
    context then carries the "diff not available" sentinel instead of failing.
    """
    merged = pr.merged_at.strftime("%Y-%m-%d %H:%M UTC") if pr.merged_at else "unknown"
    lines = [
        f"Title: {pr.title}",
        f"Repository: {pr.repository}",
        f"Pull request: #{pr.number}" + (f" ({pr.url})" if pr.url else ""),
        f"Author: {pr.author}",
        f"Merged: {merged}",
        f"Changes: +{pr.additions} -{pr.deletions} across {pr.changed_files} files",
        "",
        "Description:",
        (pr.body or "").strip() or NO_DESCRIPTION,
        "",
        "Files:",
    ]
    if files:
        for f in files[:max_files]:
            lines.append(f"- {f.get('filename', '?')} ({f.get('status') or 'modified'}, "
                         f"+{f.get('additions', 0)} -{f.get('deletions', 0)})")
        if len(files) > max_files:
            lines.append(f"... and {len(files) - max_files} more files")
    elif files is None:
        lines.append("File list not available")
    else:
        lines.append("No files changed")

    lines += ["", "Diff:"]
    if files is None:
        lines.append(DIFF_NOT_AVAILABLE)
    else:
        lines.append(build_diff(files[:max_files], max_diff_chars) or DIFF_NOT_AVAILABLE)
    return "\n".join(lines)
