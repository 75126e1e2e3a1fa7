from __future__ import annotations

from collections.abc import Iterable, Sequence
import re

from bugfixbot.models import FixTask, RawComment, SessionState
from bugfixbot.state import comment_key


_NON_ACTIONABLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(lgtm|looks good|approved|nice|great)", re.IGNORECASE),
    re.compile(r"^(thanks|thank you)", re.IGNORECASE),
    re.compile(r"^\?"),
    re.compile(r"^(what|why|how|can you explain)", re.IGNORECASE),
)
_ACTIONABLE_KEYWORDS: tuple[str, ...] = (
    "fix",
    "change",
    "update",
    "remove",
    "add",
    "rename",
    "refactor",
    "error",
    "bug",
    "issue",
    "warning",
    "missing",
    "incorrect",
    "should",
    "must",
    "need",
)


def is_outdated(comment: RawComment) -> bool:
    # The diff moved under the comment; GitHub drops both anchors.
    return bool(comment.path) and comment.line is None and comment.position is None


def is_actionable(comment: RawComment) -> bool:
    stripped = comment.body.strip()
    if any(pattern.search(stripped) for pattern in _NON_ACTIONABLE_PATTERNS):
        return False
    if comment.path:
        return True
    lowered = comment.body.lower()
    return any(keyword in lowered for keyword in _ACTIONABLE_KEYWORDS)


def line_range(comment: RawComment) -> tuple[int, int]:
    # Review comments anchor to one line; the hunk never widens the range.
    line = comment.line if comment.line is not None else 1
    return line, line


def normalize_comments(
    raw_comments: Iterable[RawComment], state: SessionState
) -> list[FixTask]:
    tasks: list[FixTask] = []
    for comment in raw_comments:
        if comment.is_resolved or comment.has_reply:
            continue
        if comment_key(comment.comment_id, comment.revision_id) in state.handled_items:
            continue
        if is_outdated(comment):
            continue
        if not is_actionable(comment):
            continue
        start, end = line_range(comment)
        tasks.append(
            FixTask(
                comment_id=comment.comment_id,
                node_id=comment.node_id,
                file_path=comment.path or "",
                line_start=start,
                line_end=end,
                side=comment.side or "RIGHT",
                body=comment.body,
                diff_hunk=comment.diff_hunk,
                source_revision=comment.revision_id,
                created_at=comment.created_at,
            )
        )
    return tasks


def group_tasks_by_file(tasks: Sequence[FixTask]) -> dict[str, list[FixTask]]:
    grouped: dict[str, list[FixTask]] = {}
    for task in tasks:
        grouped.setdefault(task.file_path, []).append(task)
    return grouped


def count_affected_lines(tasks: Sequence[FixTask]) -> int:
    return sum(task.line_end - task.line_start + 1 for task in tasks)
