from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from bugfixbot.github_gateway import CommentSource
from bugfixbot.models import SessionState
from bugfixbot.normalizer import normalize_comments
from bugfixbot.observability import log_event
from bugfixbot.state import StateStore


LOGGER = logging.getLogger("bugfixbot.status")
_PREVIEW_CHARS = 60


@dataclass(frozen=True)
class PendingTaskRow:
    comment_id: int
    location: str
    preview: str


@dataclass(frozen=True)
class StatusSnapshot:
    repo_full_name: str
    pr_number: int
    session: SessionState | None
    total_comments: int | None
    pending: tuple[PendingTaskRow, ...]
    refreshed_at: str
    error: str | None = None


def collect_status(
    *,
    repo_full_name: str,
    pr_number: int,
    store: StateStore,
    comments: CommentSource | None,
    logger: logging.Logger | None = None,
) -> StatusSnapshot:
    """Read-only view of the session and the comments still waiting for a fix."""
    log = logger or LOGGER
    stored = store.load()
    session = stored if stored is not None and stored.target_id == pr_number else None
    refreshed_at = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if comments is None:
        return StatusSnapshot(
            repo_full_name=repo_full_name,
            pr_number=pr_number,
            session=session,
            total_comments=None,
            pending=(),
            refreshed_at=refreshed_at,
        )

    try:
        raw_comments = comments.fetch_comments()
    except (RuntimeError, ValueError, OSError) as exc:
        log_event(log, "status_fetch_failed", level=logging.WARNING, error=str(exc))
        return StatusSnapshot(
            repo_full_name=repo_full_name,
            pr_number=pr_number,
            session=session,
            total_comments=None,
            pending=(),
            refreshed_at=refreshed_at,
            error=str(exc),
        )

    baseline = session or SessionState(
        target_id=pr_number, cycle_count=0, last_pushed_revision=None, started_at=""
    )
    tasks = normalize_comments(raw_comments, baseline)
    return StatusSnapshot(
        repo_full_name=repo_full_name,
        pr_number=pr_number,
        session=session,
        total_comments=len(raw_comments),
        pending=tuple(
            PendingTaskRow(
                comment_id=task.comment_id,
                location=task.location,
                preview=preview_text(task.body),
            )
            for task in tasks
        ),
        refreshed_at=refreshed_at,
    )


def preview_text(body: str, *, max_chars: int = _PREVIEW_CHARS) -> str:
    first_line = body.strip().split("\n", 1)[0].strip()
    if len(first_line) <= max_chars:
        return first_line
    return f"{first_line[: max_chars - 3]}..."


def short_revision(revision: str | None) -> str:
    if not revision:
        return "(none)"
    return revision[:7]


def format_status(snapshot: StatusSnapshot, *, max_rows: int = 10) -> str:
    lines = [
        "Bugfixbot Status",
        "================",
        "",
        f"Repository: {snapshot.repo_full_name}",
        f"PR: #{snapshot.pr_number}",
        "",
    ]
    session = snapshot.session
    if session is None:
        lines.append("Session State: (no active session)")
    else:
        lines.extend(
            [
                "Session State:",
                f"  Cycles completed: {session.cycle_count}",
                f"  Comments handled: {len(session.handled_items)}",
                f"  Last pushed revision: {short_revision(session.last_pushed_revision)}",
                f"  Started at: {session.started_at}",
            ]
        )
    lines.append("")

    if snapshot.error is not None:
        lines.append(f"Comments: unavailable ({snapshot.error})")
        return "\n".join(lines)
    if snapshot.total_comments is None:
        return "\n".join(lines)

    lines.extend(
        [
            "Comments:",
            f"  Total bot comments: {snapshot.total_comments}",
            f"  Actionable (unhandled): {len(snapshot.pending)}",
        ]
    )
    if snapshot.pending:
        lines.extend(["", "Pending fixes:"])
        for row in snapshot.pending[:max_rows]:
            lines.append(f"  - [{row.location}] {row.preview}")
        if len(snapshot.pending) > max_rows:
            lines.append(f"  ... and {len(snapshot.pending) - max_rows} more")
        lines.extend(["", f'Run "bugfixbot run --pr {snapshot.pr_number}" to fix pending comments'])
    elif snapshot.total_comments > 0:
        lines.extend(["", "All bot comments have been handled."])
    return "\n".join(lines)
