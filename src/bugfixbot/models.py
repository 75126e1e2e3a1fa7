from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


CycleStatus = Literal["complete", "pushed", "stopped", "failed"]
CommentKind = Literal["review", "issue"]
ReviewerStatus = Literal["pending", "in_progress", "completed", "unknown"]
Side = Literal["LEFT", "RIGHT"]

# Resolving revision recorded for comments the fix engine found nothing to change for.
ALREADY_FIXED_REVISION = "already-fixed"


@dataclass(frozen=True)
class RawComment:
    comment_id: int
    author: str
    body: str
    created_at: str
    kind: CommentKind = "review"
    node_id: str = ""
    path: str | None = None
    line: int | None = None
    side: Side | None = None
    position: int | None = None
    diff_hunk: str | None = None
    revision_id: str | None = None
    updated_at: str = ""
    html_url: str = ""
    is_resolved: bool = False
    has_reply: bool = False


@dataclass(frozen=True)
class FixTask:
    comment_id: int
    file_path: str
    line_start: int
    line_end: int
    body: str
    created_at: str
    side: Side = "RIGHT"
    node_id: str = ""
    diff_hunk: str | None = None
    source_revision: str | None = None

    def __post_init__(self) -> None:
        if self.line_end < self.line_start:
            raise ValueError(
                f"line_end ({self.line_end}) must be >= line_start ({self.line_start})"
            )

    @property
    def location(self) -> str:
        if not self.file_path:
            return "(general)"
        if self.line_end != self.line_start:
            return f"{self.file_path}:{self.line_start}-{self.line_end}"
        return f"{self.file_path}:{self.line_start}"


@dataclass(frozen=True)
class HandledItem:
    revision: str
    handled_at: str


@dataclass
class SessionState:
    target_id: int
    cycle_count: int
    last_pushed_revision: str | None
    started_at: str
    handled_items: dict[str, HandledItem] = field(default_factory=dict)


@dataclass(frozen=True)
class FixResult:
    success: bool
    changed_files: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class CycleResult:
    status: CycleStatus
    reason: str | None = None
    revision: str | None = None
    fixed_count: int | None = None
