from __future__ import annotations

from bugfixbot.models import HandledItem, RawComment, SessionState
from bugfixbot.state import InMemoryStateBackend, StateStore
from bugfixbot.status import (
    PendingTaskRow,
    StatusSnapshot,
    collect_status,
    format_status,
    preview_text,
    short_revision,
)


class FakeCommentSource:
    def __init__(self, comments: list[RawComment] | None = None) -> None:
        self.comments = list(comments or [])
        self.fetch_error: Exception | None = None

    def fetch_comments(self) -> list[RawComment]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.comments)


def make_comment(comment_id: int = 1, **overrides: object) -> RawComment:
    values: dict[str, object] = {
        "comment_id": comment_id,
        "author": "cursor[bot]",
        "body": "Possible None dereference when the cache is empty.",
        "created_at": f"2024-01-01T00:00:{comment_id:02d}Z",
        "node_id": f"PRRC_{comment_id}",
        "path": "src/app.py",
        "line": 10,
        "side": "RIGHT",
        "position": 2,
        "diff_hunk": "@@ -8,3 +8,4 @@",
        "revision_id": "rev1",
    }
    values.update(overrides)
    return RawComment(**values)  # type: ignore[arg-type]


def _store(session: SessionState | None = None) -> StateStore:
    return StateStore(InMemoryStateBackend(session))


def _session(target_id: int = 7) -> SessionState:
    return SessionState(
        target_id=target_id,
        cycle_count=2,
        last_pushed_revision="0123456789abcdef",
        started_at="2024-01-01T00:00:00.000000Z",
        handled_items={"1-rev1": HandledItem(revision="0123456789abcdef", handled_at="t")},
    )


def test_collect_status_lists_unhandled_comments() -> None:
    comments = FakeCommentSource(
        [make_comment(1), make_comment(2, line=20), make_comment(3, body="LGTM")]
    )

    snapshot = collect_status(
        repo_full_name="o/r", pr_number=7, store=_store(_session()), comments=comments
    )

    assert snapshot.session is not None
    assert snapshot.session.cycle_count == 2
    assert snapshot.total_comments == 3
    assert snapshot.pending == (
        PendingTaskRow(
            comment_id=2,
            location="src/app.py:20",
            preview="Possible None dereference when the cache is empty.",
        ),
    )
    assert snapshot.error is None


def test_collect_status_ignores_session_for_other_target() -> None:
    snapshot = collect_status(
        repo_full_name="o/r",
        pr_number=8,
        store=_store(_session(target_id=7)),
        comments=FakeCommentSource([make_comment(1)]),
    )

    assert snapshot.session is None
    assert [row.comment_id for row in snapshot.pending] == [1]


def test_collect_status_does_not_create_session() -> None:
    backend = InMemoryStateBackend()
    collect_status(
        repo_full_name="o/r", pr_number=7, store=StateStore(backend), comments=None
    )
    assert backend.load() is None
    assert backend.save_count == 0


def test_collect_status_reports_fetch_errors() -> None:
    comments = FakeCommentSource()
    comments.fetch_error = RuntimeError("gh: not logged in")

    snapshot = collect_status(repo_full_name="o/r", pr_number=7, store=_store(), comments=comments)

    assert snapshot.error == "gh: not logged in"
    assert snapshot.total_comments is None
    assert "Comments: unavailable (gh: not logged in)" in format_status(snapshot)


def test_preview_and_short_revision() -> None:
    assert preview_text("  first line\nsecond") == "first line"
    assert preview_text("x" * 80) == "x" * 57 + "..."
    assert short_revision(None) == "(none)"
    assert short_revision("0123456789") == "0123456"


def test_format_status_with_pending_rows() -> None:
    rows = tuple(
        PendingTaskRow(comment_id=i, location=f"a.py:{i}", preview=f"issue {i}") for i in range(12)
    )
    snapshot = StatusSnapshot(
        repo_full_name="o/r",
        pr_number=7,
        session=_session(),
        total_comments=14,
        pending=rows,
        refreshed_at="now",
    )

    text = format_status(snapshot)

    assert "Repository: o/r" in text
    assert "  Cycles completed: 2" in text
    assert "  Comments handled: 1" in text
    assert "  Last pushed revision: 0123456" in text
    assert "  Actionable (unhandled): 12" in text
    assert "  - [a.py:0] issue 0" in text
    assert "  - [a.py:10] issue 10" not in text
    assert "  ... and 2 more" in text
    assert 'Run "bugfixbot run --pr 7" to fix pending comments' in text


def test_format_status_all_handled() -> None:
    snapshot = StatusSnapshot(
        repo_full_name="o/r",
        pr_number=7,
        session=None,
        total_comments=3,
        pending=(),
        refreshed_at="now",
    )

    text = format_status(snapshot)

    assert "Session State: (no active session)" in text
    assert "All bot comments have been handled." in text
