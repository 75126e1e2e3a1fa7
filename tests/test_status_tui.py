from __future__ import annotations

import asyncio
import threading

from textual.widgets import DataTable

from bugfixbot.models import SessionState
from bugfixbot.status import PendingTaskRow, StatusSnapshot
from bugfixbot import status_tui


def _snapshot(pending: int, *, error: str | None = None) -> StatusSnapshot:
    return StatusSnapshot(
        repo_full_name="o/r",
        pr_number=7,
        session=SessionState(
            target_id=7, cycle_count=1, last_pushed_revision="abcdef123", started_at="t"
        ),
        total_comments=None if error else pending,
        pending=tuple(
            PendingTaskRow(comment_id=i, location=f"a.py:{i}", preview=f"fix {i}")
            for i in range(pending)
        ),
        refreshed_at="2024-01-01T00:00:00Z",
        error=error,
    )


def test_summary_text_variants() -> None:
    text = status_tui._summary_text(_snapshot(2))
    assert "repo=o/r pr=#7" in text
    assert "cycles=1 handled=0 last_pushed=abcdef1" in text
    assert "comments=2 pending=2" in text

    assert "comments=unavailable (offline)" in status_tui._summary_text(
        _snapshot(0, error="offline")
    )


def test_status_app_renders_and_refreshes() -> None:
    snapshots = [_snapshot(2), _snapshot(1)]
    calls = {"count": 0}

    def load_snapshot() -> StatusSnapshot:
        index = min(calls["count"], len(snapshots) - 1)
        calls["count"] += 1
        return snapshots[index]

    app = status_tui.StatusApp(load_snapshot=load_snapshot, refresh_seconds=60)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await app.workers.wait_for_complete()
            await pilot.pause()
            table = app.query_one("#pending-table", DataTable)
            assert table.row_count == 2
            assert app.snapshot == snapshots[0]
            assert app.sub_title == "o/r#7"
            await pilot.press("r")
            await app.workers.wait_for_complete()
            await pilot.pause()
            assert table.row_count == 1
            assert app.snapshot == snapshots[1]

    asyncio.run(run_app())
    assert calls["count"] >= 2


def test_refresh_runs_off_the_event_loop_thread() -> None:
    threads: list[int] = []

    def load_snapshot() -> StatusSnapshot:
        threads.append(threading.get_ident())
        return _snapshot(0)

    app = status_tui.StatusApp(load_snapshot=load_snapshot, refresh_seconds=60)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await app.workers.wait_for_complete()
            await pilot.pause()
            assert app.snapshot == _snapshot(0)

    asyncio.run(run_app())
    assert threads
    assert threading.get_ident() not in threads
