from __future__ import annotations

from typing import Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from bugfixbot.status import StatusSnapshot, short_revision


class StatusApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 5;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        load_snapshot: Callable[[], StatusSnapshot],
        refresh_seconds: float = 30.0,
    ) -> None:
        super().__init__()
        self._load_snapshot = load_snapshot
        self._refresh_seconds = refresh_seconds
        self._snapshot: StatusSnapshot | None = None

    @property
    def snapshot(self) -> StatusSnapshot | None:
        return self._snapshot

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Pending Fixes", classes="panel-title")
            yield DataTable(id="pending-table")
        yield Footer()

    def on_mount(self) -> None:
        self.title = "bugfixbot"
        self.query_one("#pending-table", DataTable).add_columns("Comment", "Location", "Preview")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def refresh_data(self) -> None:
        # Fetching shells out to gh, so keep it off the event loop.
        self.run_worker(self._fetch_snapshot, thread=True, exclusive=True, group="refresh")

    def _fetch_snapshot(self) -> None:
        snapshot = self._load_snapshot()
        self.call_from_thread(self._apply_snapshot, snapshot)

    def _apply_snapshot(self, snapshot: StatusSnapshot) -> None:
        self._snapshot = snapshot
        self.sub_title = f"{snapshot.repo_full_name}#{snapshot.pr_number}"
        self.query_one("#summary", Static).update(_summary_text(snapshot))
        table = self.query_one("#pending-table", DataTable)
        table.clear(columns=False)
        for row in snapshot.pending:
            table.add_row(str(row.comment_id), row.location, row.preview)


def _summary_text(snapshot: StatusSnapshot) -> str:
    session = snapshot.session
    if session is None:
        session_line = "session=none"
    else:
        session_line = (
            f"cycles={session.cycle_count} handled={len(session.handled_items)} "
            f"last_pushed={short_revision(session.last_pushed_revision)}"
        )
    if snapshot.error is not None:
        comments_line = f"comments=unavailable ({snapshot.error})"
    elif snapshot.total_comments is None:
        comments_line = "comments=not fetched"
    else:
        comments_line = f"comments={snapshot.total_comments} pending={len(snapshot.pending)}"
    return "\n".join(
        [
            f"repo={snapshot.repo_full_name} pr=#{snapshot.pr_number}",
            session_line,
            comments_line,
            f"refreshed={snapshot.refreshed_at}",
        ]
    )


def run_status_tui(
    *,
    load_snapshot: Callable[[], StatusSnapshot],
    refresh_seconds: float,
) -> None:
    StatusApp(load_snapshot=load_snapshot, refresh_seconds=refresh_seconds).run()
