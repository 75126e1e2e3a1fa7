from __future__ import annotations

from pathlib import Path
import sqlite3

import pytest

from bugfixbot.models import ALREADY_FIXED_REVISION, FixTask, HandledItem, SessionState
from bugfixbot.state import (
    InMemoryStateBackend,
    SqliteStateBackend,
    StateStore,
    comment_key,
    ensure_state_dir,
)


def _task(comment_id: int, revision: str | None = "rev1") -> FixTask:
    return FixTask(
        comment_id=comment_id,
        file_path="src/app.py",
        line_start=3,
        line_end=3,
        body="Null check missing",
        created_at="2024-01-01T00:00:00Z",
        source_revision=revision,
    )


def _sqlite_store(tmp_path: Path) -> StateStore:
    return StateStore(SqliteStateBackend(tmp_path / ".bugfixbot" / "state.db"))


def test_comment_key_uses_none_placeholder() -> None:
    assert comment_key(7, "abc") == "7-abc"
    assert comment_key(7, None) == "7-none"


def test_open_creates_and_persists_fresh_session(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)

    state = store.open(12)

    assert state.target_id == 12
    assert state.cycle_count == 0
    assert state.last_pushed_revision is None
    assert state.handled_items == {}
    assert state.started_at.endswith("Z")
    assert (tmp_path / ".bugfixbot" / ".gitignore").read_text(encoding="utf-8") == "*\n"
    assert store.load() == state


def test_state_survives_reopen_for_same_target(tmp_path: Path) -> None:
    with _sqlite_store(tmp_path) as store:
        store.open(12)
        assert store.increment_cycle() == 1
        store.mark_handled([_task(1), _task(2, None)], "deadbeef")

    with _sqlite_store(tmp_path) as reopened:
        state = reopened.open(12)

    assert state.cycle_count == 1
    assert state.last_pushed_revision == "deadbeef"
    assert set(state.handled_items) == {"1-rev1", "2-none"}
    assert state.handled_items["1-rev1"].revision == "deadbeef"
    assert reopened.is_handled(1, "rev1") is True
    assert reopened.is_handled(1, "rev2") is False


def test_open_for_different_target_resets_session(tmp_path: Path) -> None:
    with _sqlite_store(tmp_path) as store:
        store.open(12)
        store.increment_cycle()
        store.mark_handled([_task(1)], "deadbeef")

    with _sqlite_store(tmp_path) as store:
        state = store.open(13)

    assert state.target_id == 13
    assert state.cycle_count == 0
    assert state.handled_items == {}
    assert state.last_pushed_revision is None


def test_already_fixed_sentinel_does_not_move_last_pushed(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.open(5)
    store.mark_handled([_task(1)], "cafe")
    store.mark_handled([_task(2)], ALREADY_FIXED_REVISION)

    state = store.load()
    assert state is not None
    assert state.last_pushed_revision == "cafe"
    assert state.handled_items["2-rev1"].revision == ALREADY_FIXED_REVISION


def test_clear_removes_session(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.open(5)

    store.clear()

    assert store.load() is None
    with pytest.raises(RuntimeError, match="open"):
        _ = store.state


def test_clear_without_database_is_noop(tmp_path: Path) -> None:
    store = StateStore.for_directory(tmp_path)
    store.clear()
    assert not (tmp_path / ".bugfixbot" / "state.db").exists()


def test_load_missing_database_returns_none(tmp_path: Path) -> None:
    assert StateStore.for_directory(tmp_path).load() is None


def test_corrupt_database_is_quarantined(tmp_path: Path) -> None:
    db_path = ensure_state_dir(tmp_path / ".bugfixbot") / "state.db"
    db_path.write_bytes(b"this is not a sqlite database at all" * 100)
    store = StateStore(SqliteStateBackend(db_path))

    state = store.open(3)

    assert state.target_id == 3
    assert state.cycle_count == 0
    assert (tmp_path / ".bugfixbot" / "state.db.corrupt").exists()
    assert store.load() == state


def test_unreadable_row_is_treated_as_absent(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.open(3)
    conn = sqlite3.connect(tmp_path / ".bugfixbot" / "state.db")
    try:
        conn.execute("UPDATE session_state SET handled_items = 'not json' WHERE id = 1")
        conn.commit()
    finally:
        conn.close()

    assert store.load() is None


def test_mutations_before_open_raise() -> None:
    store = StateStore(InMemoryStateBackend())

    with pytest.raises(RuntimeError, match="open"):
        store.increment_cycle()
    with pytest.raises(RuntimeError, match="open"):
        store.mark_handled([_task(1)], "abc")


def test_every_mutation_persists_before_returning() -> None:
    backend = InMemoryStateBackend()
    store = StateStore(backend)

    store.open(9)
    assert backend.save_count == 1
    store.increment_cycle()
    assert backend.save_count == 2
    store.mark_handled([_task(1)], "abc")
    assert backend.save_count == 3

    stored = backend.load()
    assert stored is not None
    assert stored.cycle_count == 1
    assert "1-rev1" in stored.handled_items


def test_in_memory_backend_returns_copies() -> None:
    initial = SessionState(
        target_id=1,
        cycle_count=2,
        last_pushed_revision="abc",
        started_at="t",
        handled_items={"1-abc": HandledItem(revision="abc", handled_at="t")},
    )
    backend = InMemoryStateBackend(initial)

    loaded = backend.load()
    assert loaded is not None
    loaded.handled_items.clear()

    again = backend.load()
    assert again is not None
    assert len(again.handled_items) == 1


def test_persist_replaces_current_state() -> None:
    backend = InMemoryStateBackend()
    store = StateStore(backend)
    store.open(1)
    replacement = SessionState(
        target_id=1, cycle_count=4, last_pushed_revision="f00", started_at="t"
    )

    store.persist(replacement)

    assert store.state.cycle_count == 4
    stored = backend.load()
    assert stored is not None
    assert stored.last_pushed_revision == "f00"


class FailingSaveBackend(InMemoryStateBackend):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def save(self, state: SessionState) -> None:
        if self.fail:
            raise sqlite3.OperationalError("disk I/O error")
        super().save(state)


def test_failed_save_leaves_session_unchanged() -> None:
    backend = FailingSaveBackend()
    store = StateStore(backend)
    store.open(4)
    backend.fail = True

    with pytest.raises(sqlite3.OperationalError):
        store.increment_cycle()
    with pytest.raises(sqlite3.OperationalError):
        store.mark_handled([_task(1)], "abc")

    assert store.state.cycle_count == 0
    assert store.state.handled_items == {}
    assert store.state.last_pushed_revision is None
    assert store.is_handled(1, "rev1") is False
