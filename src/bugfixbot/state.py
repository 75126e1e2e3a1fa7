from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sqlite3
import threading
from types import TracebackType

from bugfixbot.models import ALREADY_FIXED_REVISION, FixTask, HandledItem, SessionState
from bugfixbot.observability import log_event


LOGGER = logging.getLogger("bugfixbot.state")

STATE_DIRNAME = ".bugfixbot"
STATE_DB_FILENAME = "state.db"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def comment_key(comment_id: int, revision_id: str | None) -> str:
    return f"{comment_id}-{revision_id or 'none'}"


def default_state_dir(cwd: Path) -> Path:
    return cwd / STATE_DIRNAME


def ensure_state_dir(state_dir: Path) -> Path:
    """Create the state directory with a catch-all ``.gitignore``.

    The ignore file keeps the state out of ``git status`` so it never makes the
    working tree look dirty.
    """
    state_dir.mkdir(parents=True, exist_ok=True)
    gitignore = state_dir / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("*\n", encoding="utf-8")
    return state_dir


class StateBackend(ABC):
    @abstractmethod
    def load(self) -> SessionState | None:
        """Return the stored session, or None when absent or unreadable."""

    @abstractmethod
    def save(self, state: SessionState) -> None:
        """Replace the stored session atomically."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the stored session."""

    def close(self) -> None:
        return None


class InMemoryStateBackend(StateBackend):
    def __init__(self, initial: SessionState | None = None) -> None:
        self._stored = _copy_state(initial) if initial is not None else None
        self.save_count = 0

    def load(self) -> SessionState | None:
        if self._stored is None:
            return None
        return _copy_state(self._stored)

    def save(self, state: SessionState) -> None:
        self._stored = _copy_state(state)
        self.save_count += 1

    def delete(self) -> None:
        self._stored = None


class SqliteStateBackend(StateBackend):
    def __init__(
        self, db_path: Path, *, logger: logging.Logger | None = None
    ) -> None:
        self._db_path = db_path
        self._logger = logger or LOGGER
        self._schema_ready = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        if self._schema_ready:
            return
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS session_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                target_id INTEGER NOT NULL,
                cycle_count INTEGER NOT NULL,
                last_pushed_revision TEXT,
                started_at TEXT NOT NULL,
                handled_items TEXT NOT NULL,
                updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
            )
            """
        )
        self._schema_ready = True

    def load(self) -> SessionState | None:
        if not self._db_path.exists():
            return None
        try:
            with self._connect() as conn:
                self._init_schema(conn)
                row = conn.execute(
                    """
                    SELECT target_id, cycle_count, last_pushed_revision, started_at, handled_items
                    FROM session_state
                    WHERE id = 1
                    """
                ).fetchone()
        except sqlite3.DatabaseError as exc:
            self._quarantine(str(exc))
            return None
        if row is None:
            return None
        try:
            return _parse_row(row)
        except (TypeError, ValueError) as exc:
            log_event(
                self._logger,
                "state_record_unreadable",
                level=logging.WARNING,
                db_path=str(self._db_path),
                error=str(exc),
            )
            return None

    def save(self, state: SessionState) -> None:
        ensure_state_dir(self._db_path.parent)
        handled_json = json.dumps(
            {
                key: {"revision": item.revision, "handled_at": item.handled_at}
                for key, item in state.handled_items.items()
            },
            sort_keys=True,
        )
        with self._connect() as conn:
            self._init_schema(conn)
            conn.execute(
                """
                INSERT INTO session_state(
                    id, target_id, cycle_count, last_pushed_revision, started_at, handled_items
                )
                VALUES(1, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    target_id=excluded.target_id,
                    cycle_count=excluded.cycle_count,
                    last_pushed_revision=excluded.last_pushed_revision,
                    started_at=excluded.started_at,
                    handled_items=excluded.handled_items,
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (
                    state.target_id,
                    state.cycle_count,
                    state.last_pushed_revision,
                    state.started_at,
                    handled_json,
                ),
            )

    def delete(self) -> None:
        if not self._db_path.exists():
            return
        try:
            with self._connect() as conn:
                self._init_schema(conn)
                conn.execute("DELETE FROM session_state")
        except sqlite3.DatabaseError as exc:
            self._quarantine(str(exc))

    def _quarantine(self, error: str) -> None:
        corrupt_path = self._db_path.with_name(f"{self._db_path.name}.corrupt")
        log_event(
            self._logger,
            "state_db_corrupt",
            level=logging.WARNING,
            db_path=str(self._db_path),
            moved_to=str(corrupt_path),
            error=error,
        )
        self._db_path.replace(corrupt_path)
        for suffix in ("-wal", "-shm"):
            sidecar = self._db_path.with_name(f"{self._db_path.name}{suffix}")
            if sidecar.exists():
                sidecar.unlink()
        self._schema_ready = False


def _parse_row(row: tuple[object, ...]) -> SessionState:
    target_id, cycle_count, last_pushed_revision, started_at, handled_raw = row
    if not isinstance(target_id, int) or not isinstance(cycle_count, int):
        raise ValueError("target_id and cycle_count must be integers")
    if cycle_count < 0:
        raise ValueError("cycle_count must be >= 0")
    if not isinstance(started_at, str):
        raise ValueError("started_at must be a string")
    if last_pushed_revision is not None and not isinstance(last_pushed_revision, str):
        raise ValueError("last_pushed_revision must be a string")
    if not isinstance(handled_raw, str):
        raise ValueError("handled_items must be JSON text")
    payload = json.loads(handled_raw)
    if not isinstance(payload, dict):
        raise ValueError("handled_items must be a JSON object")
    handled: dict[str, HandledItem] = {}
    for key, value in payload.items():
        if not isinstance(value, dict):
            raise ValueError(f"handled item {key!r} must be an object")
        revision = value.get("revision")
        handled_at = value.get("handled_at")
        if not isinstance(revision, str) or not isinstance(handled_at, str):
            raise ValueError(f"handled item {key!r} is missing revision or handled_at")
        handled[key] = HandledItem(revision=revision, handled_at=handled_at)
    return SessionState(
        target_id=target_id,
        cycle_count=cycle_count,
        last_pushed_revision=last_pushed_revision,
        started_at=started_at,
        handled_items=handled,
    )


def _copy_state(state: SessionState) -> SessionState:
    return replace(state, handled_items=dict(state.handled_items))


def _fresh_state(target_id: int) -> SessionState:
    return SessionState(
        target_id=target_id,
        cycle_count=0,
        last_pushed_revision=None,
        started_at=_utc_now_iso(),
    )


class StateStore:
    """Durable session record for a single pull request.

    Every mutation persists before returning. One process per target id is
    assumed; nothing guards against a second writer.
    """

    def __init__(
        self, backend: StateBackend, *, logger: logging.Logger | None = None
    ) -> None:
        self._backend = backend
        self._logger = logger or LOGGER
        self._lock = threading.Lock()
        self._state: SessionState | None = None

    @classmethod
    def for_directory(
        cls, cwd: Path, *, logger: logging.Logger | None = None
    ) -> StateStore:
        db_path = default_state_dir(cwd) / STATE_DB_FILENAME
        return cls(SqliteStateBackend(db_path, logger=logger), logger=logger)

    def __enter__(self) -> StateStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def state(self) -> SessionState:
        return self._require_state()

    def open(self, target_id: int) -> SessionState:
        with self._lock:
            stored = self._backend.load()
            if stored is not None and stored.target_id == target_id:
                self._state = stored
                log_event(
                    self._logger,
                    "state_resumed",
                    target_id=target_id,
                    cycle_count=stored.cycle_count,
                    handled_count=len(stored.handled_items),
                )
                return stored
            if stored is not None:
                log_event(
                    self._logger,
                    "state_reset_for_new_target",
                    previous_target_id=stored.target_id,
                    target_id=target_id,
                )
            fresh = _fresh_state(target_id)
            self._backend.save(fresh)
            self._state = fresh
            return fresh

    def load(self) -> SessionState | None:
        """Read the stored session without creating or resetting it."""
        with self._lock:
            return self._backend.load()

    def persist(self, state: SessionState | None = None) -> None:
        with self._lock:
            target = state if state is not None else self._require_state()
            self._backend.save(target)
            self._state = target

    def is_handled(self, comment_id: int, revision_id: str | None) -> bool:
        return comment_key(comment_id, revision_id) in self._require_state().handled_items

    def mark_handled(self, tasks: Iterable[FixTask], revision_id: str) -> None:
        with self._lock:
            state = self._require_state()
            handled_at = _utc_now_iso()
            handled = dict(state.handled_items)
            count = 0
            for task in tasks:
                key = comment_key(task.comment_id, task.source_revision)
                handled[key] = HandledItem(revision=revision_id, handled_at=handled_at)
                count += 1
            updated = replace(state, handled_items=handled)
            if revision_id != ALREADY_FIXED_REVISION:
                updated.last_pushed_revision = revision_id
            self._backend.save(updated)
            self._state = updated
        log_event(self._logger, "tasks_marked_handled", count=count, revision=revision_id)

    def increment_cycle(self) -> int:
        with self._lock:
            state = self._require_state()
            updated = replace(state, cycle_count=state.cycle_count + 1)
            self._backend.save(updated)
            self._state = updated
            return updated.cycle_count

    def clear(self) -> None:
        with self._lock:
            self._backend.delete()
            self._state = None
        log_event(self._logger, "state_cleared")

    def close(self) -> None:
        self._backend.close()

    def _require_state(self) -> SessionState:
        if self._state is None:
            raise RuntimeError("StateStore.open() must be called before use")
        return self._state
