from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

SNAPSHOT_VERSION = 1


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying storage write in {wait:.2f}s (attempt {attempt}/4)...")


# Busy or locked databases clear up quickly; anything else is re-raised.
WRITE_RETRY_KWARGS: dict = {
    "retry": retry_if_exception_type(sqlite3.OperationalError),
    "wait": wait_exponential(multiplier=0.05, min=0.05, max=1),
    "stop": stop_after_attempt(4),
    "before_sleep": _on_retry,
    "reraise": True,
}


class DataStore:
    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except Exception:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                parent_run_id TEXT NULL REFERENCES runs(id) ON DELETE SET NULL,
                status TEXT NOT NULL,
                agent TEXT NOT NULL,
                cwd TEXT NOT NULL DEFAULT '',
                prompt TEXT NOT NULL DEFAULT '',
                session_id TEXT NULL,
                model TEXT NULL,
                remote_host_name TEXT NULL,
                platform_id TEXT NULL,
                error_message TEXT NULL,
                result_subtype TEXT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
                run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (run_id, seq)
            );

            CREATE TABLE IF NOT EXISTS snapshots (
                run_id TEXT PRIMARY KEY REFERENCES runs(id) ON DELETE CASCADE,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                body TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_runs_started
                ON runs(started_at);
            CREATE INDEX IF NOT EXISTS idx_events_run_type
                ON events(run_id, type);
            """
        )
        self._conn.commit()
