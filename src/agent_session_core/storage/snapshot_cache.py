from __future__ import annotations

import sqlite3

from loguru import logger
from tenacity import retry

from agent_session_core.models import utc_now
from agent_session_core.storage.store import SNAPSHOT_VERSION, WRITE_RETRY_KWARGS, DataStore


class SnapshotCache:
    """Serialized reducer state for terminated runs, keyed by (run id, status).

    Every failure degrades to a cache miss; callers fall back to replaying the
    event log.
    """

    def __init__(self, store: DataStore, *, enabled: bool = True):
        self._store = store
        self._enabled = enabled

    async def read(self, run_id: str, expected_status: str) -> str | None:
        if not self._enabled:
            return None
        try:
            row = self._store.execute(
                "SELECT status, version, body FROM snapshots WHERE run_id = ? LIMIT 1",
                (run_id,),
            ).fetchone()
        except sqlite3.Error as ex:
            logger.warning(f"Snapshot read failed for {run_id}: {ex}")
            return None
        if row is None:
            return None
        if int(row["version"]) != SNAPSHOT_VERSION or row["status"] != expected_status:
            logger.debug(
                f"Stale snapshot for {run_id} (version={row['version']}, status={row['status']}), discarding"
            )
            await self.delete(run_id)
            return None
        return str(row["body"])

    async def write(self, run_id: str, status: str, body: str) -> bool:
        if not self._enabled:
            return False
        try:
            self._write(run_id, status, body)
        except sqlite3.Error as ex:
            logger.warning(f"Snapshot write failed for {run_id}: {ex}")
            return False
        logger.debug(f"Snapshot saved for {run_id} ({status}, {len(body)} bytes)")
        return True

    async def delete(self, run_id: str) -> None:
        try:
            self._delete(run_id)
        except sqlite3.Error as ex:
            logger.warning(f"Snapshot delete failed for {run_id}: {ex}")

    @retry(**WRITE_RETRY_KWARGS)
    def _write(self, run_id: str, status: str, body: str) -> None:
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO snapshots (run_id, status, version, body, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status = excluded.status,
                    version = excluded.version,
                    body = excluded.body,
                    created_at = excluded.created_at
                """,
                (run_id, status, SNAPSHOT_VERSION, body, utc_now()),
            )

    @retry(**WRITE_RETRY_KWARGS)
    def _delete(self, run_id: str) -> None:
        with self._store.transaction():
            self._store.execute("DELETE FROM snapshots WHERE run_id = ?", (run_id,))
