from __future__ import annotations

import json
from dataclasses import fields
from uuid import uuid4

from tenacity import retry

from agent_session_core.models import Run, utc_now
from agent_session_core.storage.store import WRITE_RETRY_KWARGS, DataStore

_RUN_COLUMNS = tuple(f.name for f in fields(Run))
_TERMINAL_STATUSES = ("completed", "failed", "stopped")


class RunStore:
    def __init__(self, store: DataStore):
        self._store = store

    def get_run(self, run_id: str) -> Run | None:
        row = self._store.execute("SELECT * FROM runs WHERE id = ? LIMIT 1", (run_id,)).fetchone()
        if row is None:
            return None
        return Run.from_dict(dict(row))

    def list_runs(self, *, limit: int = 50) -> list[Run]:
        rows = self._store.execute(
            "SELECT * FROM runs ORDER BY started_at DESC, id DESC LIMIT ?",
            (max(1, limit),),
        ).fetchall()
        return [Run.from_dict(dict(row)) for row in rows]

    @retry(**WRITE_RETRY_KWARGS)
    def create_run(
        self,
        prompt: str,
        cwd: str,
        agent: str = "claude",
        *,
        run_id: str | None = None,
        model: str | None = None,
        session_id: str | None = None,
        remote_host_name: str | None = None,
        platform_id: str | None = None,
        parent_run_id: str | None = None,
        status: str = "pending",
    ) -> Run:
        run = Run(
            id=run_id or str(uuid4()),
            status=status,
            agent=agent,
            cwd=cwd,
            prompt=prompt,
            session_id=session_id,
            model=model,
            remote_host_name=remote_host_name,
            platform_id=platform_id,
            parent_run_id=parent_run_id,
            started_at=utc_now(),
        )
        data = run.to_dict()
        placeholders = ", ".join("?" for _ in _RUN_COLUMNS)
        with self._store.transaction():
            self._store.execute(
                f"INSERT INTO runs ({', '.join(_RUN_COLUMNS)}) VALUES ({placeholders})",
                tuple(data[name] for name in _RUN_COLUMNS),
            )
        return run

    @retry(**WRITE_RETRY_KWARGS)
    def update_status(
        self,
        run_id: str,
        status: str,
        *,
        error_message: str | None = None,
        result_subtype: str | None = None,
    ) -> None:
        ended_at = utc_now() if status in _TERMINAL_STATUSES else None
        with self._store.transaction():
            cursor = self._store.execute(
                """
                UPDATE runs
                SET status = ?,
                    error_message = COALESCE(?, error_message),
                    result_subtype = COALESCE(?, result_subtype),
                    ended_at = COALESCE(?, ended_at)
                WHERE id = ?
                """,
                (status, error_message, result_subtype, ended_at, run_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Run does not exist: {run_id}")

    @retry(**WRITE_RETRY_KWARGS)
    def update_session_id(self, run_id: str, session_id: str) -> None:
        with self._store.transaction():
            self._store.execute("UPDATE runs SET session_id = ? WHERE id = ?", (session_id, run_id))

    @retry(**WRITE_RETRY_KWARGS)
    def update_model(self, run_id: str, model: str | None) -> None:
        with self._store.transaction():
            self._store.execute("UPDATE runs SET model = ? WHERE id = ?", (model, run_id))

    @retry(**WRITE_RETRY_KWARGS)
    def append_events(self, run_id: str, events: list[dict]) -> int:
        """Append events to a run's log. Returns the sequence number of the last one."""
        if not events:
            return self._max_seq(run_id)
        next_seq = self._max_seq(run_id) + 1
        now = utc_now()
        params: list[tuple] = []
        for offset, event in enumerate(events):
            payload = {**event, "run_id": run_id}
            params.append(
                (run_id, next_seq + offset, str(event.get("type", "")), json.dumps(payload, ensure_ascii=True), now)
            )
        with self._store.transaction():
            self._store.executemany(
                """
                INSERT INTO events (run_id, seq, type, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                params,
            )
        return next_seq + len(events) - 1

    def append_event(self, run_id: str, event: dict) -> int:
        return self.append_events(run_id, [event])

    def load_events(self, run_id: str) -> list[dict]:
        rows = self._store.execute(
            "SELECT payload_json FROM events WHERE run_id = ? ORDER BY seq ASC",
            (run_id,),
        ).fetchall()
        return [json.loads(row["payload_json"]) for row in rows]

    def count_events(self, run_id: str) -> int:
        row = self._store.execute("SELECT COUNT(*) AS c FROM events WHERE run_id = ?", (run_id,)).fetchone()
        return int(row["c"]) if row is not None else 0

    def fork_run(self, source_run_id: str, new_run_id: str | None = None) -> Run:
        """Copy a run and its event log under a new id linked to the source.

        Copied events are re-tagged with the new run id so they route to the fork.
        """
        source = self.get_run(source_run_id)
        if source is None:
            raise ValueError(f"Run does not exist: {source_run_id}")

        fork = self.create_run(
            source.prompt,
            source.cwd,
            source.agent,
            run_id=new_run_id,
            model=source.model,
            session_id=source.session_id,
            remote_host_name=source.remote_host_name,
            platform_id=source.platform_id,
            parent_run_id=source_run_id,
            status="idle",
        )
        rows = self._store.execute(
            "SELECT seq, type, payload_json, created_at FROM events WHERE run_id = ? ORDER BY seq ASC",
            (source_run_id,),
        ).fetchall()
        if rows:
            params: list[tuple] = []
            for row in rows:
                payload = json.loads(row["payload_json"])
                payload["run_id"] = fork.id
                params.append(
                    (fork.id, row["seq"], row["type"], json.dumps(payload, ensure_ascii=True), row["created_at"])
                )
            with self._store.transaction():
                self._store.executemany(
                    """
                    INSERT INTO events (run_id, seq, type, payload_json, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    params,
                )
        return fork

    def _max_seq(self, run_id: str) -> int:
        row = self._store.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM events WHERE run_id = ?",
            (run_id,),
        ).fetchone()
        return int(row["max_seq"])
