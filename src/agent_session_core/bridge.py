from __future__ import annotations

import sqlite3
from typing import Callable, Protocol, runtime_checkable
from uuid import uuid4

from loguru import logger

from agent_session_core.errors import BridgeError
from agent_session_core.models import Run, utc_now
from agent_session_core.storage.run_store import RunStore


@runtime_checkable
class AgentBridge(Protocol):
    """Process control surface the session lifecycle drives."""

    async def get_run(self, run_id: str) -> Run: ...

    async def start_run(
        self,
        prompt: str,
        cwd: str,
        *,
        agent: str = "claude",
        model: str | None = None,
        remote_host_name: str | None = None,
        platform_id: str | None = None,
    ) -> Run: ...

    async def start_session(
        self,
        run_id: str,
        *,
        mode: str | None = None,
        session_id: str | None = None,
        initial_message: str | None = None,
        attachments: list[dict] | None = None,
        platform_id: str | None = None,
    ) -> None: ...

    async def send_session_message(self, run_id: str, text: str, attachments: list[dict] | None = None) -> None: ...

    async def send_session_control(self, run_id: str, control: str, payload: dict | None = None) -> None: ...

    async def stop_session(self, run_id: str) -> None: ...

    async def stop_run(self, run_id: str) -> None: ...

    async def fork_session(self, run_id: str) -> str: ...

    async def get_bus_events(self, run_id: str) -> list[dict]: ...


class LocalAgentBridge:
    """AgentBridge over a RunStore that never spawns a process.

    Every call is appended to ``requests`` and status changes are written to the
    store. Events the bridge produces itself (echoed user messages, the stopped
    state) are persisted and, when ``emit`` is set, pushed to it as bus events.
    """

    def __init__(self, runs: RunStore, *, emit: Callable[[dict], None] | None = None):
        self._runs = runs
        self._emit = emit
        self.requests: list[tuple[str, str, dict]] = []
        self._alive: set[str] = set()

    def is_alive(self, run_id: str) -> bool:
        return run_id in self._alive

    async def get_run(self, run_id: str) -> Run:
        run = self._call(lambda: self._runs.get_run(run_id))
        if run is None:
            raise BridgeError(f"Run does not exist: {run_id}")
        return run

    async def start_run(
        self,
        prompt: str,
        cwd: str,
        *,
        agent: str = "claude",
        model: str | None = None,
        remote_host_name: str | None = None,
        platform_id: str | None = None,
    ) -> Run:
        run = self._call(
            lambda: self._runs.create_run(
                prompt,
                cwd,
                agent,
                model=model,
                remote_host_name=remote_host_name,
                platform_id=platform_id,
            )
        )
        self._record("start_run", run.id, prompt=prompt, cwd=cwd, agent=agent)
        return run

    async def start_session(
        self,
        run_id: str,
        *,
        mode: str | None = None,
        session_id: str | None = None,
        initial_message: str | None = None,
        attachments: list[dict] | None = None,
        platform_id: str | None = None,
    ) -> None:
        await self.get_run(run_id)
        self._record("start_session", run_id, mode=mode, session_id=session_id, initial_message=initial_message)
        if session_id:
            self._call(lambda: self._runs.update_session_id(run_id, session_id))
        self._call(lambda: self._runs.update_status(run_id, "running"))
        self._alive.add(run_id)
        if initial_message:
            self._publish(run_id, {"type": "user_message", "text": initial_message, "attachments": attachments})

    async def send_session_message(self, run_id: str, text: str, attachments: list[dict] | None = None) -> None:
        self._require_alive(run_id, "send_session_message")
        self._record("send_session_message", run_id, text=text)
        self._publish(run_id, {"type": "user_message", "text": text, "attachments": attachments})

    async def send_session_control(self, run_id: str, control: str, payload: dict | None = None) -> None:
        self._require_alive(run_id, control)
        self._record("send_session_control", run_id, control=control, **(payload or {}))

    async def stop_session(self, run_id: str) -> None:
        self._record("stop_session", run_id)
        self._alive.discard(run_id)
        self._call(lambda: self._runs.update_status(run_id, "stopped"))
        self._publish(run_id, {"type": "run_state", "state": "stopped"})

    async def stop_run(self, run_id: str) -> None:
        self._record("stop_run", run_id)
        self._alive.discard(run_id)
        self._call(lambda: self._runs.update_status(run_id, "stopped"))

    async def fork_session(self, run_id: str) -> str:
        self._record("fork_session", run_id)
        fork = self._call(lambda: self._runs.fork_run(run_id, str(uuid4())))
        self._alive.add(fork.id)
        logger.info(f"Forked run {run_id} -> {fork.id}")
        return fork.id

    async def get_bus_events(self, run_id: str) -> list[dict]:
        return self._call(lambda: self._runs.load_events(run_id))

    def _require_alive(self, run_id: str, action: str) -> None:
        if run_id not in self._alive:
            raise BridgeError(f"No live session for run {run_id} ({action})")

    def _record(self, action: str, run_id: str, **details) -> None:
        logger.debug(f"Bridge {action} run={run_id}")
        self.requests.append((action, run_id, details))

    def _publish(self, run_id: str, event: dict) -> None:
        event = {"run_id": run_id, "ts": utc_now(), **event}
        self._call(lambda: self._runs.append_event(run_id, event))
        if self._emit is not None:
            self._emit(event)

    @staticmethod
    def _call(operation):
        try:
            return operation()
        except (sqlite3.Error, ValueError) as ex:
            raise BridgeError(str(ex)) from ex
