from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from agent_session_core.app_config import AppConfig
from agent_session_core.bridge import LocalAgentBridge
from agent_session_core.logging_config import setup_logging
from agent_session_core.router import BUS_EVENT, EventRouter
from agent_session_core.session_store import SessionStore
from agent_session_core.storage import DataStore, RunStore, SnapshotCache
from agent_session_core.transport import InMemoryTransport


@dataclass
class AppRuntime:
    store: DataStore
    runs: RunStore
    snapshots: SnapshotCache
    transport: InMemoryTransport
    bridge: LocalAgentBridge
    router: EventRouter
    session: SessionStore
    log_descriptions: list[str]

    async def shutdown(self) -> None:
        await self.session.aclose()
        self.router.destroy()
        self.store.close()


async def bootstrap_runtime(app: AppConfig, *, configure_logging: bool = True) -> AppRuntime:
    log_descriptions = (
        setup_logging(level=app.log_level, consumers=app.log_consumers, debug_components=app.log_debug_components)
        if configure_logging
        else []
    )

    db_path = app.db_path
    if db_path != ":memory:":
        path = Path(db_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        db_path = str(path)
    store = DataStore(db_path)
    runs = RunStore(store)
    snapshots = SnapshotCache(store, enabled=app.snapshots_enabled)

    transport = InMemoryTransport()
    router = EventRouter(
        transport,
        batch_interval_ms=app.batch_interval_ms,
        max_buffer_size=app.max_buffer_size,
    )
    await router.start()
    bridge = LocalAgentBridge(runs, emit=lambda event: transport.emit(BUS_EVENT, event))

    session = SessionStore(
        bridge,
        router=router,
        snapshots=snapshots,
        spawn_timeout_seconds=app.spawn_timeout_seconds,
        response_timeout_seconds=app.response_timeout_seconds,
        stop_grace_seconds=app.stop_grace_seconds,
        strict_mode=app.strict_mode,
    )
    session.state.agent = app.agent

    return AppRuntime(
        store=store,
        runs=runs,
        snapshots=snapshots,
        transport=transport,
        bridge=bridge,
        router=router,
        session=session,
        log_descriptions=log_descriptions,
    )
