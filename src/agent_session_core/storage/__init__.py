from agent_session_core.storage.run_store import RunStore
from agent_session_core.storage.snapshot_cache import SnapshotCache
from agent_session_core.storage.store import DataStore

__all__ = [
    "DataStore",
    "RunStore",
    "SnapshotCache",
]
