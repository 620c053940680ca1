import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from agent_session_core.storage import DataStore, RunStore, SnapshotCache


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class DataStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = DataStore(str(self._tmp_dir / "session.db"))
        self._runs = RunStore(self._store)
        self._snapshots = SnapshotCache(self._store)

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)
