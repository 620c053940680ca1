import shutil
import unittest
from pathlib import Path
from types import SimpleNamespace
from uuid import uuid4

from loguru import logger

from agent_session_core.logging_config import ComponentFilter, component_of, setup_logging

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _record(level_no: int, component: str) -> dict:
    return {"level": SimpleNamespace(no=level_no), "extra": {"component": component}}


class LoggingConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"logging-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def tearDown(self) -> None:
        logger.remove()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def test_component_of_module(self) -> None:
        self.assertEqual("router", component_of("agent_session_core.router"))
        self.assertEqual("router", component_of("agent_session_core.transport"))
        self.assertEqual("store", component_of("agent_session_core.session_store"))
        self.assertEqual("storage", component_of("agent_session_core.storage.run_store"))
        self.assertEqual("app", component_of("agent_session_core.routerless"))
        self.assertEqual("app", component_of(None))

    def test_filter_lets_debug_through_for_named_components(self) -> None:
        check = ComponentFilter("INFO", ["router"])

        self.assertTrue(check(_record(10, "router")))
        self.assertFalse(check(_record(10, "reducer")))
        self.assertTrue(check(_record(20, "reducer")))
        self.assertFalse(check(_record(5, "router")))

    def test_file_consumer_writes_component_debug_lines(self) -> None:
        path = self._tmp_dir / "session.log"
        descriptions = setup_logging(
            level="INFO",
            consumers=[{"type": "file", "path": str(path)}],
            debug_components=["router"],
        )

        logger.bind(component="router").debug("flushed 3 events")
        logger.bind(component="reducer").debug("applied batch")
        logger.info("loaded run r1")
        logger.remove()

        text = path.read_text(encoding="utf-8")
        self.assertEqual([f"file ({path}, INFO, debug: router)"], descriptions)
        self.assertIn("router  | ", text)
        self.assertIn("flushed 3 events", text)
        self.assertNotIn("applied batch", text)
        self.assertIn("loaded run r1", text)

    def test_consumer_debug_list_overrides_global_one(self) -> None:
        path = self._tmp_dir / "store.log"
        setup_logging(
            level="WARNING",
            consumers=[{"type": "file", "path": str(path), "debug": ["store", "nonsense"]}],
            debug_components=["router"],
        )

        logger.bind(component="store").debug("spawn timer armed")
        logger.bind(component="router").debug("buffered")
        logger.remove()

        text = path.read_text(encoding="utf-8")
        self.assertIn("spawn timer armed", text)
        self.assertNotIn("buffered", text)

    def test_unknown_consumer_is_skipped(self) -> None:
        self.assertEqual([], setup_logging(consumers=[{"type": "syslog"}]))


if __name__ == "__main__":
    unittest.main()
