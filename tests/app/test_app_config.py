import json
import os
import shutil
import unittest
from pathlib import Path
from unittest.mock import patch
from uuid import uuid4

from agent_session_core.app_config import CONFIG_ENV_VAR, _to_bool, load_json_config, parse_app_config

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class AppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})
        self.assertEqual("INFO", app.log_level)
        self.assertIsNone(app.log_consumers)
        self.assertEqual([], app.log_debug_components)
        self.assertEqual(".agent_session/session.db", app.db_path)
        self.assertEqual(16, app.batch_interval_ms)
        self.assertEqual(500, app.max_buffer_size)
        self.assertEqual(30, app.spawn_timeout_seconds)
        self.assertEqual(60, app.response_timeout_seconds)
        self.assertEqual(0.5, app.stop_grace_seconds)
        self.assertFalse(app.strict_mode)
        self.assertTrue(app.snapshots_enabled)
        self.assertEqual("claude", app.agent)

    def test_overrides(self) -> None:
        app = parse_app_config(
            {
                "StrictMode": "yes",
                "SnapshotsEnabled": "off",
                "MaxBufferSize": "50",
                "Agent": " Codex ",
                "LogDebugComponents": ["Router", "store"],
            }
        )
        self.assertTrue(app.strict_mode)
        self.assertFalse(app.snapshots_enabled)
        self.assertEqual(50, app.max_buffer_size)
        self.assertEqual("codex", app.agent)
        self.assertEqual(["router", "store"], app.log_debug_components)

    def test_to_bool(self) -> None:
        self.assertTrue(_to_bool("1"))
        self.assertFalse(_to_bool("no"))
        self.assertTrue(_to_bool(None, default=True))
        self.assertTrue(_to_bool(3))

    def test_config_path_from_environment(self) -> None:
        tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"appconfig-{uuid4().hex}"
        tmp_dir.mkdir(parents=True, exist_ok=True)
        try:
            path = tmp_dir / "alt.json"
            path.write_text(json.dumps({"LogLevel": "DEBUG"}))
            with patch.dict(os.environ, {CONFIG_ENV_VAR: str(path)}):
                self.assertEqual({"LogLevel": "DEBUG"}, load_json_config())
            with patch.dict(os.environ, {CONFIG_ENV_VAR: str(tmp_dir / "missing.json")}):
                self.assertEqual({}, load_json_config())
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
