from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

CONFIG_ENV_VAR = "AGENT_SESSION_CONFIG"


@dataclass
class AppConfig:
    log_level: str
    log_consumers: list | None
    log_debug_components: list[str]
    db_path: str
    batch_interval_ms: float
    max_buffer_size: int
    spawn_timeout_seconds: float
    response_timeout_seconds: float
    stop_grace_seconds: float
    strict_mode: bool
    snapshots_enabled: bool
    agent: str


def load_json_config() -> dict:
    """Read config.json from the working directory, or the file named by AGENT_SESSION_CONFIG."""
    override = os.environ.get(CONFIG_ENV_VAR)
    config_path = Path(override) if override else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        log_level=str(config.get("LogLevel", "INFO")),
        log_consumers=config.get("LogConsumers"),
        log_debug_components=[str(c).strip().lower() for c in config.get("LogDebugComponents") or []],
        db_path=str(config.get("DataDbPath", ".agent_session/session.db")),
        batch_interval_ms=float(config.get("BatchIntervalMs", 16)),
        max_buffer_size=int(config.get("MaxBufferSize", 500)),
        spawn_timeout_seconds=float(config.get("SpawnTimeoutSeconds", 30)),
        response_timeout_seconds=float(config.get("ResponseTimeoutSeconds", 60)),
        stop_grace_seconds=float(config.get("StopGraceSeconds", 0.5)),
        strict_mode=_to_bool(config.get("StrictMode"), default=False),
        snapshots_enabled=_to_bool(config.get("SnapshotsEnabled"), default=True),
        agent=str(config.get("Agent", "claude")).strip().lower(),
    )
