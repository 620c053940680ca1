from __future__ import annotations

from enum import Enum

from loguru import logger


class SessionPhase(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    SPAWNING = "spawning"
    RUNNING = "running"
    IDLE = "idle"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


ACTIVE_PHASES = frozenset({SessionPhase.SPAWNING, SessionPhase.RUNNING})
TERMINAL_PHASES = frozenset({SessionPhase.COMPLETED, SessionPhase.FAILED, SessionPhase.STOPPED})
SESSION_ALIVE_PHASES = frozenset({SessionPhase.SPAWNING, SessionPhase.RUNNING, SessionPhase.IDLE})
SENDABLE_PHASES = frozenset({SessionPhase.EMPTY, SessionPhase.READY, SessionPhase.IDLE})

TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "stopped", "error"})

_AFTER_TERMINAL = frozenset({SessionPhase.EMPTY, SessionPhase.LOADING, SessionPhase.SPAWNING, SessionPhase.READY})

VALID_TRANSITIONS: dict[SessionPhase, frozenset[SessionPhase]] = {
    SessionPhase.EMPTY: frozenset({SessionPhase.LOADING, SessionPhase.READY, SessionPhase.SPAWNING}),
    SessionPhase.LOADING: frozenset(
        {
            SessionPhase.READY,
            SessionPhase.RUNNING,
            SessionPhase.COMPLETED,
            SessionPhase.FAILED,
            SessionPhase.STOPPED,
            SessionPhase.EMPTY,
        }
    ),
    SessionPhase.READY: frozenset(
        {SessionPhase.SPAWNING, SessionPhase.RUNNING, SessionPhase.EMPTY, SessionPhase.LOADING}
    ),
    SessionPhase.SPAWNING: frozenset(
        {
            SessionPhase.RUNNING,
            SessionPhase.FAILED,
            SessionPhase.STOPPED,
            SessionPhase.IDLE,
            SessionPhase.EMPTY,
            SessionPhase.LOADING,
        }
    ),
    SessionPhase.RUNNING: frozenset(
        {
            SessionPhase.IDLE,
            SessionPhase.COMPLETED,
            SessionPhase.FAILED,
            SessionPhase.STOPPED,
            SessionPhase.EMPTY,
            SessionPhase.LOADING,
        }
    ),
    SessionPhase.IDLE: frozenset(
        {
            SessionPhase.RUNNING,
            SessionPhase.SPAWNING,
            SessionPhase.COMPLETED,
            SessionPhase.FAILED,
            SessionPhase.STOPPED,
            SessionPhase.EMPTY,
            SessionPhase.LOADING,
        }
    ),
    SessionPhase.COMPLETED: _AFTER_TERMINAL,
    SessionPhase.FAILED: _AFTER_TERMINAL,
    SessionPhase.STOPPED: _AFTER_TERMINAL,
}


def is_valid_transition(source: SessionPhase, target: SessionPhase) -> bool:
    if source == target:
        return True
    return target in VALID_TRANSITIONS.get(source, frozenset())


def assert_transition(source: SessionPhase, target: SessionPhase) -> bool:
    """Warn on a phase move the transition table does not allow.

    Never raises: the caller applies the target phase regardless, so a protocol
    surprise cannot leave the session stuck. Returns whether the move was legal.
    """
    if source == target:
        return True
    if target in VALID_TRANSITIONS.get(source, frozenset()):
        return True
    logger.warning(f"Invalid phase transition: {source.value} -> {target.value}")
    return False


def phase_for_run_status(status: str) -> SessionPhase:
    """Initial phase for a freshly loaded run."""
    if status == "running":
        return SessionPhase.RUNNING
    if status in ("completed", "failed", "stopped"):
        return SessionPhase(status)
    return SessionPhase.READY
