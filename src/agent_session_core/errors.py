from __future__ import annotations

import re
from dataclasses import dataclass

from agent_session_core.models import Run
from agent_session_core.phase import ACTIVE_PHASES, TERMINAL_PHASES, SessionPhase


class SessionError(Exception):
    pass


class StrictModeError(SessionError):
    """Raised instead of recovering from a reducer anomaly when strict mode is on."""


class ResumeError(SessionError):
    pass


class BridgeError(SessionError):
    pass


CONTEXT_LIMIT = "context_limit"
BUDGET_LIMIT = "budget_limit"
AUTH_ISSUE = "auth_issue"
SERVER_ISSUE = "server_issue"
TOOL_ISSUE = "tool_issue"
UNKNOWN = "unknown"

_SETTINGS_LINK = "/settings"


@dataclass(frozen=True)
class ClassifiedError:
    category: str
    can_retry: bool
    can_fork: bool
    settings_link: str = ""


_CATEGORIES: dict[str, ClassifiedError] = {
    CONTEXT_LIMIT: ClassifiedError(CONTEXT_LIMIT, can_retry=False, can_fork=True),
    BUDGET_LIMIT: ClassifiedError(BUDGET_LIMIT, can_retry=False, can_fork=False, settings_link=_SETTINGS_LINK),
    AUTH_ISSUE: ClassifiedError(AUTH_ISSUE, can_retry=False, can_fork=False, settings_link=_SETTINGS_LINK),
    SERVER_ISSUE: ClassifiedError(SERVER_ISSUE, can_retry=True, can_fork=False),
    TOOL_ISSUE: ClassifiedError(TOOL_ISSUE, can_retry=False, can_fork=False),
    UNKNOWN: ClassifiedError(UNKNOWN, can_retry=True, can_fork=False),
}

# Checked in order; the first matching prefix wins.
_SUBTYPE_PREFIXES: list[tuple[tuple[str, ...], str]] = [
    (("error_input_too_long", "error_max_turns"), CONTEXT_LIMIT),
    (("error_max_budget",), BUDGET_LIMIT),
    (("error_api_key", "error_auth"), AUTH_ISSUE),
    (
        ("error_rate_limit", "error_overloaded", "error_model", "error_timeout", "error_network"),
        SERVER_ISSUE,
    ),
    (
        ("error_permission", "error_tool", "error_structured_output", "error_max_structured_output"),
        TOOL_ISSUE,
    ),
]

_MESSAGE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"input is too long|prompt is too long|too many tokens|context window|max_tokens|token limit", re.I),
        CONTEXT_LIMIT,
    ),
    (re.compile(r"budget|max_budget", re.I), BUDGET_LIMIT),
    (re.compile(r"api.?key|auth|401|403", re.I), AUTH_ISSUE),
    (re.compile(r"rate.?limit|overloaded|timeout|network|connection|60s", re.I), SERVER_ISSUE),
]


def classify_error(subtype: str | None = None, error_message: str | None = None) -> ClassifiedError:
    """Bucket an upstream failure by result subtype, falling back to the message text.

    Prefix matching on the subtype keeps future ``error_*`` variants in the right
    bucket without a code change.
    """
    s = (subtype or "").lower()
    for prefixes, category in _SUBTYPE_PREFIXES:
        if s.startswith(prefixes):
            return _CATEGORIES[category]
    if s.startswith("error_"):
        return _CATEGORIES[UNKNOWN]

    msg = error_message or ""
    for pattern, category in _MESSAGE_PATTERNS:
        if pattern.search(msg):
            return _CATEGORIES[category]
    return _CATEGORIES[UNKNOWN]


def get_resume_warning(run: Run | None) -> str | None:
    if run is None:
        return None
    subtype = run.result_subtype
    classified = classify_error(subtype, run.error_message)
    if classified.category == CONTEXT_LIMIT:
        return (
            "This session's context may be too large to resume. "
            "Consider using Fork instead, which starts a fresh context."
        )
    if classified.category == BUDGET_LIMIT:
        return (
            "This session hit the budget limit. Resuming will continue spending. "
            "Consider adjusting max_budget_usd in settings."
        )
    if classified.category == TOOL_ISSUE and (subtype or "").lower() == "error_max_structured_output_retries":
        return (
            "This session failed due to structured output validation retries. "
            "The JSON schema may need adjustment."
        )
    return None


def can_resume_run(run: Run | None, phase: SessionPhase, no_session_persistence: bool = False) -> bool:
    if run is None or not run.session_id:
        return False
    if no_session_persistence:
        return False
    if phase in ACTIVE_PHASES:
        return False
    return phase in TERMINAL_PHASES
