from __future__ import annotations

import copy
import json
import re
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Callable

from loguru import logger

from agent_session_core.errors import StrictModeError
from agent_session_core.models import (
    AssistantEntry,
    CommandOutputEntry,
    Run,
    SeparatorEntry,
    SessionMetadata,
    TaskNotification,
    TimelineEntry,
    ToolEntry,
    ToolState,
    ToolStatus,
    TurnUsage,
    UsageState,
    UserEntry,
    entry_from_dict,
    entry_to_dict,
    new_entry_id,
    timeline_attachments,
    utc_now,
)
from agent_session_core.phase import (
    ACTIVE_PHASES,
    SENDABLE_PHASES,
    SESSION_ALIVE_PHASES,
    TERMINAL_PHASES,
    TERMINAL_RUN_STATUSES,
    SessionPhase,
    assert_transition,
)
from agent_session_core.timeline import (
    append_stream_delta,
    append_to_parent,
    count_user_entries,
    finalize_tools,
    find_parent,
    find_tool_by_request,
    find_tool_in,
    last_user_entry,
    locate_tool,
    replace_stream_placeholder,
    resolve_statuses,
)
from agent_session_core.usage import add_hook_usage, merge_usage, turn_usage_from_event, usage_from_event

_RUN_STATE_PHASES: dict[str, SessionPhase] = {
    "spawning": SessionPhase.SPAWNING,
    "running": SessionPhase.RUNNING,
    "idle": SessionPhase.IDLE,
    "completed": SessionPhase.COMPLETED,
    "failed": SessionPhase.FAILED,
    "error": SessionPhase.FAILED,
    "stopped": SessionPhase.STOPPED,
}

_RAW_TIMELINE_SOURCES = frozenset({"claude_stdout_text", "claude_stderr"})
_FINISHED_TASK_STATUSES = frozenset({"completed", "failed", "error"})
_SLASH_COMMAND = re.compile(r"^/([a-z][\w-]*)(?:\s|$)", re.IGNORECASE)

StateObserver = Callable[["SessionState"], None]


def _event_ts(event: dict) -> str:
    return str(event.get("ts") or event.get("timestamp") or utc_now())


@dataclass
class SessionState:
    """Everything the reducer owns for the current run."""

    run: Run | None = None
    agent: str = "claude"
    phase: SessionPhase = SessionPhase.EMPTY
    error: str = ""
    is_timeout_error: bool = False
    model: str = ""
    timeline: list[TimelineEntry] = field(default_factory=list)
    streaming_text: str = ""
    thinking_text: str = ""
    usage: UsageState = field(default_factory=UsageState)
    turn_usages: list[TurnUsage] = field(default_factory=list)
    seen_message_ids: set[str] = field(default_factory=set)
    seen_tool_ids: set[str] = field(default_factory=set)
    tool_hooks: list[dict] = field(default_factory=list)
    meta: SessionMetadata = field(default_factory=SessionMetadata)


@dataclass
class ReduceContext:
    state: SessionState
    batch: bool = False
    replay_only: bool = False
    run_changes: dict = field(default_factory=dict)


def _working_copy(state: SessionState) -> SessionState:
    """Copy what a batch may edit.

    The run is shared and its changes are applied at commit. Messages, separators
    and command output are never edited once appended, so only tool entries (and
    the sub-timelines they own) are deep-copied.
    """
    return replace(
        state,
        timeline=[copy.deepcopy(entry) if isinstance(entry, ToolEntry) else entry for entry in state.timeline],
        usage=copy.deepcopy(state.usage),
        turn_usages=list(state.turn_usages),
        seen_message_ids=set(state.seen_message_ids),
        seen_tool_ids=set(state.seen_tool_ids),
        tool_hooks=copy.deepcopy(state.tool_hooks),
        meta=copy.deepcopy(state.meta),
    )


class SessionReducer:
    """Folds agent events into a single session view.

    ``apply_event`` mutates the authoritative state and publishes once per
    event. ``apply_event_batch`` folds into a working copy and commits once, so a
    long replay produces a single publication. The ``Run`` object keeps its
    identity across both paths. Observers registered with
    ``subscribe`` receive the committed state.
    """

    def __init__(self, *, strict_mode: bool = False):
        self.strict_mode = strict_mode
        self._state = SessionState()
        self._observers: list[StateObserver] = []
        self._stopping = False
        self._handlers: dict[str, Callable[[ReduceContext, dict], None]] = {
            "session_init": self._on_session_init,
            "message_delta": self._on_message_delta,
            "thinking_delta": self._on_thinking_delta,
            "message_complete": self._on_message_complete,
            "user_message": self._on_user_message,
            "tool_start": self._on_tool_start,
            "tool_input_delta": self._on_tool_input_delta,
            "tool_end": self._on_tool_end,
            "permission_prompt": self._on_permission_prompt,
            "permission_denied": self._on_permission_denied,
            "control_cancelled": self._on_control_cancelled,
            "run_state": self._on_run_state,
            "usage_update": self._on_usage_update,
            "compact_boundary": self._on_compact_boundary,
            "task_notification": self._on_task_notification,
            "command_output": self._on_command_output,
            "raw": self._on_raw,
            "system_status": self._on_system_status,
            "auth_status": self._on_auth_status,
            "hook_started": self._on_hook_started,
            "hook_progress": self._on_hook_progress,
            "hook_response": self._on_hook_response,
            "hook_callback": self._on_hook_callback,
            "files_persisted": self._on_files_persisted,
            "tool_progress": self._on_tool_progress,
            "tool_use_summary": self._on_tool_use_summary,
        }

    # -- state access --

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    @property
    def run(self) -> Run | None:
        return self._state.run

    @property
    def timeline(self) -> list[TimelineEntry]:
        return self._state.timeline

    @property
    def usage(self) -> UsageState:
        return self._state.usage

    @property
    def error(self) -> str:
        return self._state.error

    @property
    def meta(self) -> SessionMetadata:
        return self._state.meta

    def subscribe(self, observer: StateObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _publish(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self._state)
            except Exception as ex:
                logger.warning(f"State observer failed: {ex}")

    def set_run(self, run: Run | None) -> None:
        self._state.run = run
        if run is not None:
            self._state.agent = run.agent
        self._publish()

    # -- derived views --

    @property
    def is_running(self) -> bool:
        return self._state.phase in ACTIVE_PHASES

    @property
    def is_idle(self) -> bool:
        return self._state.phase == SessionPhase.IDLE

    @property
    def session_alive(self) -> bool:
        return self._state.phase in SESSION_ALIVE_PHASES

    @property
    def can_send(self) -> bool:
        return self._state.phase in SENDABLE_PHASES

    @property
    def uses_stream_session(self) -> bool:
        return self._state.agent == "claude"

    @property
    def active_tool_name(self) -> str:
        for entry in reversed(self._state.timeline):
            if isinstance(entry, ToolEntry) and entry.tool.status == ToolStatus.RUNNING:
                return entry.tool.tool_name
        return ""

    @property
    def is_thinking(self) -> bool:
        timeline = self._state.timeline
        last_is_assistant = bool(timeline) and isinstance(timeline[-1], AssistantEntry)
        return (
            self.is_running
            and not self._state.streaming_text
            and (not last_is_assistant or self.active_tool_name != "")
        )

    @property
    def thinking_duration_sec(self) -> int:
        meta = self._state.meta
        if not meta.thinking_started_at:
            return 0
        end = meta.thinking_ended_at or time.time()
        return int(end - meta.thinking_started_at)

    @property
    def total_tokens(self) -> int:
        u = self._state.usage
        return u.input_tokens + u.output_tokens + u.cache_read_tokens + u.cache_write_tokens

    @property
    def context_window(self) -> int:
        model_usage = self._state.usage.model_usage
        if not model_usage:
            return 0
        windows = [int(v.get("context_window") or 0) for v in model_usage.values() if isinstance(v, dict)]
        return max(windows, default=0)

    @property
    def context_utilization(self) -> float:
        window = self.context_window
        if window <= 0:
            return 0.0
        u = self._state.usage
        used = u.input_tokens + u.cache_read_tokens + u.cache_write_tokens
        if used <= 0:
            return 0.0
        return min(used / window, 1.0)

    @property
    def context_warning_level(self) -> str:
        utilization = self.context_utilization
        if utilization >= 0.9:
            return "critical"
        if utilization >= 0.75:
            return "high"
        if utilization >= 0.5:
            return "moderate"
        return "none"

    @property
    def active_background_tasks(self) -> list[TaskNotification]:
        return [
            item
            for item in self._state.meta.task_notifications.values()
            if item.status not in _FINISHED_TASK_STATUSES
        ]

    @property
    def has_background_tasks(self) -> bool:
        return bool(self._state.meta.task_notifications)

    @property
    def effective_cwd(self) -> str:
        run = self._state.run
        return self._state.meta.session_cwd or (run.cwd if run else "") or ""

    def is_known_slash_command(self, text: str) -> bool:
        """Whether ``text`` invokes a slash command rather than starting with a path."""
        match = _SLASH_COMMAND.match(text)
        if not match:
            return False
        name = match.group(1).lower()
        meta = self._state.meta
        if any(str(skill).lower() == name for skill in meta.available_skills):
            return True
        if meta.session_commands:
            for command in meta.session_commands:
                if str(command.get("name", "")).lower() == name:
                    return True
                if any(str(alias).lower() == name for alias in command.get("aliases") or []):
                    return True
            return False
        # No command list yet; the pattern already rejects paths like /home/user.
        logger.debug(f"Slash command {name!r} accepted without a command list")
        return True

    # -- hooks for the lifecycle layer --

    def _set_phase(self, target: SessionPhase) -> None:
        assert_transition(self._state.phase, target)
        self._state.phase = target

    def _cancel_response_timer(self) -> None:
        pass

    def _on_terminal_state(self) -> None:
        pass

    # -- application --

    def apply_event(self, event: dict) -> None:
        run = self._state.run
        if run is None or event.get("run_id") != run.id:
            logger.debug(
                f"Dropping {event.get('type')} for run {event.get('run_id')} "
                f"(current={run.id if run else None})"
            )
            return
        self._reduce(ReduceContext(self._state), event)
        self._publish()

    def apply_event_batch(self, events: list[dict], *, replay_only: bool = False) -> float:
        """Fold ``events`` into a working copy and commit once.

        With ``replay_only`` the phase and error fields are left alone so a
        terminated run's history cannot resurrect a live phase. Returns the
        elapsed time in milliseconds.
        """
        started = time.perf_counter()
        work = _working_copy(self._state)
        ctx = ReduceContext(work, batch=True, replay_only=replay_only)
        for event in events:
            self._reduce(ctx, event)

        run = work.run
        run_status = ctx.run_changes.get("status", run.status) if run is not None else None
        if run is not None and run_status in TERMINAL_RUN_STATUSES:
            finalized = finalize_tools(work.timeline)
            if finalized:
                logger.debug(f"Finalized {finalized} unfinished tools for {run_status} run {run.id}")

        target_phase = work.phase
        previous_phase = self._state.phase
        work.phase = previous_phase
        self._state = work
        if run is not None:
            for name, value in ctx.run_changes.items():
                setattr(run, name, value)
        if not replay_only:
            self._set_phase(target_phase)
        self._publish()
        if not replay_only and target_phase in TERMINAL_PHASES and previous_phase not in TERMINAL_PHASES:
            self._on_terminal_state()

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            f"Applied {len(events)} events in {elapsed_ms:.1f}ms, timeline={len(work.timeline)} entries"
        )
        return elapsed_ms

    def finalize_terminal(self) -> int:
        """Fail leftover tools once the run has ended without further events."""
        run = self._state.run
        if run is None or run.status not in TERMINAL_RUN_STATUSES:
            return 0
        finalized = finalize_tools(self._state.timeline)
        if finalized:
            self._publish()
        return finalized

    def reset(self) -> None:
        self._set_phase(SessionPhase.EMPTY)
        self._state = SessionState(agent=self._state.agent, phase=SessionPhase.EMPTY)
        self._publish()

    def _clear_content_state(self) -> None:
        """Drop everything derived from events; keep the run, phase and agent."""
        current = self._state
        self._state = SessionState(run=current.run, agent=current.agent, phase=current.phase)

    def _reduce(self, ctx: ReduceContext, event: dict) -> None:
        event_type = event.get("type")
        handler = self._handlers.get(str(event_type))
        if handler is None:
            ctx.state.meta.unknown_event_count += 1
            logger.warning(f"Unknown event type: {event_type!r}")
            if self.strict_mode:
                raise StrictModeError(f"Unknown event type: {event_type!r}")
            return
        handler(ctx, event)

    @staticmethod
    def _update_run(ctx: ReduceContext, **changes) -> None:
        """Write run fields now, or at commit when folding a batch."""
        run = ctx.state.run
        if run is None:
            return
        if ctx.batch:
            ctx.run_changes.update(changes)
            return
        for name, value in changes.items():
            setattr(run, name, value)

    def _anomaly(self, ctx: ReduceContext, message: str) -> None:
        ctx.state.meta.anomaly_count += 1
        logger.warning(message)
        if self.strict_mode:
            raise StrictModeError(message)

    def _clear_timeout_error(self, ctx: ReduceContext) -> None:
        self._cancel_response_timer()
        if ctx.state.is_timeout_error:
            ctx.state.error = ""
            ctx.state.is_timeout_error = False

    # -- per-event rules --

    def _on_session_init(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        meta = s.meta
        model = event.get("model")
        if model and (ctx.batch or not (s.run and s.run.model)):
            s.model = model
        session_id = event.get("session_id")
        if session_id and s.run is not None and not ctx.replay_only:
            logger.debug(f"session_init: session_id {s.run.session_id} -> {session_id}")
            self._update_run(ctx, session_id=session_id)

        commands = event.get("slash_commands") or []
        if commands:
            meta.session_commands = [
                {"name": c, "description": "", "aliases": []} if isinstance(c, str) else dict(c)
                for c in commands
            ]
        if event.get("mcp_servers"):
            meta.mcp_servers = list(event["mcp_servers"])
        if event.get("claude_code_version"):
            meta.cli_version = event["claude_code_version"]
        if event.get("permission_mode"):
            meta.permission_mode = event["permission_mode"]
        if event.get("fast_mode_state"):
            meta.fast_mode_state = event["fast_mode_state"]
        if event.get("api_key_source"):
            meta.api_key_source = event["api_key_source"]
        if event.get("agents"):
            meta.available_agents = list(event["agents"])
        if event.get("skills"):
            meta.available_skills = list(event["skills"])
        if event.get("plugins") is not None:
            meta.available_plugins = list(event["plugins"])

        # Assigned unconditionally so empty values clear whatever the last session left.
        meta.session_cwd = event.get("cwd") or ""
        meta.session_tools = list(event.get("tools") or [])
        meta.output_style = event.get("output_style") or ""
        meta.session_init_received = True

    def _on_message_delta(self, ctx: ReduceContext, event: dict) -> None:
        self._clear_timeout_error(ctx)
        s = ctx.state
        text = event.get("text") or ""
        parent_id = event.get("parent_tool_use_id")
        if parent_id:
            parent = find_parent(s.timeline, parent_id)
            if parent is None:
                logger.debug(f"message_delta: parent {parent_id} not in timeline")
                return
            append_stream_delta(parent, text, thinking=False, ts=_event_ts(event))
            return
        if s.meta.thinking_started_at and not s.meta.thinking_ended_at:
            s.meta.thinking_ended_at = time.time()
        s.streaming_text += text

    def _on_thinking_delta(self, ctx: ReduceContext, event: dict) -> None:
        self._clear_timeout_error(ctx)
        s = ctx.state
        text = event.get("text") or ""
        parent_id = event.get("parent_tool_use_id")
        if parent_id:
            parent = find_parent(s.timeline, parent_id)
            if parent is None:
                logger.debug(f"thinking_delta: parent {parent_id} not in timeline")
                return
            append_stream_delta(parent, text, thinking=True, ts=_event_ts(event))
            return
        if not s.meta.thinking_started_at:
            s.meta.thinking_started_at = time.time()
        s.thinking_text += text

    def _on_message_complete(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        message_id = event.get("message_id") or new_entry_id()
        parent_id = event.get("parent_tool_use_id")
        parent = find_parent(s.timeline, parent_id) if parent_id else None

        duplicate = message_id in s.seen_message_ids or any(
            isinstance(e, AssistantEntry) and e.id == message_id for e in s.timeline
        )
        if duplicate:
            if parent is not None:
                replace_stream_placeholder(parent, None)
            return
        s.seen_message_ids.add(message_id)

        entry = AssistantEntry(
            id=message_id,
            content=event.get("text") or "",
            ts=_event_ts(event),
            thinking_text=event.get("thinking") or None,
            model=event.get("model") or None,
        )
        if parent is not None:
            if not replace_stream_placeholder(parent, entry):
                append_to_parent(parent, entry)
            return
        if parent_id:
            self._anomaly(ctx, f"message_complete {message_id}: parent {parent_id} not found, using top level")

        if entry.thinking_text is None and s.thinking_text:
            entry.thinking_text = s.thinking_text
        s.streaming_text = ""
        s.thinking_text = ""
        s.meta.thinking_started_at = 0
        s.meta.thinking_ended_at = 0
        s.timeline.append(entry)

    def _on_user_message(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        text = event.get("text") or ""
        # A local echo may already hold this text. History is authoritative, so
        # replays append every occurrence.
        if not ctx.replay_only:
            last = last_user_entry(s.timeline)
            if last is not None and last.content == text:
                return
        s.timeline.append(
            UserEntry(
                id=event.get("id") or new_entry_id(),
                content=text,
                ts=_event_ts(event),
                attachments=timeline_attachments(event.get("attachments") or []),
            )
        )
        for entry in s.timeline:
            if isinstance(entry, ToolEntry) and entry.tool.status == ToolStatus.ASK_PENDING:
                entry.tool.status = ToolStatus.SUCCESS
                entry.tool.output = {"answer": text}
                break

    def _on_tool_start(self, ctx: ReduceContext, event: dict) -> None:
        self._clear_timeout_error(ctx)
        s = ctx.state
        tool_use_id = event.get("tool_use_id") or ""
        if tool_use_id in s.seen_tool_ids:
            return
        s.seen_tool_ids.add(tool_use_id)

        tool_input = event.get("input")
        entry = ToolEntry(
            id=tool_use_id,
            tool=ToolState(
                tool_use_id=tool_use_id,
                tool_name=event.get("tool_name") or "",
                input=tool_input if isinstance(tool_input, dict) else {},
            ),
            ts=_event_ts(event),
        )
        parent_id = event.get("parent_tool_use_id")
        if parent_id:
            parent = find_parent(s.timeline, parent_id)
            if parent is not None:
                append_to_parent(parent, entry)
                return
            self._anomaly(ctx, f"tool_start {tool_use_id}: parent {parent_id} not found, using top level")
        if find_tool_in(s.timeline, tool_use_id) is not None:
            return
        s.timeline.append(entry)

    def _on_tool_input_delta(self, ctx: ReduceContext, event: dict) -> None:
        tool_use_id = event.get("tool_use_id") or ""
        entry, _ = locate_tool(ctx.state.timeline, tool_use_id, event.get("parent_tool_use_id"))
        if entry is None:
            logger.debug(f"tool_input_delta for unknown tool {tool_use_id}")
            return
        accum = (entry.tool.input_json_accum or "") + (event.get("partial_json") or "")
        entry.tool.input_json_accum = accum
        try:
            parsed = json.loads(accum)
        except ValueError:
            return
        if isinstance(parsed, dict):
            entry.tool.input = parsed

    def _on_tool_end(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        tool_use_id = event.get("tool_use_id") or ""
        tool_name = event.get("tool_name") or ""
        failed = event.get("status") == "error"
        if failed:
            # The question tool fails on purpose to ask for human input.
            resolved = ToolStatus.ASK_PENDING if tool_name == "AskUserQuestion" else ToolStatus.ERROR
        else:
            resolved = ToolStatus.SUCCESS

        parent_id = event.get("parent_tool_use_id")
        entry, owner = locate_tool(s.timeline, tool_use_id, parent_id)
        if entry is None:
            logger.debug(f"tool_end for unknown tool {tool_use_id}")
        else:
            tool = entry.tool
            tool.status = resolved
            tool.output = event.get("output")
            tool.duration_ms = event.get("duration_ms")
            tool.tool_name = tool_name or tool.tool_name
            tool.tool_use_result = event.get("tool_use_result")

        if not failed and not parent_id and owner is None:
            self._infer_plan_mode(s.meta, tool_name)

    @staticmethod
    def _infer_plan_mode(meta: SessionMetadata, tool_name: str) -> None:
        if tool_name == "EnterPlanMode":
            meta.previous_permission_mode = meta.permission_mode or "default"
            meta.permission_mode = "plan"
        elif tool_name == "ExitPlanMode" and meta.previous_permission_mode:
            if meta.pending_permission_mode_override:
                meta.permission_mode = meta.pending_permission_mode_override
                meta.pending_permission_mode_override = None
            else:
                meta.permission_mode = meta.previous_permission_mode
            meta.previous_permission_mode = ""

    def _on_permission_prompt(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        tool_use_id = event.get("tool_use_id") or ""
        request_id = event.get("request_id")
        suggestions = event.get("suggestions")

        def mark(tool: ToolState) -> None:
            tool.status = ToolStatus.PERMISSION_PROMPT
            tool.permission_request_id = request_id
            if suggestions:
                tool.suggestions = list(suggestions)

        entry, _ = locate_tool(s.timeline, tool_use_id, event.get("parent_tool_use_id"))
        if entry is not None:
            mark(entry.tool)
            return

        tool_input = event.get("tool_input")
        synthetic = ToolEntry(
            id=tool_use_id,
            tool=ToolState(
                tool_use_id=tool_use_id,
                tool_name=event.get("tool_name") or "",
                input=tool_input if isinstance(tool_input, dict) else {},
            ),
            ts=_event_ts(event),
        )
        mark(synthetic.tool)
        s.seen_tool_ids.add(tool_use_id)
        s.timeline.append(synthetic)

    def _on_permission_denied(self, ctx: ReduceContext, event: dict) -> None:
        tool_use_id = event.get("tool_use_id") or ""
        entry, _ = locate_tool(ctx.state.timeline, tool_use_id, event.get("parent_tool_use_id"))
        if entry is None:
            logger.debug(f"permission_denied for unknown tool {tool_use_id}")
            return
        entry.tool.status = ToolStatus.PERMISSION_DENIED

    def _on_control_cancelled(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        request_id = event.get("request_id")
        entry = find_tool_by_request(s.timeline, request_id)
        if entry is not None:
            entry.tool.status = ToolStatus.ERROR
        for hook in s.meta.hook_events:
            if hook.get("request_id") == request_id and hook.get("status") == "hook_pending":
                hook["status"] = "cancelled"

    def _on_run_state(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        state_name = event.get("state") or ""

        # Stale prompts are cleaned up in every mode so replays show them resolved.
        if state_name == "idle":
            resolve_statuses(s.timeline, {ToolStatus.PERMISSION_PROMPT}, ToolStatus.ERROR, recursive=True)
        elif state_name == "spawning":
            resolve_statuses(
                s.timeline,
                {ToolStatus.PERMISSION_DENIED, ToolStatus.PERMISSION_PROMPT},
                ToolStatus.ERROR,
                recursive=True,
            )

        if ctx.replay_only:
            return

        phase = _RUN_STATE_PHASES.get(state_name)
        if phase is None:
            self._anomaly(ctx, f"run_state: unknown state {state_name!r}")
            return
        if ctx.batch:
            s.phase = phase
        else:
            self._set_phase(phase)
        if state_name != "spawning":
            self._update_run(ctx, status="failed" if state_name == "error" else state_name)

        error = event.get("error")
        # A failure reported while the user is stopping the session is expected.
        if error and state_name != "stopped" and not self._stopping:
            s.error = str(error)
            s.is_timeout_error = False
            self._update_run(ctx, error_message=str(error))

        if phase in TERMINAL_PHASES and not ctx.batch:
            self._on_terminal_state()

    def _on_usage_update(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        incoming = usage_from_event(event)
        s.usage = merge_usage(s.usage, incoming)
        if event.get("duration_ms") is not None:
            s.meta.duration_ms = event["duration_ms"]
        if event.get("num_turns") is not None:
            s.meta.num_turns = int(event["num_turns"])
        s.turn_usages.append(turn_usage_from_event(event, incoming, count_user_entries(s.timeline)))

    def _on_compact_boundary(self, ctx: ReduceContext, event: dict) -> None:
        s = ctx.state
        if str(event.get("trigger") or "").startswith("micro"):
            s.meta.microcompact_count += 1
        else:
            s.meta.compact_count += 1
            pre_tokens = event.get("pre_tokens")
            tokens_info = f" ({round(pre_tokens / 1000)}k tokens)" if pre_tokens else ""
            s.timeline.append(
                SeparatorEntry(id=new_entry_id(), content=f"Context compacted{tokens_info}", ts=_event_ts(event))
            )
        if not ctx.replay_only:
            s.meta.last_compacted_at = time.time()

    def _on_task_notification(self, ctx: ReduceContext, event: dict) -> None:
        meta = ctx.state.meta
        task_id = str(event.get("task_id") or "")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        existing = meta.task_notifications.get(task_id)

        def pick(*keys: str) -> str | None:
            for key in keys:
                if data.get(key):
                    return data[key]
            return None

        meta.task_notifications[task_id] = TaskNotification(
            task_id=task_id,
            status=str(event.get("status") or ""),
            message=pick("message", "task_description") or task_id,
            started_at=existing.started_at if existing else time.time(),
            data=data,
            output_file=pick("output_file", "outputFile") or (existing.output_file if existing else None),
            task_type=pick("task_type", "taskType") or (existing.task_type if existing else None),
            summary=pick("summary") or (existing.summary if existing else None),
            tool_use_id=pick("tool_use_id", "toolUseId") or (existing.tool_use_id if existing else None),
        )

    def _on_command_output(self, ctx: ReduceContext, event: dict) -> None:
        ctx.state.timeline.append(
            CommandOutputEntry(id=new_entry_id(), content=event.get("content") or "", ts=_event_ts(event))
        )

    def _on_raw(self, ctx: ReduceContext, event: dict) -> None:
        source = event.get("source")
        data = event.get("data")
        text = data if isinstance(data, str) else json.dumps(data)
        if text and source in _RAW_TIMELINE_SOURCES:
            ctx.state.timeline.append(
                AssistantEntry(id=new_entry_id(), content=f"`[{source}]` {text}", ts=_event_ts(event))
            )
            return
        ctx.state.meta.raw_fallback_count += 1
        logger.warning(f"Unroutable raw event from {source}: {(text or '')[:100]}")
        if self.strict_mode:
            raise StrictModeError(f"Unroutable raw event: source={source}")

    def _on_system_status(self, ctx: ReduceContext, event: dict) -> None:
        ctx.state.meta.system_status = {"status": event.get("status")}

    def _on_auth_status(self, ctx: ReduceContext, event: dict) -> None:
        ctx.state.meta.auth_status = {
            "is_authenticating": bool(event.get("is_authenticating")),
            "output": event.get("output"),
        }

    def _on_hook_started(self, ctx: ReduceContext, event: dict) -> None:
        ctx.state.meta.hook_events.append(
            {"type": event.get("type"), "hook_id": event.get("hook_id"), "hook_name": event.get("hook_name"), "data": event}
        )

    def _on_hook_progress(self, ctx: ReduceContext, event: dict) -> None:
        ctx.state.meta.hook_events.append({"type": event.get("type"), "hook_id": event.get("hook_id"), "data": event})

    def _on_hook_response(self, ctx: ReduceContext, event: dict) -> None:
        ctx.state.meta.hook_events.append(
            {
                "type": event.get("type"),
                "hook_id": event.get("hook_id"),
                "hook_name": event.get("hook_name"),
                "data": event,
                "stdout": event.get("stdout"),
                "stderr": event.get("stderr"),
                "exit_code": event.get("exit_code"),
            }
        )

    def _on_hook_callback(self, ctx: ReduceContext, event: dict) -> None:
        ctx.state.meta.hook_events.append(
            {
                "type": event.get("type"),
                "hook_id": event.get("hook_id"),
                "data": event,
                "request_id": event.get("request_id"),
                "status": "hook_pending" if event.get("hook_event") == "PreToolUse" else "allowed",
            }
        )

    def _on_files_persisted(self, ctx: ReduceContext, event: dict) -> None:
        files = event.get("files")
        if isinstance(files, list):
            ctx.state.meta.persisted_files.extend(files)

    def _on_tool_progress(self, ctx: ReduceContext, event: dict) -> None:
        entry, _ = locate_tool(ctx.state.timeline, event.get("tool_use_id") or "", event.get("parent_tool_use_id"))
        if entry is not None:
            entry.tool.elapsed_time_seconds = event.get("elapsed_time_seconds")

    def _on_tool_use_summary(self, ctx: ReduceContext, event: dict) -> None:
        entry, _ = locate_tool(ctx.state.timeline, event.get("tool_use_id") or "", event.get("parent_tool_use_id"))
        if entry is not None:
            entry.tool.summary = event.get("summary")

    # -- side channels --

    def apply_hook_event(self, event: dict) -> None:
        s = self._state
        if s.run is None or event.get("run_id") != s.run.id:
            return
        hook_type = event.get("hook_type")
        if hook_type in ("PreToolUse", "PostToolUse") and (self.uses_stream_session or self.session_alive):
            logger.debug(f"Skipping {hook_type} hook for {event.get('tool_name')}: timeline tracks tools")
            return

        if hook_type == "PostToolUse" and event.get("tool_name"):
            for hook in reversed(s.tool_hooks):
                if (
                    hook.get("tool_name") == event["tool_name"]
                    and hook.get("hook_type") == "PreToolUse"
                    and hook.get("status") == "running"
                ):
                    hook.update(status="done", hook_type="PostToolUse", tool_output=event.get("tool_output"))
                    self._publish()
                    return

        s.tool_hooks.append(dict(event))
        self._publish()

    def apply_hook_usage(self, report: dict) -> None:
        s = self._state
        if s.run is None or report.get("run_id") != s.run.id:
            return
        s.usage = add_hook_usage(s.usage, report)
        self._publish()

    # -- local actions --

    def resolve_ask_question(self, tool_use_id: str, answer: str) -> None:
        entry, _ = locate_tool(self._state.timeline, tool_use_id)
        if entry is None:
            return
        entry.tool.status = ToolStatus.SUCCESS
        entry.tool.output = {"answer": answer}
        self._publish()

    def resolve_permission_deny(self, request_id: str) -> None:
        """Show a denied prompt immediately; no event follows a local deny."""
        entry = find_tool_by_request(self._state.timeline, request_id)
        if entry is None:
            return
        entry.tool.status = ToolStatus.PERMISSION_DENIED
        self._publish()

    def update_mcp_servers(self, servers: list[dict]) -> None:
        self._state.meta.mcp_servers = list(servers)
        self._publish()

    def set_permission_mode_override(self, mode: str) -> None:
        meta = self._state.meta
        if meta.permission_mode == "plan":
            meta.pending_permission_mode_override = mode
        else:
            meta.permission_mode = mode
        self._publish()

    # -- snapshots --

    def build_snapshot(self) -> str:
        s = self._state
        return json.dumps(
            {
                "timeline": [entry_to_dict(entry) for entry in s.timeline],
                "tool_hooks": s.tool_hooks,
                "streaming_text": s.streaming_text,
                "thinking_text": s.thinking_text,
                "model": s.model,
                "usage": s.usage.to_dict(),
                "turn_usages": [asdict(turn) for turn in s.turn_usages],
                "seen_message_ids": sorted(s.seen_message_ids),
                "seen_tool_ids": sorted(s.seen_tool_ids),
                "metadata": s.meta.to_dict(),
            },
            ensure_ascii=True,
        )

    def should_write_snapshot(self, source_event_count: int) -> bool:
        """An empty timeline is cached only when the event log was empty too."""
        return bool(self._state.timeline) or source_event_count == 0

    def apply_snapshot(self, body: str) -> bool:
        """Restore content state from a snapshot. Returns False when it cannot be trusted."""
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as ex:
            return self._reject_snapshot(f"Snapshot decode failed: {ex}")
        if not isinstance(data, dict) or not isinstance(data.get("timeline"), list) or not isinstance(
            data.get("usage"), dict
        ):
            return self._reject_snapshot("Snapshot shape check failed")

        try:
            timeline = [entry_from_dict(item) for item in data["timeline"]]
            usage = UsageState.from_dict(data["usage"])
            turn_usages = [TurnUsage.from_dict(item) for item in data.get("turn_usages") or []]
            meta = SessionMetadata.from_dict(data.get("metadata") or {})
        except (KeyError, TypeError, ValueError, AttributeError) as ex:
            return self._reject_snapshot(f"Snapshot content invalid: {ex}")

        s = self._state
        s.timeline = timeline
        s.tool_hooks = list(data.get("tool_hooks") or [])
        s.streaming_text = data.get("streaming_text") or ""
        s.thinking_text = data.get("thinking_text") or ""
        s.model = data.get("model") or ""
        s.usage = usage
        s.turn_usages = turn_usages
        s.seen_message_ids = set(data.get("seen_message_ids") or [])
        s.seen_tool_ids = set(data.get("seen_tool_ids") or [])
        s.meta = meta
        logger.debug(f"Snapshot applied: {len(timeline)} timeline entries")
        self._publish()
        return True

    def _reject_snapshot(self, message: str) -> bool:
        logger.warning(message)
        if self.strict_mode:
            raise StrictModeError(message)
        return False
