from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, ClassVar
from uuid import uuid4


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def new_entry_id() -> str:
    return str(uuid4())


class ToolStatus:
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    DENIED = "denied"
    ASK_PENDING = "ask_pending"
    PERMISSION_DENIED = "permission_denied"
    PERMISSION_PROMPT = "permission_prompt"


# Statuses a tool can never leave once its session is over.
NON_TERMINAL_TOOL_STATUSES = frozenset(
    {
        ToolStatus.RUNNING,
        ToolStatus.ASK_PENDING,
        ToolStatus.PERMISSION_DENIED,
        ToolStatus.PERMISSION_PROMPT,
    }
)

IMAGE_MEDIA_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})


@dataclass
class Run:
    id: str
    status: str = "pending"
    agent: str = "claude"
    cwd: str = ""
    prompt: str = ""
    session_id: str | None = None
    model: str | None = None
    remote_host_name: str | None = None
    platform_id: str | None = None
    parent_run_id: str | None = None
    error_message: str | None = None
    result_subtype: str | None = None
    started_at: str = ""
    ended_at: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Run:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ToolState:
    tool_use_id: str
    tool_name: str
    input: dict = field(default_factory=dict)
    status: str = ToolStatus.RUNNING
    output: Any = None
    duration_ms: float | None = None
    permission_request_id: str | None = None
    suggestions: list | None = None
    input_json_accum: str | None = None
    elapsed_time_seconds: float | None = None
    summary: str | None = None
    tool_use_result: dict | None = None


@dataclass
class UserEntry:
    kind: ClassVar[str] = "user"
    id: str
    content: str
    ts: str
    attachments: list[dict] | None = None


@dataclass
class AssistantEntry:
    kind: ClassVar[str] = "assistant"
    id: str
    content: str
    ts: str
    thinking_text: str | None = None
    model: str | None = None


@dataclass
class ToolEntry:
    kind: ClassVar[str] = "tool"
    id: str
    tool: ToolState
    ts: str
    sub_timeline: list[TimelineEntry] | None = None


@dataclass
class SeparatorEntry:
    kind: ClassVar[str] = "separator"
    id: str
    content: str
    ts: str


@dataclass
class CommandOutputEntry:
    kind: ClassVar[str] = "command_output"
    id: str
    content: str
    ts: str


TimelineEntry = UserEntry | AssistantEntry | ToolEntry | SeparatorEntry | CommandOutputEntry

_ENTRY_TYPES: dict[str, type] = {
    "user": UserEntry,
    "assistant": AssistantEntry,
    "tool": ToolEntry,
    "separator": SeparatorEntry,
    "command_output": CommandOutputEntry,
}


def entry_to_dict(entry: TimelineEntry) -> dict:
    if isinstance(entry, ToolEntry):
        data = {
            "kind": entry.kind,
            "id": entry.id,
            "ts": entry.ts,
            "tool": asdict(entry.tool),
            "sub_timeline": (
                [entry_to_dict(child) for child in entry.sub_timeline]
                if entry.sub_timeline is not None
                else None
            ),
        }
        return data
    data = asdict(entry)
    data["kind"] = entry.kind
    return data


def entry_from_dict(data: dict) -> TimelineEntry:
    kind = data.get("kind")
    cls = _ENTRY_TYPES.get(str(kind))
    if cls is None:
        raise ValueError(f"Unknown timeline entry kind: {kind!r}")
    if cls is ToolEntry:
        tool_data = data.get("tool")
        if not isinstance(tool_data, dict):
            raise ValueError(f"Tool entry {data.get('id')!r} has no tool state")
        tool_fields = {f.name for f in fields(ToolState)}
        sub = data.get("sub_timeline")
        return ToolEntry(
            id=str(data["id"]),
            tool=ToolState(**{k: v for k, v in tool_data.items() if k in tool_fields}),
            ts=str(data.get("ts", "")),
            sub_timeline=[entry_from_dict(child) for child in sub] if isinstance(sub, list) else None,
        )
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


def timeline_attachments(attachments: list[dict] | None) -> list[dict] | None:
    """Keep inline image payloads; drop base64 bodies for everything else."""
    if not attachments:
        return None
    result: list[dict] = []
    for attachment in attachments:
        if attachment.get("type") in IMAGE_MEDIA_TYPES:
            result.append(dict(attachment))
        else:
            result.append({**attachment, "content_base64": ""})
    return result


def to_backend_attachments(attachments: list[dict] | None) -> list[dict] | None:
    if not attachments:
        return None
    return [
        {
            "content_base64": a.get("content_base64", ""),
            "media_type": a.get("type", ""),
            "filename": a.get("name", ""),
        }
        for a in attachments
    ]


@dataclass
class UsageState:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost: float = 0.0
    model_usage: dict | None = None
    duration_api_ms: float | None = None

    @property
    def has_tokens(self) -> bool:
        return (
            self.input_tokens > 0
            or self.output_tokens > 0
            or self.cache_read_tokens > 0
            or self.cache_write_tokens > 0
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> UsageState:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TurnUsage:
    turn_index: int
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost: float = 0.0
    duration_api_ms: float | None = None
    duration_ms: float | None = None

    @classmethod
    def from_dict(cls, data: dict) -> TurnUsage:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TaskNotification:
    task_id: str
    status: str
    message: str
    started_at: float
    data: Any = None
    output_file: str | None = None
    task_type: str | None = None
    summary: str | None = None
    tool_use_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> TaskNotification:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SessionMetadata:
    """Side-channel session state reported by the agent outside the timeline."""

    cli_version: str = ""
    permission_mode: str = ""
    previous_permission_mode: str = ""
    pending_permission_mode_override: str | None = None
    fast_mode_state: str = ""
    api_key_source: str = ""
    session_cwd: str = ""
    session_tools: list[str] = field(default_factory=list)
    output_style: str = ""
    session_commands: list[dict] = field(default_factory=list)
    mcp_servers: list[dict] = field(default_factory=list)
    available_agents: list[str] = field(default_factory=list)
    available_skills: list[str] = field(default_factory=list)
    available_plugins: list = field(default_factory=list)
    session_init_received: bool = False
    system_status: dict | None = None
    auth_status: dict | None = None
    hook_events: list[dict] = field(default_factory=list)
    task_notifications: dict[str, TaskNotification] = field(default_factory=dict)
    persisted_files: list = field(default_factory=list)
    num_turns: int = 0
    duration_ms: float = 0
    compact_count: int = 0
    microcompact_count: int = 0
    last_compacted_at: float = 0
    thinking_started_at: float = 0
    thinking_ended_at: float = 0
    unknown_event_count: int = 0
    raw_fallback_count: int = 0
    anomaly_count: int = 0

    # Live-only timing fields; not part of a snapshot.
    _TRANSIENT: ClassVar[frozenset[str]] = frozenset(
        {"last_compacted_at", "thinking_started_at", "thinking_ended_at", "pending_permission_mode_override"}
    )

    def to_dict(self) -> dict:
        data = asdict(self)
        for name in self._TRANSIENT:
            data.pop(name, None)
        data["task_notifications"] = [
            [task_id, asdict(item)] for task_id, item in self.task_notifications.items()
        ]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SessionMetadata:
        known = {f.name for f in fields(cls)} - cls._TRANSIENT
        values = {k: v for k, v in data.items() if k in known and k != "task_notifications"}
        meta = cls(**values)
        for pair in data.get("task_notifications") or []:
            task_id, item = pair
            meta.task_notifications[str(task_id)] = TaskNotification.from_dict(item)
        return meta
