from __future__ import annotations

from typing import Iterator

from agent_session_core.models import (
    NON_TERMINAL_TOOL_STATUSES,
    AssistantEntry,
    TimelineEntry,
    ToolEntry,
    ToolStatus,
    UserEntry,
)

SESSION_ENDED_OUTPUT = {"error": "Session ended"}


def sub_stream_id(parent_tool_use_id: str) -> str:
    """Id of the in-progress assistant entry a subagent streams into."""
    return f"__sub_stream_{parent_tool_use_id}"


def find_tool_in(level: list[TimelineEntry], tool_use_id: str) -> ToolEntry | None:
    for entry in level:
        if isinstance(entry, ToolEntry) and entry.id == tool_use_id:
            return entry
    return None


def iter_sub_timelines(timeline: list[TimelineEntry]) -> Iterator[tuple[ToolEntry, list[TimelineEntry]]]:
    """Yield (parent, sub_timeline) for every nested level, depth first."""
    for entry in timeline:
        if isinstance(entry, ToolEntry) and entry.sub_timeline:
            yield entry, entry.sub_timeline
            yield from iter_sub_timelines(entry.sub_timeline)


def iter_tools(timeline: list[TimelineEntry]) -> Iterator[ToolEntry]:
    for entry in timeline:
        if isinstance(entry, ToolEntry):
            yield entry
            if entry.sub_timeline:
                yield from iter_tools(entry.sub_timeline)


def find_parent(timeline: list[TimelineEntry], parent_tool_use_id: str) -> ToolEntry | None:
    found = find_tool_in(timeline, parent_tool_use_id)
    if found is not None:
        return found
    for _, sub in iter_sub_timelines(timeline):
        found = find_tool_in(sub, parent_tool_use_id)
        if found is not None:
            return found
    return None


def locate_tool(
    timeline: list[TimelineEntry],
    tool_use_id: str,
    parent_tool_use_id: str | None = None,
) -> tuple[ToolEntry | None, ToolEntry | None]:
    """Find a tool entry and the parent that owns it.

    With a parent hint the parent's sub-timeline is tried first. The top level is
    searched next, then every sub-timeline, because the parent reference is not
    always present on updates. Returns ``(entry, parent)``; ``parent`` is None for
    a top-level entry.
    """
    if parent_tool_use_id:
        parent = find_parent(timeline, parent_tool_use_id)
        if parent is not None and parent.sub_timeline:
            found = find_tool_in(parent.sub_timeline, tool_use_id)
            if found is not None:
                return found, parent

    found = find_tool_in(timeline, tool_use_id)
    if found is not None:
        return found, None

    for parent, sub in iter_sub_timelines(timeline):
        found = find_tool_in(sub, tool_use_id)
        if found is not None:
            return found, parent
    return None, None


def find_tool_by_request(
    timeline: list[TimelineEntry],
    request_id: str,
    status: str = ToolStatus.PERMISSION_PROMPT,
) -> ToolEntry | None:
    def matches(entry: TimelineEntry) -> bool:
        return (
            isinstance(entry, ToolEntry)
            and entry.tool.status == status
            and entry.tool.permission_request_id == request_id
        )

    for entry in timeline:
        if matches(entry):
            return entry
    for _, sub in iter_sub_timelines(timeline):
        for entry in sub:
            if matches(entry):
                return entry
    return None


def append_to_parent(parent: ToolEntry, entry: TimelineEntry) -> None:
    if parent.sub_timeline is None:
        parent.sub_timeline = []
    parent.sub_timeline.append(entry)


def append_stream_delta(parent: ToolEntry, text: str, *, thinking: bool, ts: str) -> AssistantEntry:
    """Grow the synthetic placeholder for a subagent's in-progress message."""
    synthetic_id = sub_stream_id(parent.id)
    sub = parent.sub_timeline or []
    for entry in sub:
        if isinstance(entry, AssistantEntry) and entry.id == synthetic_id:
            if thinking:
                entry.thinking_text = (entry.thinking_text or "") + text
            else:
                entry.content += text
            return entry
    placeholder = AssistantEntry(
        id=synthetic_id,
        content="" if thinking else text,
        ts=ts,
        thinking_text=text if thinking else None,
    )
    append_to_parent(parent, placeholder)
    return placeholder


def replace_stream_placeholder(parent: ToolEntry, entry: TimelineEntry | None) -> bool:
    """Swap the placeholder for ``entry`` in place, or just drop it when ``entry`` is None.

    Returns True when a placeholder was found.
    """
    synthetic_id = sub_stream_id(parent.id)
    sub = parent.sub_timeline or []
    for index, existing in enumerate(sub):
        if isinstance(existing, AssistantEntry) and existing.id == synthetic_id:
            if entry is None:
                del sub[index]
            else:
                sub[index] = entry
            return True
    return False


def resolve_statuses(
    level: list[TimelineEntry],
    statuses: frozenset[str] | set[str],
    new_status: str,
    *,
    output: dict | None = None,
    recursive: bool = False,
) -> int:
    """Move every tool whose status is in ``statuses`` to ``new_status``."""
    changed = 0
    tools = iter_tools(level) if recursive else (e for e in level if isinstance(e, ToolEntry))
    for entry in tools:
        if entry.tool.status in statuses:
            entry.tool.status = new_status
            if output is not None:
                entry.tool.output = dict(output)
            changed += 1
    return changed


def finalize_tools(timeline: list[TimelineEntry]) -> int:
    """Fail every tool that can no longer receive a result."""
    return resolve_statuses(
        timeline,
        NON_TERMINAL_TOOL_STATUSES,
        ToolStatus.ERROR,
        output=SESSION_ENDED_OUTPUT,
        recursive=True,
    )


def last_user_entry(timeline: list[TimelineEntry]) -> UserEntry | None:
    for entry in reversed(timeline):
        if isinstance(entry, UserEntry):
            return entry
    return None


def count_user_entries(timeline: list[TimelineEntry]) -> int:
    return sum(1 for entry in timeline if isinstance(entry, UserEntry))
