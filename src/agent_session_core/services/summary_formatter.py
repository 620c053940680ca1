from __future__ import annotations

from collections import Counter

from agent_session_core.errors import ClassifiedError
from agent_session_core.models import Run, ToolEntry
from agent_session_core.reducer import SessionReducer
from agent_session_core.timeline import iter_tools


class SummaryFormatter:
    def __init__(self, *, line_prefix: str = "", short_id_len: int = 8):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def format_run_entry(self, run: Run) -> str:
        parent = self.short_id(run.parent_run_id) if run.parent_run_id else "-"
        prompt = run.prompt if len(run.prompt) <= 60 else run.prompt[:57] + "..."
        return (
            f"{self._line_prefix}[{self.short_id(run.id)}] (id={run.id}) "
            f"(status={run.status}, agent={run.agent}, started={run.started_at}, parent={parent}) {prompt}"
        )

    def format_session_summary_lines(self, reducer: SessionReducer, *, elapsed_ms: float | None = None) -> list[str]:
        p = self._line_prefix
        state = reducer.state
        kinds = Counter(entry.kind for entry in state.timeline)
        tool_statuses = Counter(entry.tool.status for entry in iter_tools(state.timeline))
        nested = sum(len(entry.sub_timeline or []) for entry in state.timeline if isinstance(entry, ToolEntry))

        lines = [f"{p}Session summary:"]
        if state.run is not None:
            lines.append(f"{p}- Run: {state.run.id} (status={state.run.status}, agent={state.run.agent})")
        lines.append(f"{p}- Phase: {state.phase.value}")
        if state.model:
            lines.append(f"{p}- Model: {state.model}")
        if state.error:
            lines.append(f"{p}- Error: {state.error}")
        entry_text = ", ".join(f"{kind}={count}" for kind, count in sorted(kinds.items())) or "none"
        lines.append(f"{p}- Timeline: {len(state.timeline)} entries ({entry_text}), nested={nested}")
        if tool_statuses:
            status_text = ", ".join(f"{status}={count}" for status, count in sorted(tool_statuses.items()))
            lines.append(f"{p}- Tools: {status_text}")

        usage = state.usage
        lines.append(
            f"{p}- Usage: input={usage.input_tokens}, output={usage.output_tokens}, "
            f"cache_read={usage.cache_read_tokens}, cache_write={usage.cache_write_tokens}, "
            f"cost=${usage.cost:.4f}"
        )
        for turn in state.turn_usages:
            lines.append(
                f"{p}  - Turn {turn.turn_index}: input={turn.input_tokens}, output={turn.output_tokens}, "
                f"cost=${turn.cost:.4f}, "
                f"duration_ms={turn.duration_ms or 0:g}"
            )

        meta = state.meta
        lines.append(
            f"{p}- Anomalies: {meta.anomaly_count}, unknown events: {meta.unknown_event_count}, "
            f"raw fallbacks: {meta.raw_fallback_count}"
        )
        if meta.compact_count or meta.microcompact_count:
            lines.append(f"{p}- Compactions: {meta.compact_count} (micro: {meta.microcompact_count})")
        if elapsed_ms is not None:
            lines.append(f"{p}- Replay time: {elapsed_ms:.1f}ms")
        return lines

    def format_classification_lines(self, classified: ClassifiedError) -> list[str]:
        p = self._line_prefix
        lines = [
            f"{p}Category: {classified.category}",
            f"{p}- Can retry: {'yes' if classified.can_retry else 'no'}",
            f"{p}- Can fork: {'yes' if classified.can_fork else 'no'}",
        ]
        if classified.settings_link:
            lines.append(f"{p}- Settings: {classified.settings_link}")
        return lines
