from __future__ import annotations

from dataclasses import replace

from agent_session_core.models import TurnUsage, UsageState


def usage_from_event(event: dict) -> UsageState:
    return UsageState(
        input_tokens=int(event.get("input_tokens") or 0),
        output_tokens=int(event.get("output_tokens") or 0),
        cache_read_tokens=int(event.get("cache_read_tokens") or 0),
        cache_write_tokens=int(event.get("cache_write_tokens") or 0),
        cost=float(event.get("total_cost_usd") or 0.0),
        model_usage=event.get("model_usage"),
        duration_api_ms=event.get("duration_api_ms"),
    )


def merge_usage(previous: UsageState, incoming: UsageState) -> UsageState:
    """Fold a usage report into the running totals.

    Error results sometimes arrive with every token counter at zero; those keep
    the previous counts and only raise the cost. The per-model breakdown and API
    duration still carry through when present.
    """
    if incoming.has_tokens:
        return replace(incoming, cost=max(previous.cost, incoming.cost))

    merged = replace(previous, cost=max(previous.cost, incoming.cost))
    if incoming.model_usage:
        merged.model_usage = incoming.model_usage
    if incoming.duration_api_ms:
        merged.duration_api_ms = incoming.duration_api_ms
    return merged


def turn_usage_from_event(event: dict, usage: UsageState, fallback_turn_index: int) -> TurnUsage:
    turn_index = event.get("turn_index")
    return TurnUsage(
        turn_index=int(turn_index) if turn_index is not None else fallback_turn_index,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        cache_read_tokens=usage.cache_read_tokens,
        cache_write_tokens=usage.cache_write_tokens,
        cost=usage.cost,
        duration_api_ms=usage.duration_api_ms,
        duration_ms=event.get("duration_ms"),
    )


def add_hook_usage(usage: UsageState, report: dict) -> UsageState:
    return replace(
        usage,
        input_tokens=usage.input_tokens + int(report.get("input_tokens") or 0),
        output_tokens=usage.output_tokens + int(report.get("output_tokens") or 0),
        cost=usage.cost + float(report.get("cost") or 0.0),
    )
