from __future__ import annotations

import asyncio
from typing import Protocol

from loguru import logger

from agent_session_core.transport import EventHandler, Transport, Unlisten

BUS_EVENT = "bus-event"
PTY_OUTPUT = "pty-output"
PTY_EXIT = "pty-exit"
CHAT_DELTA = "chat-delta"
CHAT_DONE = "chat-done"
RUN_EVENT = "run-event"
HOOK_EVENT = "hook-event"
HOOK_USAGE = "hook-usage"


class EventSubscriber(Protocol):
    def apply_event(self, event: dict) -> None: ...
    def apply_event_batch(self, events: list[dict], *, replay_only: bool = False) -> float: ...
    def apply_hook_event(self, event: dict) -> None: ...
    def apply_hook_usage(self, report: dict) -> None: ...


class PtyHandler(Protocol):
    def on_output(self, payload: dict) -> None: ...
    def on_exit(self, payload: dict) -> None: ...


class PipeHandler(Protocol):
    def on_delta(self, delta: dict) -> None: ...
    def on_done(self, done: dict) -> None: ...


class RunEventHandler(Protocol):
    def on_run_event(self, event: dict) -> None: ...


class EventRouter:
    """Single registration point between a transport and session subscribers.

    Bus events are buffered per run and flushed together on a short timer. A
    buffer that reaches ``max_buffer_size`` is flushed immediately instead.
    """

    def __init__(self, transport: Transport, *, batch_interval_ms: float = 16, max_buffer_size: int = 500):
        self._transport = transport
        self._interval_seconds = max(0.001, batch_interval_ms / 1000)
        self._max_buffer_size = max(1, max_buffer_size)
        self._unlisteners: list[Unlisten] = []
        self._subscriptions: dict[str, EventSubscriber] = {}
        self._current_run_id: str | None = None
        self._current: EventSubscriber | None = None
        self._buffers: dict[str, list[dict]] = {}
        self._flush_handle: asyncio.TimerHandle | None = None
        self._pty_handler: PtyHandler | None = None
        self._pipe_handler: PipeHandler | None = None
        self._run_event_handler: RunEventHandler | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def current_run_id(self) -> str | None:
        return self._current_run_id

    async def start(self) -> None:
        if self._started:
            logger.debug("Event router already started")
            return
        self._started = True

        await self._register(BUS_EVENT, self._handle_bus_event)
        await self._register(PTY_OUTPUT, lambda p: self._pty_handler and self._pty_handler.on_output(p))
        await self._register(PTY_EXIT, lambda p: self._pty_handler and self._pty_handler.on_exit(p))
        await self._register(CHAT_DELTA, lambda p: self._pipe_handler and self._pipe_handler.on_delta(p))
        await self._register(CHAT_DONE, lambda p: self._pipe_handler and self._pipe_handler.on_done(p))
        await self._register(
            RUN_EVENT, lambda p: self._run_event_handler and self._run_event_handler.on_run_event(p)
        )
        await self._register(HOOK_EVENT, self._handle_hook_event)
        await self._register(HOOK_USAGE, self._handle_hook_usage)
        logger.debug(f"Event router registered {len(self._unlisteners)} listeners")

    async def _register(self, name: str, handler: EventHandler) -> None:
        try:
            self._unlisteners.append(await self._transport.listen(name, handler))
        except Exception as ex:
            logger.warning(f"Failed to register listener for {name!r}: {ex}")

    def destroy(self) -> None:
        logger.debug(f"Event router unregistering {len(self._unlisteners)} listeners")
        for unlisten in self._unlisteners:
            unlisten()
        self._unlisteners = []
        self._subscriptions.clear()
        self._current_run_id = None
        self._current = None
        self._cancel_scheduled_flush()
        self._buffers.clear()
        self._started = False

    # -- subscriptions --

    def subscribe_current(self, run_id: str, subscriber: EventSubscriber) -> None:
        """Make ``subscriber`` the one active session. An empty run id clears it."""
        # Re-subscribing the same pair must not drop events already buffered for it.
        if run_id and self._current_run_id == run_id and self._current is subscriber:
            return

        if self._current_run_id:
            self._subscriptions.pop(self._current_run_id, None)
            self._buffers.pop(self._current_run_id, None)
        if run_id:
            self._current_run_id = run_id
            self._current = subscriber
            self._subscriptions[run_id] = subscriber
        else:
            self._current_run_id = None
            self._current = None
        logger.debug(f"Current subscription: {run_id or '(cleared)'}")

    def subscribe(self, run_id: str, subscriber: EventSubscriber) -> None:
        self._subscriptions[run_id] = subscriber

    def unsubscribe(self, run_id: str) -> None:
        self._subscriptions.pop(run_id, None)
        self._buffers.pop(run_id, None)
        if self._current_run_id == run_id:
            self._current_run_id = None
            self._current = None

    def set_pty_handler(self, handler: PtyHandler | None) -> None:
        self._pty_handler = handler

    def set_pipe_handler(self, handler: PipeHandler | None) -> None:
        self._pipe_handler = handler

    def set_run_event_handler(self, handler: RunEventHandler | None) -> None:
        self._run_event_handler = handler

    def buffered(self, run_id: str) -> int:
        return len(self._buffers.get(run_id, []))

    # -- delivery --

    def _handle_bus_event(self, event: dict) -> None:
        run_id = event.get("run_id")
        if run_id not in self._subscriptions:
            return
        buffer = self._buffers.setdefault(run_id, [])
        buffer.append(event)

        if len(buffer) >= self._max_buffer_size:
            logger.warning(f"Buffer overflow for {run_id} ({len(buffer)} events), flushing synchronously")
            self.flush()
            return
        self._schedule_flush()

    def _handle_hook_event(self, event: dict) -> None:
        subscriber = self._subscriptions.get(event.get("run_id"))
        if subscriber is not None:
            subscriber.apply_hook_event(event)

    def _handle_hook_usage(self, report: dict) -> None:
        subscriber = self._subscriptions.get(report.get("run_id"))
        if subscriber is not None:
            subscriber.apply_hook_usage(report)

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._flush_handle = loop.call_later(self._interval_seconds, self.flush)

    def _cancel_scheduled_flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

    def flush(self) -> None:
        self._cancel_scheduled_flush()
        buffers, self._buffers = self._buffers, {}
        for run_id, events in buffers.items():
            subscriber = self._subscriptions.get(run_id)
            if subscriber is None or not events:
                continue
            try:
                if len(events) == 1:
                    subscriber.apply_event(events[0])
                else:
                    subscriber.apply_event_batch(events)
            except Exception as ex:
                logger.warning(f"Flush failed for run {run_id}: {ex}")

