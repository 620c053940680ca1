from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

from loguru import logger

EventHandler = Callable[[dict], None]
Unlisten = Callable[[], None]


@runtime_checkable
class Transport(Protocol):
    async def listen(self, name: str, handler: EventHandler) -> Unlisten: ...


class InMemoryTransport:
    """Named push channels delivered synchronously on the caller's loop."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventHandler]] = {}

    async def listen(self, name: str, handler: EventHandler) -> Unlisten:
        self._listeners.setdefault(name, []).append(handler)

        def unlisten() -> None:
            handlers = self._listeners.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unlisten

    def emit(self, name: str, payload: dict) -> int:
        handlers = list(self._listeners.get(name, []))
        if not handlers:
            logger.debug(f"No listener for {name!r}")
        for handler in handlers:
            handler(payload)
        return len(handlers)

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, []))
