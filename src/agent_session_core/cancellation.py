from __future__ import annotations


class CancellationToken:
    """Snapshot of a generation counter taken before an await.

    Once the counter moves on, the token reports ``cancelled`` and the result of
    the awaited call must be dropped without touching state.
    """

    def __init__(self, counter: GenerationCounter, generation: int):
        self._counter = counter
        self._generation = generation

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def cancelled(self) -> bool:
        return self._counter.value != self._generation


class GenerationCounter:
    def __init__(self) -> None:
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def advance(self) -> CancellationToken:
        """Invalidate every outstanding token and hand out a fresh one."""
        self._value += 1
        return CancellationToken(self, self._value)

    def current(self) -> CancellationToken:
        return CancellationToken(self, self._value)


class OpGuard:
    """Admits one in-flight operation and remembers whether its owner is still mounted."""

    def __init__(self) -> None:
        self._active = False
        self._mounted = True

    @property
    def busy(self) -> bool:
        return self._active

    @property
    def is_mounted(self) -> bool:
        return self._mounted

    def acquire(self) -> bool:
        if self._active:
            return False
        self._active = True
        return True

    def release(self) -> None:
        self._active = False

    def unmount(self) -> None:
        self._mounted = False

    def mount(self) -> None:
        self._mounted = True
