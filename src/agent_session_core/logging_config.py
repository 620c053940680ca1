import sys
from pathlib import Path
from typing import Any, Iterable, Protocol, runtime_checkable

from loguru import logger

# Module prefix -> component tag shown in log lines and used by debug channels.
_COMPONENTS: dict[str, str] = {
    "agent_session_core.router": "router",
    "agent_session_core.transport": "router",
    "agent_session_core.reducer": "reducer",
    "agent_session_core.timeline": "reducer",
    "agent_session_core.usage": "reducer",
    "agent_session_core.phase": "reducer",
    "agent_session_core.session_store": "store",
    "agent_session_core.bridge": "bridge",
    "agent_session_core.storage": "storage",
}

COMPONENTS = frozenset(_COMPONENTS.values())


def component_of(module_name: str | None) -> str:
    name = module_name or ""
    for prefix, component in _COMPONENTS.items():
        if name == prefix or name.startswith(prefix + "."):
            return component
    return "app"


def _tag_component(record: dict) -> None:
    record["extra"].setdefault("component", component_of(record["name"]))


class ComponentFilter:
    """Passes records at ``level`` or above, plus DEBUG records from the named components."""

    def __init__(self, level: str, debug_components: Iterable[str]):
        self._min_no = logger.level(level).no
        self._debug_no = logger.level("DEBUG").no
        self._debug_components = frozenset(debug_components)

    def __call__(self, record: dict) -> bool:
        no = record["level"].no
        if no >= self._min_no:
            return True
        return no >= self._debug_no and record["extra"].get("component") in self._debug_components


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class _ComponentSink:
    def __init__(self, debug: list[str] | None = None):
        unknown = set(debug or ()) - COMPONENTS
        if unknown:
            logger.warning(f"Unknown debug components ignored: {sorted(unknown)}")
        self.debug_components = sorted(set(debug or ()) & COMPONENTS)

    def _sink_options(self, level: str) -> dict[str, Any]:
        if not self.debug_components or logger.level(level).no <= logger.level("DEBUG").no:
            return {"level": level}
        return {"level": "DEBUG", "filter": ComponentFilter(level, self.debug_components)}

    def _describe_debug(self) -> str:
        return f", debug: {','.join(self.debug_components)}" if self.debug_components else ""


class ConsoleLogConsumer(_ComponentSink):
    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            format="<level>{level:<8}</level> | <magenta>{extra[component]:<7}</magenta> | <cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            **self._sink_options(level),
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level}{self._describe_debug()})"


class FileLogConsumer(_ComponentSink):
    def __init__(
        self,
        path: str = "session.log",
        rotation: str = "10 MB",
        retention: int = 3,
        debug: list[str] | None = None,
    ):
        super().__init__(debug)
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[component]:<7} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            **self._sink_options(level),
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level}{self._describe_debug()})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "file", "path": "session.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    debug_components: list[str] | None = None,
) -> list[str]:
    """Replace loguru's default sink with the configured consumers.

    ``debug_components`` turns on DEBUG output for those components on every
    consumer that does not name its own ``debug`` list. Returns one description
    per registered consumer.
    """
    logger.remove()
    logger.configure(patcher=_tag_component)

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []
    for config in consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        if debug_components and "debug" not in kwargs:
            kwargs["debug"] = list(debug_components)
        sink_level = config.get("level", level)

        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
