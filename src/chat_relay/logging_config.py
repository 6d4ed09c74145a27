"""Log sinks for the relay process.

Sinks come from the ``LogConsumers`` list in config.json. Each entry names a
``type`` and may set its own ``level`` and a ``modules`` map of per-module
levels. Every record passes through the credential redactor before any sink
sees it.
"""

import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from chat_relay.redact import redact_record

# Frame captures and per-save decisions are logged at DEBUG here.
RELAY_MODULES = ("chat_relay.relay", "chat_relay.services")

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {process} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str, modules: dict[str, str]) -> None: ...
    def describe(self, level: str, modules: dict[str, str]) -> str: ...


def _threshold(level: str, modules: dict[str, str]) -> tuple[str, dict[str, str] | None]:
    """Handler level plus a loguru filter dict honouring per-module overrides."""
    if not modules:
        return level, None
    lowest = min([level, *modules.values()], key=lambda name: logger.level(name).no)
    return lowest, {"": level, **modules}


def _overrides_text(modules: dict[str, str]) -> str:
    return "".join(f", {name}={lvl}" for name, lvl in sorted(modules.items()))


class ConsoleLogConsumer:
    def register(self, level: str, modules: dict[str, str]) -> None:
        sink_level, module_filter = _threshold(level, modules)
        logger.add(sys.stderr, level=sink_level, filter=module_filter, format=_CONSOLE_FORMAT)

    def describe(self, level: str, modules: dict[str, str]) -> str:
        return f"console (stderr, {level}{_overrides_text(modules)})"


class FileLogConsumer:
    """Rotating file sink; ``serialize`` writes one JSON object per record."""

    def __init__(
        self,
        path: str = "logs/chat-relay.log",
        rotation: str = "10 MB",
        retention: int | str = 3,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str, modules: dict[str, str]) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        sink_level, module_filter = _threshold(level, modules)
        # Relay tasks and request handlers log from the same loop; enqueue keeps writes off it.
        logger.add(
            self._path,
            level=sink_level,
            filter=module_filter,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            enqueue=True,
        )

    def describe(self, level: str, modules: dict[str, str]) -> str:
        kind = "json lines" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level}{_overrides_text(modules)})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    *,
    debug_capture: bool = False,
) -> list[str]:
    """Replace all sinks with ``consumers`` (stderr only when None).

    With ``debug_capture`` the relay modules log at DEBUG on every sink, so
    captured upstream frames show up without lowering the level of the rest.
    An entry's own ``modules`` map wins over that. Returns one description
    per registered sink.
    """
    logger.remove()
    logger.configure(patcher=redact_record)

    captured = {name: "DEBUG" for name in RELAY_MODULES} if debug_capture else {}
    descriptions: list[str] = []

    if consumers is None:
        consumers = [{"type": "console"}]

    for config in consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        options = {k: v for k, v in config.items() if k not in ("type", "level", "modules")}
        sink_level = str(config.get("level", level)).upper()
        modules = {**captured, **{name: str(lvl).upper() for name, lvl in (config.get("modules") or {}).items()}}

        consumer = cls(**options)
        consumer.register(sink_level, modules)
        descriptions.append(consumer.describe(sink_level, modules))

    return descriptions
