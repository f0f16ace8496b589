import logging
import os
from typing import Any, MutableMapping, Optional


DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEFAULT_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | room=%(room)s role=%(role)s | %(message)s"
)

_CONTEXT_FIELDS = ("request_id", "room", "role")


class ContextFilter(logging.Filter):
    """Defaults the room/role/request_id fields so the formatter never fails."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for name in _CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


class RoomLogger(logging.LoggerAdapter):
    """Logger bound to a room code and caller role.

    Per-call ``extra`` values override the bound ones.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Initialize root logger with the pipe formatter and context filter."""
    resolved_level = getattr(logging, (level or DEFAULT_LEVEL), logging.INFO)
    formatter = logging.Formatter(fmt or DEFAULT_FORMAT)

    root = logging.getLogger()
    root.setLevel(resolved_level)

    # uvicorn --reload re-imports; drop old handlers first
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a module logger; ensure root is initialized."""
    if not logging.getLogger().handlers:
        setup_logging()
    return logging.getLogger(name)


def room_logger(
    logger: logging.Logger, room: Optional[str], role: str = "-"
) -> RoomLogger:
    return RoomLogger(logger, {"room": room or "-", "role": role})
