"""
Logging helpers shared by the request path and the recovery script.

Every logger lives under the ``factory_gateway`` namespace. Context such as the
correlation id is bound with ``ContextLoggerAdapter`` and rendered as
``key=value`` pairs in front of the message, so plain-text logs stay greppable
while the JSON formatter can still emit the same fields as structured data.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, MutableMapping, Optional, Tuple

from .utils import now_millis, random_base36, to_base36

LOGGER_NAMESPACE = "factory_gateway"

# Marks handlers installed by configure_logging so repeated calls replace them
_HANDLER_MARKER = "_factory_gateway_handler"

_NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name or name == LOGGER_NAMESPACE:
        return logging.getLogger(LOGGER_NAMESPACE)
    if name.startswith(f"{LOGGER_NAMESPACE}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def generate_correlation_id() -> str:
    """
    Generate a correlation id of the form ``<timestamp>-<random>``.

    Both parts are lowercase base36: the timestamp is in milliseconds and the
    random part carries 48 bits, so ids created in the same millisecond by
    different workers do not collide in practice.
    """
    return f"{to_base36(now_millis())}-{random_base36(48)}"


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that carries bound context fields.

    Fields bound on the adapter are merged with the ``extra`` of each call
    (call fields win), ``None`` values are dropped, and the result is rendered
    as a sorted ``key=value`` prefix. The same mapping is attached to the log
    record as ``record.context``.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Mapping[str, Any]] = None):
        super().__init__(logger, dict(extra or {}))

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        call_fields = kwargs.pop("extra", None) or {}
        context = {
            key: value
            for key, value in {**self.extra, **call_fields}.items()
            if value is not None
        }
        if context:
            rendered = " ".join(f"{key}={context[key]}" for key in sorted(context))
            msg = f"{rendered} | {msg}"
        kwargs["extra"] = {"context": context}
        return msg, kwargs

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self.extra)

    def bind(self, **fields: Any) -> "ContextLoggerAdapter":
        """Return a new adapter carrying this adapter's fields plus ``fields``."""
        return ContextLoggerAdapter(self.logger, {**self.extra, **fields})


def as_context_logger(logger: Optional[logging.Logger | logging.LoggerAdapter], name: str) -> ContextLoggerAdapter:
    """Wrap ``logger`` (or a namespaced default) so ``bind`` is always available."""
    if isinstance(logger, ContextLoggerAdapter):
        return logger
    if isinstance(logger, logging.LoggerAdapter):
        return ContextLoggerAdapter(logger.logger, logger.extra)
    return ContextLoggerAdapter(logger or get_logger(name))


class JsonFormatter(logging.Formatter):
    """One JSON object per line; bound context goes under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "text") -> logging.Logger:
    """
    Attach a stderr handler to the ``factory_gateway`` logger.

    Calling this again replaces the handler it installed earlier instead of
    stacking a second one. Handlers owned by other code (uvicorn, pytest) are
    left alone, and records still propagate to the root logger.

    Args:
        level: Level name for the gateway loggers, e.g. ``"INFO"``
        fmt: ``"json"`` for one JSON object per line, anything else for text

    Returns:
        The configured namespace logger
    """
    namespace = logging.getLogger(LOGGER_NAMESPACE)
    for handler in list(namespace.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            namespace.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    if fmt.lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    setattr(handler, _HANDLER_MARKER, True)
    namespace.addHandler(handler)

    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    namespace.setLevel(resolved)

    # Request-level chatter from the HTTP and AWS clients is only useful when debugging
    quiet_level = logging.DEBUG if resolved <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    return namespace
