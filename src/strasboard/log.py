"""Logging with key=value fields, bound per component (e.g. component="tempo")."""

import logging
from collections.abc import MutableMapping
from typing import Any

_LOGGER_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Accepts arbitrary keyword fields: logger.warning("Fetch failed", error=str(e))"""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        fields = {key: kwargs.pop(key) for key in list(kwargs) if key not in _LOGGER_KWARGS}
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {}), **fields}
        return msg, kwargs


def get_structured_logger(name: str, **fields: Any) -> StructuredLoggerAdapter:
    """Logger whose records always carry `fields`; call-site fields take precedence"""
    return StructuredLoggerAdapter(logging.getLogger(name), fields)


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Fields attached to a record beyond the standard LogRecord attributes"""
    return {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}


class StructuredFormatter(logging.Formatter):
    """Appends a record's fields as "[key=value ...]" to the formatted line."""

    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        fields = record_fields(record)
        if not fields:
            return rendered
        pairs = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{rendered} [{pairs}]"
