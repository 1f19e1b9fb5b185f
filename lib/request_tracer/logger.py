"""
Logger protocol for reporting tracking failures.

The tracking client reports storage and circuit breaker failures through an
injected logger instead of raising them at the caller. NoOpLogger is the
default; StdlibLogger forwards to the standard logging module.
"""
import logging
from typing import Any, Dict, Optional, Protocol


class TrackerLogger(Protocol):
    """
    Protocol for leveled, structured logging of tracking events.

    Implementations can forward to logging, structlog, a metrics pipeline,
    or drop messages entirely.
    """

    def error(self, msg: str, **fields: Any) -> None:
        ...

    def warn(self, msg: str, **fields: Any) -> None:
        ...

    def info(self, msg: str, **fields: Any) -> None:
        ...

    def debug(self, msg: str, **fields: Any) -> None:
        ...


class NoOpLogger:
    """
    No-op implementation that discards everything.

    Used when no logger is supplied to the tracking client.
    """

    def error(self, msg: str, **fields: Any) -> None:
        pass

    def warn(self, msg: str, **fields: Any) -> None:
        pass

    def info(self, msg: str, **fields: Any) -> None:
        pass

    def debug(self, msg: str, **fields: Any) -> None:
        pass


def format_fields(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in fields.items())


class StdlibLogger:
    """Adapter that writes structured fields to a logging.Logger as key=value pairs."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("request_tracer")

    def _log(self, level: int, msg: str, fields: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        if fields:
            msg = f"{msg} {format_fields(fields)}"
        self.logger.log(level, msg, extra={'tracker_fields': fields})

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, fields)

    def warn(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, fields)

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, fields)
