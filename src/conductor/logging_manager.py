"""Structured session logging for the orchestrator and its instances.

Every module logs through ``logging.getLogger(__name__)``; this manager
attaches the session's handlers to the ``conductor`` logger tree.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

ROOT_LOGGER = "conductor"

# LogRecord attributes that are not user-supplied ``extra`` fields
RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "taskName",
    }
)


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Collect the JSON-serializable ``extra`` fields of a record."""
    extras = {}
    for key, value in record.__dict__.items():
        if key in RESERVED_ATTRS:
            continue
        try:
            json.dumps(value)
            extras[key] = value
        except (TypeError, ValueError):
            extras[key] = str(value)
    return extras


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line, extra fields included."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_obj.update(record_extras(record))
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj)


class InstanceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds instance context to all log messages."""

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


class LoggingManager:
    """Configures console and session-file logging for one process."""

    def __init__(
        self,
        session_path: str | Path | None = None,
        log_level: str = "INFO",
        console: bool = True,
        console_stream: TextIO | None = None,
    ):
        """Initialize logging manager.

        Args:
            session_path: Session directory for ``session.log`` and
                ``session.log.json``; no file logging when None
            log_level: Console log level
            console: Whether to log to the console at all
            console_stream: Console stream (stderr by default, so stdout stays
                free for protocol traffic)
        """
        self.session_path = Path(session_path) if session_path else None
        self.log_level = getattr(logging, log_level.upper(), logging.INFO)
        self._handlers: list[logging.Handler] = []
        self._instance_loggers: dict[str, InstanceLoggerAdapter] = {}

        logger = logging.getLogger(ROOT_LOGGER)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()
        self.logger = logger

        if console:
            console_handler = logging.StreamHandler(console_stream or sys.stderr)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            self._add_handler(console_handler)

        if self.session_path is not None:
            self.session_path.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                self.session_path / "session.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            self._add_handler(file_handler)

            json_handler = logging.FileHandler(self.session_path / "session.log.json")
            json_handler.setLevel(logging.DEBUG)
            json_handler.setFormatter(JsonLineFormatter())
            self._add_handler(json_handler)

        # Loggers created before this point keep their own handlers otherwise
        for name in list(logging.Logger.manager.loggerDict.keys()):
            if name.startswith(f"{ROOT_LOGGER}."):
                child_logger = logging.getLogger(name)
                if isinstance(child_logger, logging.Logger):
                    child_logger.setLevel(logging.NOTSET)
                    child_logger.propagate = True
                    child_logger.handlers.clear()

    def _add_handler(self, handler: logging.Handler) -> None:
        self.logger.addHandler(handler)
        self._handlers.append(handler)

    def get_instance_logger(self, instance_name: str, instance_id: str | None = None):
        """Get or create a logger that tags records with the instance."""
        if instance_name not in self._instance_loggers:
            self._instance_loggers[instance_name] = InstanceLoggerAdapter(
                logging.getLogger(f"{ROOT_LOGGER}.instance.{instance_name}"),
                {"instance": instance_name, "instance_id": instance_id},
            )
        return self._instance_loggers[instance_name]

    def _log_event(
        self, level: int, instance_name: str, event_type: str, message: str, data: Any
    ) -> None:
        self.get_instance_logger(instance_name).log(
            level, message, extra={"event_type": event_type, "data": data}
        )

    def log_request(self, instance_name: str, data: Any) -> None:
        self._log_event(logging.INFO, instance_name, "request", f"Request to {instance_name}", data)

    def log_response(self, instance_name: str, data: Any) -> None:
        self._log_event(
            logging.INFO, instance_name, "response", f"Response from {instance_name}", data
        )

    def log_error(self, instance_name: str, data: Any) -> None:
        self._log_event(logging.ERROR, instance_name, "error", f"Error in {instance_name}", data)

    def log_info(self, instance_name: str, message: str, data: Any = None) -> None:
        self._log_event(logging.INFO, instance_name, "info", message, data)

    def close(self) -> None:
        """Detach and close every handler this manager installed."""
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()
