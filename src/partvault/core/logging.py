"""
PartVault structured logging.

Every archive, restore and clone phase is logged with structured context
(device, partition index, backend, phase) so a failed run can be
reconstructed from the log file alone. The phase context is bound through
structlog's contextvars, so lines logged by backends and helpers while a
phase runs carry it without passing it along.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from contextvars import Token
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import humanize
import structlog
from structlog.types import EventDict, WrappedLogger

if TYPE_CHECKING:
    from partvault.core.config import LoggingConfig


_configured = False


def humanize_sizes(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Render byte counts (keys ending in _bytes) as binary sizes for the console."""
    for key, value in event_dict.items():
        if key.endswith("_bytes") and isinstance(value, int) and not isinstance(value, bool):
            event_dict[key] = humanize.naturalsize(value, binary=True)
    return event_dict


def setup_logging(config: LoggingConfig) -> None:
    """Configure structured logging for PartVault."""
    global _configured

    if _configured:
        return

    handlers: list[logging.Handler] = []

    if config.console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, config.level))
        handlers.append(console_handler)

    if config.file_enabled:
        config.log_directory.mkdir(parents=True, exist_ok=True)
        log_file = config.log_directory / f"partvault_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG,
        handlers=handlers,
        format="%(message)s",
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]

    if config.json_format:
        # Byte counts stay exact in machine-readable logs
        renderers: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [humanize_sizes, structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name or "partvault")


class OperationLogger:
    """
    Context manager for one phase of an operation.

    Logs the start, end and duration of the phase, and binds `phase` plus
    the given context (device, archive, ...) for everything logged inside
    it. Nested phases stack; leaving one restores the outer binding.
    """

    def __init__(
        self,
        operation: str,
        logger: structlog.stdlib.BoundLogger | None = None,
        **context: Any,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.context = context
        self.start_time: datetime | None = None
        self._tokens: Mapping[str, Token[Any]] = {}

    @property
    def elapsed_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        return (datetime.now() - self.start_time).total_seconds()

    def __enter__(self) -> OperationLogger:
        self.start_time = datetime.now()
        self._tokens = structlog.contextvars.bind_contextvars(phase=self.operation, **self.context)
        self.logger.info(f"Starting {self.operation}")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        try:
            if exc_type is not None:
                self.logger.error(
                    f"Failed {self.operation}",
                    duration_seconds=self.elapsed_seconds,
                    error_type=exc_type.__name__,
                    error=str(exc_val),
                )
            else:
                self.logger.info(f"Completed {self.operation}", duration_seconds=self.elapsed_seconds)
        finally:
            # Restores whatever an enclosing phase had bound
            structlog.contextvars.reset_contextvars(**self._tokens)


class SessionLogger:
    """
    Audit trail of one session, written as JSON Lines.

    Each entry is appended and flushed as it is logged, so a run that is
    killed mid-restore still leaves every step up to that point on disk.
    `close` appends a final summary record.
    """

    def __init__(self, session_file: Path, logger: structlog.stdlib.BoundLogger | None = None):
        self.session_file = session_file
        self.logger = logger or get_logger()
        self.counts: dict[str, int] = {}
        self.session_file.parent.mkdir(parents=True, exist_ok=True)

    def log(self, level: str, message: str, **kwargs: Any) -> None:
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": message,
            **kwargs,
        }
        self.counts[level] = self.counts.get(level, 0) + 1
        self._append(entry)

        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method(message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log("ERROR", message, **kwargs)

    def close(self) -> None:
        """Append the summary record."""
        self._append(
            {
                "timestamp": datetime.now().isoformat(),
                "summary": {
                    "total_entries": sum(self.counts.values()),
                    "errors": self.counts.get("ERROR", 0),
                    "warnings": self.counts.get("WARNING", 0),
                },
            }
        )

    def _append(self, record: dict[str, Any]) -> None:
        with open(self.session_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")
