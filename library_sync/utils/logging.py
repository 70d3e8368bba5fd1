"""
Logging configuration for Library Sync Service.
"""

import logging
import sys
import os
from typing import Optional, Any, Dict
import structlog
from structlog.types import Processor

_configured = False


def get_log_level() -> str:
    """Get log level from environment."""
    return os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging(level: Optional[str] = None) -> None:
    """Configure structured logging for the application."""
    global _configured
    if _configured:
        return

    # Shared processors for both console and structlog
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, (level or get_log_level()).upper(), logging.INFO))

    # Reduce noise from third-party libraries
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance."""
    return structlog.get_logger(name)


class SyncLogger:
    """
    Logger for a single sync pass.

    Every record carries the run's ``sync_run_id`` and the catalog it reads
    from, so interleaved runs (scheduler, watcher, manual) can be told apart.
    """

    def __init__(self, sync_run_id: Optional[str] = None, catalog: Optional[str] = None):
        self.logger = get_logger("sync")
        self.sync_run_id = sync_run_id
        self.catalog = catalog

    def _context(self) -> Dict[str, str]:
        context = {}
        if self.sync_run_id:
            context["sync_run_id"] = self.sync_run_id
        if self.catalog:
            context["catalog"] = self.catalog
        return context

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        log_method = getattr(self.logger, level.lower())
        context = self._context()

        structlog.contextvars.bind_contextvars(**context)
        try:
            log_method(message, **kwargs)
        finally:
            structlog.contextvars.unbind_contextvars(*context)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("ERROR", message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log the exception being handled, with traceback."""
        self._log("ERROR", message, exc_info=True, **kwargs)
