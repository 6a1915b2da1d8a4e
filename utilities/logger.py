"""
Structured logging built on structlog.
Provides JSON or console output, an optional file sink and a cycle-scoped logger.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    debug: bool = False
) -> None:
    """
    Set up structured logging with configurable output formats.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        log_file: Optional log file path
        debug: Add call-site information to every event
    """
    level = getattr(logging, log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if debug:
        processors.append(structlog.processors.CallsiteParameterAdder())

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        logging.getLogger().addHandler(file_handler)

    structlog.get_logger(__name__).info(
        "Logging system initialized",
        level=log_level,
        format=log_format,
        file=str(log_file) if log_file else None,
        debug=debug
    )


class CycleLogger:
    """
    Logger for a single account check cycle with bound context.
    """

    def __init__(self, name: str = "update_checker"):
        self.logger = structlog.get_logger(name)
        self.context = {}

    def bind_context(self, **kwargs) -> 'CycleLogger':
        """
        Bind context variables to the logger.

        Args:
            **kwargs: Context variables to bind

        Returns:
            Self for method chaining
        """
        self.context.update(kwargs)
        return self

    def log_cycle_start(self, account_id: str, release_count: int) -> None:
        """Log check cycle start."""
        self.logger.info(
            "Check cycle started",
            account_id=account_id,
            release_count=release_count,
            **self.context
        )

    def log_release_outcome(self, release_id: str, title: str, outcome: str) -> None:
        """Log the arbiter outcome for one release."""
        level = "debug" if outcome in ("unchanged", "duplicate", "suppressed") else "info"
        getattr(self.logger, level)(
            "Release checked",
            release_id=release_id,
            title=title,
            outcome=outcome,
            **self.context
        )

    def log_cycle_complete(self, checked: int, updates_found: int, sequels_found: int,
                           failed: int, duration_seconds: float) -> None:
        """Log check cycle completion."""
        self.logger.info(
            "Check cycle completed",
            checked=checked,
            updates_found=updates_found,
            sequels_found=sequels_found,
            failed=failed,
            duration_seconds=round(duration_seconds, 3),
            **self.context
        )

    def log_error(self, error: str, release_id: Optional[str] = None, source: Optional[str] = None) -> None:
        """Log an error with cycle context."""
        self.logger.error(
            "Check cycle error",
            error=error,
            release_id=release_id,
            source=source,
            **self.context
        )

    def log_retry(self, url: str, attempt: int, max_attempts: int, delay: float) -> None:
        """Log retry attempt."""
        self.logger.warning(
            "Retrying request",
            url=url,
            attempt=attempt,
            max_attempts=max_attempts,
            delay_seconds=delay,
            **self.context
        )
