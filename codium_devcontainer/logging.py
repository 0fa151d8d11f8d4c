# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Centralized logging configuration and the command diagnostic sink.

Library modules log through ``logging.getLogger(__name__)``.  Output of
external commands (container engine, ssh) is routed through a
``DiagnosticSink`` that is injected into the components running those
commands; the default sink forwards everything to the
``codium_devcontainer.output`` logger so the operator sees a single
trace of what was executed.

Usage:
    # In entry points (CLI)
    from codium_devcontainer.logging import configure_logging
    configure_logging(level=logging.INFO)

    # In library modules
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Building image: %s", tag)
"""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Sequence
from pathlib import Path
from typing import ClassVar, Protocol


#: Logger name that receives command lines and their combined output.
OUTPUT_LOGGER_NAME = "codium_devcontainer.output"


class SecretFilter(logging.Filter):
    """Logging filter that redacts registered secrets from log output.

    Values passed to the container through ``containerEnv`` end up on
    engine command lines; registering them here keeps them out of the
    diagnostic trace.

    Example:
        SecretFilter.register_secret("ghp_abc123")
        logger.info("Using token: ghp_abc123")
        # Output: "Using token: [REDACTED]"
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact any registered secrets from the record.

        Returns:
            Always True (record is never suppressed, only modified).
        """
        if self._pattern is not None:
            record.msg = self._pattern.sub("[REDACTED]", str(record.msg))
            if record.args:
                record.args = tuple(
                    self._pattern.sub("[REDACTED]", str(arg))
                    if isinstance(arg, str)
                    else arg
                    for arg in record.args
                )
        return True

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Register a secret to be redacted from all log output.

        Args:
            secret: The secret string to redact. Empty strings are ignored.
        """
        if secret:
            cls._secrets.add(secret)
            cls._rebuild_pattern()

    @classmethod
    def clear_secrets(cls) -> None:
        """Clear all registered secrets. Primarily for testing."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def _rebuild_pattern(cls) -> None:
        if cls._secrets:
            # Longest first so overlapping secrets are fully masked
            ordered = sorted(cls._secrets, key=len, reverse=True)
            escaped = [re.escape(s) for s in ordered]
            cls._pattern = re.compile("|".join(escaped))
        else:
            cls._pattern = None


class DiagnosticSink(Protocol):
    """Receives every external command line and its combined output."""

    def command(self, argv: Sequence[str]) -> None: ...

    def output(self, text: str) -> None: ...


class LoggingSink:
    """Diagnostic sink that forwards to a ``logging.Logger``.

    Command lines are logged at INFO, their output at DEBUG so that
    ``--debug`` shows the full engine trace while normal runs only show
    what was executed.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(OUTPUT_LOGGER_NAME)

    def command(self, argv: Sequence[str]) -> None:
        self._logger.info("$ %s", shlex.join(argv))

    def output(self, text: str) -> None:
        for line in text.splitlines():
            if line.strip():
                self._logger.debug("%s", line)


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    log_file: Path | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Configure logging for the application.

    Sets up the root logger with a standard format and optional secret
    redaction filter.  Existing root handlers are removed, so calling
    this more than once never duplicates output.

    Args:
        level: The logging level (e.g., logging.INFO, logging.DEBUG).
        format_string: Custom format string. If None, uses default format.
        log_file: Optional file that additionally receives every record
            at DEBUG level (the full diagnostic trace).
        add_secret_filter: Whether to add the SecretFilter to redact secrets.
    """
    if format_string is None:
        format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.setLevel(level)

    handlers: list[logging.Handler] = [handler]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    if add_secret_filter:
        for h in handlers:
            h.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_file is not None else level)

    # Remove existing handlers to avoid duplicates
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    for h in handlers:
        root_logger.addHandler(h)
