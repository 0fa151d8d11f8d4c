# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for codium_devcontainer/logging.py."""

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from codium_devcontainer.logging import (
    OUTPUT_LOGGER_NAME,
    LoggingSink,
    SecretFilter,
    configure_logging,
)


def _record(msg: str, *args: object) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg=msg,
        args=args,
        exc_info=None,
    )


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestSecretFilter:
    """Tests for SecretFilter."""

    def test_passes_unregistered_text(self) -> None:
        """Without secrets, records pass through unchanged."""
        record = _record("token is abc")

        assert SecretFilter().filter(record) is True
        assert record.msg == "token is abc"

    def test_redacts_message_and_args(self) -> None:
        """Secrets are masked in the message and string arguments."""
        SecretFilter.register_secret("ghp_secret")
        record = _record("$ %s -e GITHUB_TOKEN=%s", "docker run", "ghp_secret")

        SecretFilter().filter(record)

        assert record.getMessage() == (
            "$ docker run -e GITHUB_TOKEN=[REDACTED]"
        )

    def test_longest_secret_first(self) -> None:
        """Overlapping secrets are fully masked."""
        SecretFilter.register_secret("abc")
        SecretFilter.register_secret("abcdef")
        record = _record("value=abcdef")

        SecretFilter().filter(record)

        assert record.msg == "value=[REDACTED]"

    def test_empty_secret_ignored(self) -> None:
        """Empty strings are never registered."""
        SecretFilter.register_secret("")
        record = _record("nothing to hide")

        SecretFilter().filter(record)

        assert record.msg == "nothing to hide"


class TestLoggingSink:
    """Tests for LoggingSink."""

    def test_command_and_output(self, caplog: pytest.LogCaptureFixture) -> None:
        """Commands log at INFO, non-blank output lines at DEBUG."""
        sink = LoggingSink()

        with caplog.at_level(logging.DEBUG, logger=OUTPUT_LOGGER_NAME):
            sink.command(["docker", "exec", "app", "sh", "-c", "echo hi"])
            sink.output("line one\n\nline two\n")

        messages = [(r.levelno, r.getMessage()) for r in caplog.records]
        assert messages == [
            (logging.INFO, "$ docker exec app sh -c 'echo hi'"),
            (logging.DEBUG, "line one"),
            (logging.DEBUG, "line two"),
        ]


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_replaces_handlers(self, restore_root_logger: None) -> None:
        """Repeated calls never duplicate handlers."""
        configure_logging(level=logging.INFO)
        configure_logging(level=logging.WARNING)

        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING

    def test_log_file_gets_debug(
        self, tmp_path: Path, restore_root_logger: None
    ) -> None:
        """The log file receives DEBUG records with secrets redacted."""
        log_file = tmp_path / "state" / "run.log"
        SecretFilter.register_secret("hunter2")

        configure_logging(level=logging.INFO, log_file=log_file)
        logging.getLogger("codium_devcontainer.test").debug(
            "password is %s", "hunter2"
        )
        for handler in logging.getLogger().handlers:
            handler.flush()

        text = log_file.read_text()
        assert "password is [REDACTED]" in text
        assert "hunter2" not in text
        assert logging.getLogger().level == logging.DEBUG
