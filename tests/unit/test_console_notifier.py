"""
Unit tests for ConsoleNotifier adapter.

Tests verify the console notifier implements the Notifier protocol
and logs verification codes in the correct format.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.adapters.smtp.console import ConsoleNotifier
from src.domain.ports import Notifier


class TestConsoleNotifierProtocol:
    """Tests for Notifier protocol compliance."""

    def test_implements_notifier_protocol(self) -> None:
        notifier = ConsoleNotifier()
        assert callable(notifier.send_code)

        def accepts_notifier(n: Notifier) -> None:
            pass

        accepts_notifier(notifier)

    def test_no_explicit_inheritance(self) -> None:
        """ConsoleNotifier uses structural subtyping, not inheritance."""
        assert ConsoleNotifier.__bases__ == (object,)


class TestSendCode:
    """Tests for send_code method."""

    def test_logs_at_info(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO):
            ConsoleNotifier().send_code("alice@ttu.edu", "482913")

        assert len(caplog.records) == 1
        assert caplog.records[0].levelno == logging.INFO

    def test_log_format(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO):
            ConsoleNotifier().send_code("alice@ttu.edu", "004217")

        assert "[VERIFICATION] Email: alice@ttu.edu Code: 004217" in caplog.text

    def test_returns_none(self) -> None:
        assert ConsoleNotifier().send_code("alice@ttu.edu", "482913") is None


class TestThreadSafety:
    def test_concurrent_logging_is_complete(self, caplog: pytest.LogCaptureFixture) -> None:
        notifier = ConsoleNotifier()

        with caplog.at_level(logging.INFO), ThreadPoolExecutor(max_workers=5) as executor:
            futures = [
                executor.submit(notifier.send_code, f"user{i}@ttu.edu", f"{i:06d}")
                for i in range(10)
            ]
            for f in futures:
                f.result()

        assert len(caplog.records) == 10
        for record in caplog.records:
            assert "[VERIFICATION]" in record.message
            assert "Code:" in record.message
