"""
Tests for retry logic and transient error detection.
"""

import pytest
from sqlalchemy.exc import OperationalError

from massindex.retry import (
    exponential_backoff,
    is_transient_error,
    should_retry_http_status,
    RetryError,
)
from massindex.store import is_systemic_store_error


class TestExponentialBackoff:
    """Test exponential backoff decorator."""

    def test_success_on_first_try(self):
        """Function that succeeds immediately should not retry."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.1)
        def succeeds():
            call_count[0] += 1
            return "success"

        assert succeeds() == "success"
        assert call_count[0] == 1

    def test_retry_then_succeed(self):
        """Function that fails then succeeds should retry."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01)
        def fails_twice():
            call_count[0] += 1
            if call_count[0] < 3:
                raise ConnectionError("Temporary failure")
            return "success"

        assert fails_twice() == "success"
        assert call_count[0] == 3

    def test_all_retries_exhausted(self):
        """Should raise RetryError chained to the last failure."""
        call_count = [0]

        @exponential_backoff(max_retries=2, base_delay=0.01)
        def always_fails():
            call_count[0] += 1
            raise ValueError("Always fails")

        with pytest.raises(RetryError) as exc_info:
            always_fails()

        assert call_count[0] == 3  # Initial + 2 retries
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_zero_retries_fails_immediately(self):
        call_count = [0]

        @exponential_backoff(max_retries=0, base_delay=0)
        def always_fails():
            call_count[0] += 1
            raise ConnectionError("down")

        with pytest.raises(RetryError):
            always_fails()
        assert call_count[0] == 1

    def test_only_catches_specified_exceptions(self):
        """Should only retry on specified exception types."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01, exceptions=(ConnectionError,))
        def raises_value_error():
            call_count[0] += 1
            raise ValueError("Not retryable")

        with pytest.raises(ValueError):
            raises_value_error()

        assert call_count[0] == 1

    def test_exponential_delay(self):
        """Delay should increase exponentially."""
        delays = []

        @exponential_backoff(
            max_retries=3,
            base_delay=0.01,
            exponential_base=2.0,
            on_retry=lambda attempt, exception, delay: delays.append(delay),
        )
        def always_fails():
            raise ConnectionError("Test")

        with pytest.raises(RetryError):
            always_fails()

        assert delays == [0.01, 0.02, 0.04]

    def test_max_delay_cap(self):
        """Delay should not exceed max_delay."""
        delays = []

        @exponential_backoff(
            max_retries=4,
            base_delay=0.001,
            max_delay=0.002,
            exponential_base=3.0,
            on_retry=lambda attempt, exception, delay: delays.append(delay),
        )
        def always_fails():
            raise ConnectionError("Test")

        with pytest.raises(RetryError):
            always_fails()

        assert all(d <= 0.002 for d in delays)


class TestTransientErrorDetection:
    """Test transient error detection utilities."""

    def test_detects_connection_errors(self):
        assert is_transient_error(ConnectionError("reset"))
        assert is_transient_error(TimeoutError())
        assert is_transient_error(Exception("Connection reset by peer"))

    def test_detects_store_outages(self):
        errors = [
            Exception("MySQL server has gone away"),
            Exception("could not connect to server"),
            Exception("database is locked"),
            Exception("503 Service Unavailable"),
        ]
        for error in errors:
            assert is_transient_error(error)

    def test_non_transient_errors(self):
        errors = [
            Exception("no such column: books.missing"),
            ValueError("Invalid data"),
            Exception("UNIQUE constraint failed"),
        ]
        for error in errors:
            assert not is_transient_error(error)

    def test_http_status_retry_logic(self):
        for status in (408, 429, 500, 502, 503, 504):
            assert should_retry_http_status(status)
        for status in (200, 201, 400, 401, 403, 404):
            assert not should_retry_http_status(status)


class TestSystemicStoreErrors:
    """Record store errors that should abort a whole partition."""

    def test_invalidated_connection_is_systemic(self):
        error = OperationalError("SELECT 1", {}, Exception("boom"), connection_invalidated=True)
        assert is_systemic_store_error(error)

    def test_sql_error_is_not_systemic(self):
        error = OperationalError("SELECT x", {}, Exception("no such column: x"))
        assert not is_systemic_store_error(error)
