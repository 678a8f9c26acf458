"""
Unit tests for deadline-bounded retries of transient store errors.
"""

import logging
import time

import pytest

from workplane.exceptions import ConflictException, ForbiddenException, StoreUnavailableException
from workplane.utils.deadline import Deadline
from workplane.utils.retry import backoff_delay, retry_transient


class Flaky:
    def __init__(self, errors, result="done"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestBackoffDelay:
    def test_doubles_up_to_the_cap(self):
        assert [backoff_delay(n, 0.1, 0.5) for n in range(5)] == [0.1, 0.2, 0.4, 0.5, 0.5]


class TestRetryTransient:
    @pytest.mark.asyncio
    async def test_retries_conflicts_and_unavailability(self):
        operation = Flaky([ConflictException("CFApp", "a"), StoreUnavailableException("down")])

        result = await retry_transient(operation, Deadline(5), base_delay=0.001)

        assert result == "done"
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_non_retryable_errors_surface_immediately(self):
        operation = Flaky([ForbiddenException("alice", "update", "CFApp")])

        with pytest.raises(ForbiddenException):
            await retry_transient(operation, Deadline(5), base_delay=0.001)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_gives_up_at_the_deadline(self):
        operation = Flaky([ConflictException("CFApp", "a")] * 1000)

        started = time.monotonic()
        with pytest.raises(ConflictException):
            await retry_transient(operation, Deadline(0.2), base_delay=0.01, max_delay=0.02)

        assert time.monotonic() - started < 0.2 + 0.1
        assert operation.calls > 1

    @pytest.mark.asyncio
    async def test_no_retry_when_the_first_wait_would_pass_the_deadline(self, caplog):
        operation = Flaky([StoreUnavailableException("down")] * 10)

        with caplog.at_level(logging.WARNING, logger="workplane.utils.retry"):
            with pytest.raises(StoreUnavailableException):
                await retry_transient(operation, Deadline(0.005), description="namespace ns", base_delay=0.05)

        assert operation.calls == 1
        assert "Giving up on namespace ns after 1 attempts" in caplog.text


class TestDeadline:
    def test_remaining_never_negative(self):
        deadline = Deadline(0)
        assert deadline.remaining() == 0.0
        assert deadline.expired()

    def test_negative_timeout_rejected(self):
        with pytest.raises(ValueError):
            Deadline(-1)
