#!/usr/bin/env python3
"""Tests for the transient error backoff."""

import time
from types import SimpleNamespace

import pytest

from cloudnav.errors import (
    ErrorBodyDeserializationError,
    InvalidGrant,
    ResponseWaitError,
)
from cloudnav.retry import RetryPolicy, is_transient, retry_transient, wait_randomized_exponential


def test_wait_grows_and_is_capped():
    wait = wait_randomized_exponential(initial=0.1, multiplier=2.0,
                                       randomization=0.5, max_interval=2.0)
    for attempt, interval in [(1, 0.1), (2, 0.2), (3, 0.4), (5, 1.6), (6, 2.0), (12, 2.0)]:
        for _ in range(20):
            value = wait(SimpleNamespace(attempt_number=attempt))
            assert interval * 0.5 - 1e-9 <= value <= interval * 1.5 + 1e-9


def test_transient_classification():
    assert is_transient(ResponseWaitError('a', OSError('down')))
    assert is_transient(ErrorBodyDeserializationError('a', 502, 'Bad Gateway'))
    assert not is_transient(InvalidGrant('a', 'revoked'))
    assert not is_transient(ValueError('not a cloud error'))


class FlakyEndpoint:
    def __init__(self, errors, policy):
        self.errors = list(errors)
        self.attempts = 0
        self.retry_policy = policy

    @retry_transient
    async def call(self, value):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return value


FAST = RetryPolicy(initial=0.001, max_interval=0.002, max_elapsed=1.0)


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    endpoint = FlakyEndpoint([ResponseWaitError('a', OSError('down'))] * 2, FAST)
    assert await endpoint.call('done') == 'done'
    assert endpoint.attempts == 3


@pytest.mark.asyncio
async def test_permanent_error_stops_immediately():
    endpoint = FlakyEndpoint([InvalidGrant('a', 'revoked'), ResponseWaitError('a', OSError())], FAST)
    with pytest.raises(InvalidGrant):
        await endpoint.call('done')
    assert endpoint.attempts == 1


@pytest.mark.asyncio
async def test_deadline_surfaces_last_transient_error():
    policy = RetryPolicy(initial=0.01, max_interval=0.02, max_elapsed=0.2)
    errors = [ResponseWaitError('a', OSError(f"attempt {n}")) for n in range(1000)]
    endpoint = FlakyEndpoint(errors, policy)

    start = time.monotonic()
    with pytest.raises(ResponseWaitError) as exc_info:
        await endpoint.call('done')

    assert time.monotonic() - start < 2.0
    assert endpoint.attempts > 1
    assert f"attempt {endpoint.attempts - 1}" in str(exc_info.value)
