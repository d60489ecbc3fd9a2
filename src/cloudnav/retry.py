#!/usr/bin/env python3
"""Backoff for transient cloud errors."""

import logging
import random
from dataclasses import dataclass
from functools import wraps
from typing import Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_delay,
)
from tenacity.wait import wait_base

from .errors import CloudError

logger = logging.getLogger(__name__)


class wait_randomized_exponential(wait_base):
    """Exponential backoff with a randomization factor.

    The n-th wait is ``initial * multiplier ** (n - 1)`` capped at
    ``max_interval``, then spread uniformly by +/- ``randomization``.
    """

    def __init__(self, initial: float = 0.1, multiplier: float = 2.0,
                 randomization: float = 0.5, max_interval: float = 2.0):
        self.initial = initial
        self.multiplier = multiplier
        self.randomization = randomization
        self.max_interval = max_interval

    def __call__(self, retry_state) -> float:
        attempt = max(retry_state.attempt_number, 1)
        interval = min(self.initial * self.multiplier ** (attempt - 1), self.max_interval)
        delta = self.randomization * interval
        return random.uniform(interval - delta, interval + delta)


@dataclass
class RetryPolicy:
    """Backoff parameters. ``max_elapsed`` bounds the whole retry sequence."""

    initial: float = 0.1
    multiplier: float = 2.0
    randomization: float = 0.5
    max_interval: float = 2.0
    max_elapsed: float = 15.0

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_delay(self.max_elapsed),
            wait=wait_randomized_exponential(
                self.initial, self.multiplier, self.randomization, self.max_interval
            ),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


def is_transient(error: BaseException) -> bool:
    return isinstance(error, CloudError) and not error.is_permanent


def retry_transient(func: Callable) -> Callable:
    """Decorator retrying an async method on transient errors.

    The policy is read from the instance's ``retry_policy`` attribute at
    call time. Permanent errors and the last transient error once the
    deadline passes are raised unchanged.
    """
    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        policy: RetryPolicy = getattr(self, 'retry_policy', None) or RetryPolicy()
        return await policy.retrying()(func, self, *args, **kwargs)
    return wrapper
