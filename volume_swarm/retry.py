"""
Bounded retry policy shared by the ledger and swap adapters.

Adapters receive a ``RetryPolicy`` instead of hard-coding ``@retry``
decorators, so the funding run and the confirmation loops can be tuned from
configuration.
"""

from dataclasses import dataclass
from typing import Tuple, Type

import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)


# Transport failures worth another attempt
NETWORK_ERRORS = (
    ConnectionError,
    TimeoutError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Max attempts, backoff interval and which errors are worth retrying."""
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 10.0
    multiplier: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = NETWORK_ERRORS

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds cannot be negative")

    @classmethod
    def fixed(cls, attempts: int, interval_seconds: float,
              retry_on: Tuple[Type[BaseException], ...] = NETWORK_ERRORS) -> "RetryPolicy":
        """Constant interval between attempts (confirmation polling)."""
        return cls(
            max_attempts=attempts,
            backoff_seconds=interval_seconds,
            max_backoff_seconds=interval_seconds,
            multiplier=1.0,
            retry_on=retry_on,
        )

    def _wait(self):
        if self.multiplier == 1.0:
            return wait_fixed(self.backoff_seconds)
        return wait_exponential(
            multiplier=self.backoff_seconds,
            exp_base=self.multiplier,
            max=self.max_backoff_seconds,
        )

    def _kwargs(self):
        return dict(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
        )

    def retrying(self) -> Retrying:
        """Synchronous tenacity controller."""
        return Retrying(**self._kwargs())

    def call(self, func, *args, **kwargs):
        """Run ``func`` under this policy, re-raising the last error."""
        return self.retrying()(func, *args, **kwargs)
