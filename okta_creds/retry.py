"""
Explicit retry policy for idempotent network calls.

The policy is a plain value handed to the exchanger and the SSO discoverer;
nothing retries implicitly.  botocore's own retry handler is switched off
(see ``botocore_config``) so attempt counts reported to the user are ours.
"""

import logging
import random
import time
from dataclasses import dataclass, field

import requests
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .errors import NetworkError

logger = logging.getLogger(__name__)

# Error codes that mean "slow down" or "try again later"
RETRYABLE_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RateExceeded",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServerException",
    "RequestTimeout",
    "RequestTimeoutException",
}

TRANSPORT_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
    requests.ConnectionError,
    requests.Timeout,
)


def full_jitter(delay):
    """Return a random delay in ``[0, delay]``."""
    return random.uniform(0, delay)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: total attempts including the first one
        base_delay: delay before the second attempt, in seconds
        max_delay: upper bound for a single delay
        jitter: function mapping the computed delay to the one actually slept
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: object = field(default=full_jitter, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def delay(self, attempt):
        """Delay after the *attempt*-th failure (1-based)."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        return self.jitter(delay)

    def call(self, func, description, retryable=None, sleep=time.sleep):
        """Call *func* until it succeeds or the attempt budget is spent.

        Exceptions for which *retryable* returns False propagate immediately.
        Exhausting the budget raises NetworkError carrying the attempt count.
        """
        retryable = retryable or is_retryable
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except Exception as exc:
                if not retryable(exc):
                    raise
                if attempt == self.max_attempts:
                    raise NetworkError(f"{description} failed: {exc}", attempts=attempt) from exc
                wait = self.delay(attempt)
                logger.info(
                    "%s failed (%s), attempt %d/%d, retrying in %.2fs",
                    description, error_code(exc), attempt, self.max_attempts, wait,
                )
                sleep(wait)
        raise AssertionError("unreachable")


NO_RETRY = RetryPolicy(max_attempts=1)


def error_code(error):
    """Return the service error code of *error*, or its class name."""
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "Unknown")
    return error.__class__.__name__


def http_status(error):
    if isinstance(error, ClientError):
        return error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


def is_retryable(error):
    """Throttling, 5xx and transport failures are worth another attempt."""
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, TRANSPORT_ERRORS):
        return True
    if isinstance(error, ClientError):
        if error_code(error) in RETRYABLE_ERROR_CODES:
            return True
        status = http_status(error)
        return status is not None and (status == 429 or status >= 500)
    return False


def botocore_config(timeout):
    """Client config with botocore retries disabled and bounded timeouts."""
    return Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )
