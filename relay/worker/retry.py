"""Retry/backoff policy: which failures are worth another attempt, and when."""

import enum
import random
from collections.abc import Callable

import httpx

from relay.config import settings


class Classification(enum.Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


class DeliveryError(Exception):
    """A delivery attempt that reached a verdict other than success."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def error_for_status(status_code: int, body: str | None = None) -> DeliveryError:
    """Build a DeliveryError for a non-2xx HTTP response.

    429, 408 and 5xx are retryable. Anything else (including 410 Gone and
    unfollowed redirects) is terminal.
    """
    excerpt = (body or "")[:200]
    message = f"HTTP {status_code}: {excerpt}" if excerpt else f"HTTP {status_code}"
    retryable = status_code in (408, 429) or status_code >= 500
    return DeliveryError(message, status_code=status_code, retryable=retryable)


def describe_error(error: BaseException) -> str:
    """Human-readable reason stored in last_error and delivery logs."""
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return "Request timeout"
    message = str(error)
    return message or error.__class__.__name__


class RetryPolicy:
    """Exponential backoff with a cap and optional jitter.

    next_delay(n) = min(max_delay, base_delay * 2**n), stretched by a random
    factor in [1.0, 1.5) when jitter is on. The stretch stays below the next
    step's un-jittered delay, so delays never shrink as attempts grow.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter: bool = True,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if base_delay < 0 or max_delay < 0:
            raise ValueError("Delays must be non-negative")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
        )

    def classify(self, error: BaseException) -> Classification:
        if isinstance(error, DeliveryError):
            return Classification.RETRYABLE if error.retryable else Classification.TERMINAL
        # Malformed endpoint: retrying cannot help
        if isinstance(error, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
            return Classification.TERMINAL
        if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
            return Classification.RETRYABLE
        # Unknown failures still get the bounded retry budget
        return Classification.RETRYABLE

    def next_delay(self, attempt_number: int) -> float:
        """Seconds to wait before the attempt after attempt_number."""
        try:
            raw = self.base_delay * (2 ** max(attempt_number, 0))
        except OverflowError:
            raw = self.max_delay
        delay = min(self.max_delay, raw)
        if self.jitter and delay < self.max_delay:
            delay = min(self.max_delay, delay * (1.0 + 0.5 * self._rng()))
        return delay

    def should_retry(self, error: BaseException, attempts_made: int, max_attempts: int) -> bool:
        """Bounded retry: never past max_attempts, never for terminal errors."""
        if attempts_made >= max_attempts:
            return False
        return self.classify(error) is Classification.RETRYABLE
