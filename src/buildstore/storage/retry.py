"""Retry policy for store requests: bounded exponential backoff."""

from dataclasses import dataclass
from typing import FrozenSet, Optional

# 4xx codes worth retrying: token refresh races, request timeouts, throttling
DEFAULT_RETRY_STATUSES: FrozenSet[int] = frozenset({401, 408, 429})


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a request is retried.

    The policy is read-only and shared by every request of a client.

    Attributes:
        max_attempts: Total number of attempts, including the first one
        wait_min: Wait before the second attempt, in seconds
        wait_max: Upper bound for any wait, in seconds
        retry_statuses: 4xx status codes that are retried (404 never is)
    """

    max_attempts: int = 5
    wait_min: float = 1.0
    wait_max: float = 30.0
    retry_statuses: FrozenSet[int] = DEFAULT_RETRY_STATUSES

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.wait_min < 0:
            raise ValueError(f"wait_min cannot be negative, got {self.wait_min}")
        if self.wait_min > self.wait_max:
            raise ValueError(
                f"wait_min ({self.wait_min}) cannot exceed wait_max ({self.wait_max})"
            )
        object.__setattr__(self, "retry_statuses", frozenset(self.retry_statuses))

    def wait(self, attempt: int) -> float:
        """Seconds to wait before the given (1-based) attempt.

        The first attempt is immediate; later waits double from wait_min and
        are capped at wait_max.

        Examples:
            >>> policy = RetryPolicy(max_attempts=5, wait_min=1, wait_max=10)
            >>> [policy.wait(n) for n in range(1, 7)]
            [0.0, 1.0, 2.0, 4.0, 8.0, 10.0]
        """
        if attempt <= 1:
            return 0.0
        exponent = min(attempt - 2, 62)
        return float(min(self.wait_max, self.wait_min * (2**exponent)))

    def should_retry(self, status_code: Optional[int]) -> bool:
        """Decide whether a failed attempt is worth repeating.

        Args:
            status_code: HTTP status of the response, None for network errors

        Returns:
            True for network errors, 5xx and configured 4xx codes
        """
        if status_code is None:
            return True
        if status_code == 404:
            return False
        if 500 <= status_code < 600:
            return True
        if 400 <= status_code < 500:
            return status_code in self.retry_statuses
        return False
