"""
PhiloGraph - Retry Policy

Bounded exponential backoff for UNAVAILABLE failures. Every other error kind
fails the step on the first attempt.
"""

from dataclasses import dataclass

from philograph.core.errors import ErrorKind, PhiloGraphError, error_kind


@dataclass
class RetryPolicy:
    """
    max_retries counts retries AFTER the initial attempt
    (max_retries=3 means up to 4 attempts).
    """
    max_retries: int = 3
    backoff_base: float = 0.2
    backoff_factor: float = 2.0
    backoff_max: float = 5.0

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        """
        Args:
            exc: Failure of the attempt
            attempt: 1-based number of the attempt that failed
        """
        if isinstance(exc, PhiloGraphError) and not exc.retryable:
            return False
        return error_kind(exc) == ErrorKind.UNAVAILABLE and attempt <= self.max_retries

    def delay(self, retry_number: int) -> float:
        """Backoff before the given 1-based retry."""
        return min(self.backoff_base * (self.backoff_factor ** (retry_number - 1)), self.backoff_max)
