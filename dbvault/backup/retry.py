"""
Retry policy for destination delivery.
"""

from dataclasses import dataclass

from .errors import InvalidConfigurationError


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    max_attempts counts every attempt including the first, so a policy with
    max_attempts=3 retries at most twice.
    """
    max_attempts: int = 3
    base_delay: float = 60.0
    multiplier: float = 2.0
    max_delay: float = 900.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise InvalidConfigurationError('max_attempts', 'must be at least 1')
        if self.base_delay < 0:
            raise InvalidConfigurationError('base_delay', 'must not be negative')
        if self.multiplier < 1:
            raise InvalidConfigurationError('multiplier', 'must be at least 1')
        if self.max_delay < self.base_delay:
            raise InvalidConfigurationError('max_delay', 'must not be smaller than base_delay')

    def delay_for(self, attempt: int) -> float:
        """
        Seconds to wait after the given failed attempt (1-based).

        Non-decreasing in attempt and never above max_delay.
        """
        if attempt < 1:
            return 0.0
        try:
            delay = self.base_delay * (self.multiplier ** (attempt - 1))
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """True if another attempt is allowed after the given failed attempt."""
        return attempt < self.max_attempts

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        return cls(
            max_attempts=int(config.get('DESTINATION_MAX_ATTEMPTS', 3)),
            base_delay=float(config.get('DESTINATION_RETRY_BASE_DELAY', 60)),
            multiplier=float(config.get('DESTINATION_RETRY_MULTIPLIER', 2.0)),
            max_delay=float(config.get('DESTINATION_RETRY_MAX_DELAY', 900)),
        )
