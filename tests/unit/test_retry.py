"""
Unit tests for the retry policy (dbvault/backup/retry.py).
"""

import pytest

from dbvault.backup.errors import InvalidConfigurationError
from dbvault.backup.retry import RetryPolicy


class TestRetryPolicy:
    """Test backoff delays and attempt limits."""

    def test_defaults(self):
        """Test the default policy: 3 attempts, 60s doubling, 15 min cap."""
        policy = RetryPolicy()

        assert policy.max_attempts == 3
        assert policy.delay_for(1) == 60
        assert policy.delay_for(2) == 120

    def test_delay_is_capped(self):
        """Test delays never exceed max_delay."""
        policy = RetryPolicy(base_delay=60, multiplier=2, max_delay=900)

        assert [policy.delay_for(n) for n in range(1, 7)] == [60, 120, 240, 480, 900, 900]

    def test_delay_is_non_decreasing(self):
        """Test later attempts never wait less than earlier ones."""
        policy = RetryPolicy(base_delay=5, multiplier=3, max_delay=100)
        delays = [policy.delay_for(n) for n in range(1, 20)]

        assert delays == sorted(delays)
        assert max(delays) == 100

    def test_huge_attempt_does_not_overflow(self):
        """Test very large attempt numbers return the cap."""
        assert RetryPolicy(base_delay=1, multiplier=10, max_delay=30).delay_for(10000) == 30

    def test_attempt_zero_has_no_delay(self):
        """Test there is no delay before the first attempt."""
        assert RetryPolicy().delay_for(0) == 0

    def test_should_retry(self):
        """Test max_attempts counts every attempt including the first."""
        policy = RetryPolicy(max_attempts=3)

        assert policy.should_retry(1) is True
        assert policy.should_retry(2) is True
        assert policy.should_retry(3) is False

    @pytest.mark.parametrize("kwargs,field", [
        ({'max_attempts': 0}, 'max_attempts'),
        ({'base_delay': -1}, 'base_delay'),
        ({'multiplier': 0.5}, 'multiplier'),
        ({'base_delay': 100, 'max_delay': 10}, 'max_delay'),
    ])
    def test_invalid_policy(self, kwargs, field):
        """Test nonsensical policies are rejected."""
        with pytest.raises(InvalidConfigurationError) as exc_info:
            RetryPolicy(**kwargs)

        assert exc_info.value.context['field'] == field

    def test_from_config(self):
        """Test the policy is read from application settings."""
        policy = RetryPolicy.from_config({
            'DESTINATION_MAX_ATTEMPTS': 5,
            'DESTINATION_RETRY_BASE_DELAY': 2,
            'DESTINATION_RETRY_MAX_DELAY': 10,
        })

        assert policy == RetryPolicy(max_attempts=5, base_delay=2.0, multiplier=2.0, max_delay=10.0)
