"""Tests for the retry backoff policy."""

import pytest

from opcore.errors.retry import RetryConfig, calculate_delay, should_retry


class TestCalculateDelay:
    def test_default_schedule_is_2_4_8_seconds(self):
        config = RetryConfig()
        assert [calculate_delay(n, config) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_delay_capped_at_max(self):
        config = RetryConfig(base_delay=10.0, max_delay=25.0)
        assert calculate_delay(3, config) == 25.0

    def test_jitter_stays_within_half_to_one_and_a_half(self):
        config = RetryConfig(jitter=True)
        for _ in range(20):
            assert 1.0 <= calculate_delay(1, config) <= 3.0

    def test_repr_lists_parameters(self):
        assert "max_retries=3" in repr(RetryConfig())


class TestShouldRetry:
    @pytest.mark.parametrize(
        "retry_count,max_retries,recoverable,expected",
        [
            (0, 3, True, True),
            (2, 3, True, True),
            (3, 3, True, False),
            (0, 3, False, False),
            (0, 0, True, False),
        ],
    )
    def test_policy(self, retry_count, max_retries, recoverable, expected):
        assert should_retry(retry_count, max_retries, recoverable) is expected
