"""
Retry policy with exponential backoff for opcore.

The dispatcher does not retry inline: it asks this module how long a
recoverable failure should wait before the operation is re-queued.
"""

import random


class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        backoff_factor: Multiplicative factor for backoff calculation
        jitter: Whether to add randomness to the delay
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        backoff_factor: float = 2.0,
        jitter: bool = False,
    ) -> None:
        """
        Initialize retry configuration.

        Args:
            max_retries: Maximum number of retry attempts (default: 3)
            base_delay: Base delay between retries in seconds (default: 1.0)
            max_delay: Maximum delay between retries in seconds (default: 60.0)
            backoff_factor: Multiplicative factor for backoff calculation (default: 2.0)
            jitter: Whether to add randomness to the delay (default: False)
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_retries={self.max_retries}, base_delay={self.base_delay}, "
            f"max_delay={self.max_delay}, backoff_factor={self.backoff_factor}, "
            f"jitter={self.jitter})"
        )


def calculate_delay(retry_count: int, config: RetryConfig) -> float:
    """
    Calculate the delay before a given retry.

    With the default configuration the 1st, 2nd and 3rd retries wait
    2, 4 and 8 seconds.

    Args:
        retry_count: The retry about to be scheduled (1-based)
        config: Retry configuration parameters

    Returns:
        Delay time in seconds
    """
    delay = min(
        config.max_delay, config.base_delay * (config.backoff_factor**retry_count)
    )

    if config.jitter:
        delay = delay * (0.5 + random.random())

    return delay


def should_retry(retry_count: int, max_retries: int, recoverable: bool) -> bool:
    """Whether a failure with the given retry history is re-queued."""
    return recoverable and retry_count < max_retries
