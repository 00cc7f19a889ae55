"""
Retry helpers for compare-and-swap conflicts and flaky collaborators
"""
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Tuple, Type

logger = logging.getLogger(__name__)

class StaleStateError(Exception):
    """A compare-and-swap update matched no row; re-read and try again"""
    pass

@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[BaseException], ...] = field(default=(Exception,))

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay

def retry_sync(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call func until it succeeds, a non-retryable error escapes, or attempts run out"""
    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_attempts:
                logger.error(f"Giving up on {func.__name__} after {attempt} attempts: {e}")
                raise
            delay = config.delay_for(attempt)
            logger.warning(f"{func.__name__} attempt {attempt}/{config.max_attempts} failed: {e}. Retrying in {delay:.2f}s")
            time.sleep(delay)

# Ledger CAS conflicts clear within milliseconds
LEDGER_CAS_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay=0.01,
    max_delay=0.2,
    retryable_exceptions=(StaleStateError,),
)

KAFKA_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.2,
    max_delay=2.0,
)
