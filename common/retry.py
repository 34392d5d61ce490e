"""
Retry utilities for handling transient store failures
"""
import random
import time
from typing import Callable, Any, Optional, List
import logging

from common.error_handling import TransientStoreError
from common.settings import settings

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientStoreError]

    def is_retryable(self, exc: Exception) -> bool:
        return any(isinstance(exc, exc_type) for exc_type in self.retryable_exceptions)

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay *= (0.5 + random.random() * 0.5)

    return delay

def retry_sync(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Blocking retry wrapper with exponential backoff.

    Only exceptions listed in ``config.retryable_exceptions`` are retried;
    anything else propagates on the first attempt.
    """
    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not config.is_retryable(e):
                raise

            if attempt == config.max_attempts:
                logger.error(f"Max retry attempts ({config.max_attempts}) reached for {func.__name__}")
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {func.__name__}: {e}. Retrying in {delay:.2f}s")
            time.sleep(delay)

STORE_RETRY_CONFIG = RetryConfig(
    max_attempts=settings.store_retry_attempts,
    base_delay=settings.store_retry_base_delay,
    max_delay=5.0,
    retryable_exceptions=[TransientStoreError]
)
