"""
Retry logic with exponential backoff using tenacity.
"""
from typing import Callable, Optional
from dataclasses import dataclass
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_random_exponential,
    retry_if_exception_type,
    RetryCallState,
)

from app.core.config import get_settings
from app.core.exceptions import TransientAdapterError

logger = structlog.get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry logic."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable_exceptions: tuple = (TransientAdapterError,)


def create_async_retry_decorator(
    config: Optional[RetryConfig] = None,
    service_name: str = "Unknown Service",
) -> Callable:
    """Create a retry decorator for async adapter calls.

    Only exceptions listed in ``config.retryable_exceptions`` are retried; the
    last one is re-raised once attempts are exhausted.
    """

    config = config or RetryConfig()

    def _before_sleep(retry_state: RetryCallState) -> None:
        """Log retry attempts."""
        logger.warning(
            "Retrying failed async operation",
            service=service_name,
            attempt=retry_state.attempt_number,
            max_attempts=config.max_attempts,
            delay=retry_state.next_action.sleep,
            exception=str(retry_state.outcome.exception()),
        )

    wait_strategy = wait_random_exponential(
        multiplier=config.base_delay,
        max=config.max_delay,
    )

    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_strategy,
        retry=retry_if_exception_type(config.retryable_exceptions),
        before_sleep=_before_sleep,
        reraise=True,
    )


def get_default_retry_config() -> RetryConfig:
    """Get retry configuration for adapter calls from settings."""
    settings = get_settings()
    return RetryConfig(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
    )


def get_slow_service_retry_config() -> RetryConfig:
    """Get retry configuration for slow generators (dossier, letter).

    These calls already wait a long time per attempt, so fewer attempts
    with longer spacing.
    """
    settings = get_settings()
    return RetryConfig(
        max_attempts=min(settings.retry_max_attempts, 2),
        base_delay=max(settings.retry_base_delay_seconds, 2.0),
        max_delay=60.0,
    )
