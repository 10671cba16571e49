"""
Retry with exponential backoff

One retry helper for every carrier call. What is retried is decided by a
classifier so shipment creation can use a stricter rule than read-only calls.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from fulfillment_backend.core.exceptions import (
    AuthenticationError,
    CarrierAPIError,
    CarrierResponseParseError,
    ConfigurationError,
    FulfillmentError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

NETWORK_ERROR = "NETWORK_ERROR"
CONNECT_ERROR = "CONNECT_ERROR"


def is_retryable_error(error: BaseException) -> bool:
    """
    Default classifier.

    Retries a carrier 401 and generic failures (transport errors, 5xx,
    unexpected exceptions). Other 4xx responses fail at once. Credential,
    configuration, parse and validation errors are never retried.
    """
    if isinstance(error, (AuthenticationError, ConfigurationError, CarrierResponseParseError)):
        return False

    if isinstance(error, CarrierAPIError):
        status = error.status_code
        if status is None:
            return True
        if status == 401:
            return True
        return not (400 <= status < 500)

    if isinstance(error, FulfillmentError):
        return False

    return True


def is_safe_to_resend(error: BaseException) -> bool:
    """
    Classifier for non-idempotent calls (shipment creation).

    Only resend when the request never reached the carrier.
    """
    return isinstance(error, CarrierAPIError) and error.code == CONNECT_ERROR


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run operation, retrying classified failures.

    The delay doubles after every failed attempt; there is no sleep after the
    last attempt. The last error is re-raised.
    """
    attempts = max(1, max_attempts)
    delay = initial_delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not is_retryable(e):
                raise
            logger.warning(
                f"Attempt {attempt}/{attempts} failed ({type(e).__name__}: {e}), "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)
            delay *= 2

    raise RuntimeError("retry_with_backoff exhausted without result")
