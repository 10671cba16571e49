"""
Tests for retry_with_backoff and its classifiers.
"""
from unittest.mock import AsyncMock

import pytest

from fulfillment_backend.core.exceptions import (
    AuthenticationError,
    CarrierAPIError,
    CarrierResponseParseError,
    ConfigurationError,
    PayloadValidationError,
)
from fulfillment_backend.services.retry import (
    CONNECT_ERROR,
    NETWORK_ERROR,
    is_retryable_error,
    is_safe_to_resend,
    retry_with_backoff,
)


def failing(*errors, result="ok"):
    """Operation raising the given errors in turn, then returning result."""
    remaining = list(errors)

    async def operation():
        operation.calls += 1
        if remaining:
            raise remaining.pop(0)
        return result

    operation.calls = 0
    return operation


class TestRetryWithBackoff:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_errors(self):
        sleep = AsyncMock()
        operation = failing(CarrierAPIError("busy", status_code=503), CarrierAPIError("busy", status_code=502))

        result = await retry_with_backoff(operation, max_attempts=3, initial_delay=1.0, sleep=sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_no_sleep_after_last_attempt(self):
        sleep = AsyncMock()
        operation = failing(*[RuntimeError("down")] * 5)

        with pytest.raises(RuntimeError):
            await retry_with_backoff(operation, max_attempts=3, initial_delay=0.5, sleep=sleep)

        assert operation.calls == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        sleep = AsyncMock()
        operation = failing(CarrierAPIError("bad request", status_code=400))

        with pytest.raises(CarrierAPIError):
            await retry_with_backoff(operation, sleep=sleep)

        assert operation.calls == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        sleep = AsyncMock()
        operation = failing(CarrierAPIError("reset", code=NETWORK_ERROR))

        with pytest.raises(CarrierAPIError):
            await retry_with_backoff(operation, is_retryable=is_safe_to_resend, sleep=sleep)

        assert operation.calls == 1


class TestClassifiers:

    @pytest.mark.parametrize("error,expected", [
        (CarrierAPIError("unauthorized", status_code=401), True),
        (CarrierAPIError("not found", status_code=404), False),
        (CarrierAPIError("server error", status_code=500), True),
        (CarrierAPIError("network", code=NETWORK_ERROR), True),
        (AuthenticationError("bad credentials"), False),
        (ConfigurationError("disabled"), False),
        (CarrierResponseParseError("not json", status_code=200), False),
        (PayloadValidationError(["weight must be greater than 0, got 0"]), False),
        (RuntimeError("unexpected"), True),
    ])
    def test_is_retryable_error(self, error, expected):
        assert is_retryable_error(error) is expected

    def test_only_connect_failures_are_safe_to_resend(self):
        assert is_safe_to_resend(CarrierAPIError("refused", code=CONNECT_ERROR)) is True
        assert is_safe_to_resend(CarrierAPIError("timeout", code=NETWORK_ERROR)) is False
        assert is_safe_to_resend(CarrierAPIError("server error", status_code=503)) is False
        assert is_safe_to_resend(RuntimeError("unexpected")) is False
