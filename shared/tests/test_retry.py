"""
Unit tests for the retry decorator.
"""

import httpx
import pytest

from shared.retry import RetryConfig, RetryError, is_transient_http_error, retry_on_exception

NO_DELAY = RetryConfig(max_attempts=3, base_delay=0.0, jitter=False)


def status_error(status_code):
    request = httpx.Request("GET", "https://licenses.test/registry.json")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("status", request=request, response=response)


class TestRetry:
    """Test cases for retry_on_exception."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        calls = []

        @retry_on_exception((httpx.HTTPError,), NO_DELAY)
        async def download():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("down")
            return "ok"

        assert await download() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_with_last_error(self):
        @retry_on_exception((httpx.HTTPError,), NO_DELAY)
        async def download():
            raise httpx.ConnectError("down")

        with pytest.raises(RetryError) as exc_info:
            await download()
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_permanent_error_stops_immediately(self):
        calls = []

        @retry_on_exception((httpx.HTTPError,), NO_DELAY, should_retry=is_transient_http_error,
                            context={"url": "https://licenses.test/registry.json"})
        async def download():
            calls.append(1)
            raise status_error(404)

        with pytest.raises(RetryError) as exc_info:
            await download()
        assert exc_info.value.attempts == 1
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_unlisted_exception_propagates(self):
        @retry_on_exception((httpx.HTTPError,), NO_DELAY)
        async def parse():
            raise ValueError("bad json")

        with pytest.raises(ValueError):
            await parse()

    def test_transient_classification(self):
        assert is_transient_http_error(httpx.ConnectError("down"))
        assert is_transient_http_error(status_error(503))
        assert is_transient_http_error(status_error(429))
        assert not is_transient_http_error(status_error(404))
        assert not is_transient_http_error(status_error(401))

    def test_backoff_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
        assert config.delay_for(1) == 1.0
        assert config.delay_for(2) == 2.0
        assert config.delay_for(10) == 5.0
        assert RetryConfig(max_attempts=0).max_attempts == 1
