"""Unit tests for retry helpers."""

from __future__ import annotations

from itertools import islice

import pytest

from neural_mail.exceptions import AuthError, NetworkError
from neural_mail.utils import backoff_delays, retry_async


def test_backoff_delays_capped() -> None:
    assert list(islice(backoff_delays(1.0, 2.0, 5.0), 5)) == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_retry_async_succeeds_after_failures() -> None:
    delays: list[float] = []
    attempts = 0

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise NetworkError("down")
        return "ok"

    async def sleep(delay: float) -> None:
        delays.append(delay)

    result = await retry_async(flaky, retry_on=(NetworkError,), max_attempts=5, delay=0.5, sleep=sleep)

    assert result == "ok"
    assert delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_async_exhausted() -> None:
    async def down() -> None:
        raise NetworkError("down")

    async def sleep(delay: float) -> None:
        return None

    with pytest.raises(NetworkError):
        await retry_async(down, retry_on=(NetworkError,), max_attempts=3, sleep=sleep)


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_other_errors() -> None:
    attempts = 0

    async def rejected() -> None:
        nonlocal attempts
        attempts += 1
        raise AuthError("bad password")

    with pytest.raises(AuthError):
        await retry_async(rejected, retry_on=(NetworkError,), max_attempts=3)
    assert attempts == 1
