from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from baitbreaker.channel.errors import (
    TRANSIENT_ERRORS,
    ChannelClosed,
    ChannelDead,
    RequestTimeout,
    TransportClosed,
    TransportDead,
)
from baitbreaker.channel.guard import ChannelGuard


logger = logging.getLogger(__name__)


Transport = Callable[[dict], Awaitable[Any]]


class ResilientRequester:
    """Sends one request at a time over a channel that may vanish.

    Each attempt races the transport against a timer. Closed channels and
    timeouts are retried up to ``max_retries`` times with a fixed delay, and
    liveness is checked again before every retry. Permanent channel death is
    never retried; any error the transport does not classify is re-raised
    untouched on the first occurrence.

    Both transient kinds draw on the same retry budget.
    """

    def __init__(
        self,
        transport: Transport,
        guard: ChannelGuard,
        timeout_seconds: float = 45.0,
        max_retries: int = 2,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self._transport = transport
        self._guard = guard
        self._timeout = float(timeout_seconds)
        self._max_retries = max(0, int(max_retries))
        self._retry_delay = max(0.0, float(retry_delay_seconds))

    async def send(
        self,
        request: dict,
        *,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        retry_delay_seconds: float | None = None,
    ) -> Any:
        timeout = self._timeout if timeout_seconds is None else float(timeout_seconds)
        retries = self._max_retries if max_retries is None else max(0, int(max_retries))
        delay = self._retry_delay if retry_delay_seconds is None else max(0.0, float(retry_delay_seconds))
        action = request.get("action", "?")

        if not self._guard.is_live():
            raise ChannelDead(f"coordinator handle invalid before sending {action}")

        attempts = retries + 1

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome is not None else None
            logger.warning(
                "%s failed (attempt %s/%s): %s; retrying in %.2fs",
                action,
                state.attempt_number,
                attempts,
                exc,
                delay,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(delay),
            before_sleep=_before_sleep,
            reraise=True,
        )

        response: Any = None
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("retry %s/%s for action %s", attempt.retry_state.attempt_number - 1, retries, action)
                    if not self._guard.is_live():
                        raise ChannelDead(f"coordinator handle invalidated while retrying {action}")
                response = await self._attempt(request, timeout)
        return response

    async def _attempt(self, request: dict, timeout: float) -> Any:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(self._transport(request), timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"no response within {timeout:.2f}s") from e
        except TransportDead as e:
            raise ChannelDead(str(e)) from e
        except TransportClosed as e:
            elapsed = time.perf_counter() - started
            raise ChannelClosed(f"{e} after {elapsed:.2f}s") from e
