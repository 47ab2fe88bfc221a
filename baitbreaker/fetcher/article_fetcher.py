from __future__ import annotations

import logging
import re
import time

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from baitbreaker.fetcher.errors import (
    ERROR_EMPTY_CONTENT,
    ERROR_HTTP,
    ERROR_TIMEOUT,
    ERROR_UNKNOWN,
    FetchError,
)
from baitbreaker.fetcher.parser import extract_main_text
from baitbreaker.utils import domain_from, truncate


logger = logging.getLogger(__name__)


_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"


def _status_error(status: int) -> FetchError:
    if status == 429:
        label = "too many requests"
    elif status >= 500:
        label = "server error"
    else:
        label = "client error"
    return FetchError(ERROR_HTTP, f"{status} {label}", status_code=status)


class ArticleFetcher:
    """Downloads an article page and reduces it to one paragraph of plain text.

    Connection-level failures are retried with exponential backoff; HTTP
    error statuses are not.
    """

    def __init__(
        self,
        timeout_seconds: float,
        max_retries: int,
        user_agent: str,
        max_chars: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._attempts = max(0, int(max_retries)) + 1
        self._max_chars = max(1, int(max_chars))
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"User-Agent": user_agent, "Accept": _ACCEPT},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _download(self, url: str) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential_jitter(initial=1, max=10),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._client.get(url)
        raise AssertionError("unreachable")

    async def fetch_text(self, url: str) -> str:
        started = time.perf_counter()
        try:
            resp = await self._download(url)
        except httpx.TimeoutException as e:
            raise FetchError(ERROR_TIMEOUT, truncate(str(e), 240)) from e
        except httpx.TransportError as e:
            raise FetchError(ERROR_HTTP, truncate(str(e), 240)) from e
        except Exception as e:
            raise FetchError(ERROR_UNKNOWN, truncate(str(e), 240)) from e

        if resp.status_code >= 400:
            raise _status_error(resp.status_code)

        text = re.sub(r"\s+", " ", extract_main_text(resp.text)).strip()
        if not text:
            raise FetchError(ERROR_EMPTY_CONTENT, "no readable text")

        logger.debug(
            "fetched %s chars from %s in %sms",
            len(text),
            domain_from(url),
            int((time.perf_counter() - started) * 1000),
        )
        return text[: self._max_chars]
