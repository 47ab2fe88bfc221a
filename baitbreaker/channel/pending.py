from __future__ import annotations

import asyncio
import uuid
from typing import Any


class PendingRequests:
    """Correlation id -> future table for replies that carry no ordering.

    Every registered id must be discarded once its exchange settles, whatever
    the outcome; ``settle`` and ``discard`` both remove the entry.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def register(self) -> tuple[str, asyncio.Future]:
        correlation_id = uuid.uuid4().hex
        fut = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = fut
        return correlation_id, fut

    def resolve(self, correlation_id: str, response: Any) -> bool:
        fut = self._pending.pop(correlation_id, None)
        if fut is None or fut.done():
            return False
        fut.set_result(response)
        return True

    def fail(self, correlation_id: str, exc: BaseException) -> bool:
        fut = self._pending.pop(correlation_id, None)
        if fut is None or fut.done():
            return False
        fut.set_exception(exc)
        return True

    def discard(self, correlation_id: str) -> None:
        fut = self._pending.pop(correlation_id, None)
        if fut is not None and not fut.done():
            fut.cancel()

    def fail_all(self, exc_factory) -> int:
        ids = list(self._pending)
        for correlation_id in ids:
            self.fail(correlation_id, exc_factory())
        return len(ids)
