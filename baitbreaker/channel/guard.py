from __future__ import annotations

import logging


logger = logging.getLogger(__name__)


class ChannelGuard:
    """Synchronous liveness probe for a coordinator handle.

    Reads a local attribute only. Any exception raised while looking at the
    handle counts as "not live".
    """

    def __init__(self, handle) -> None:
        self._handle = handle

    def is_live(self) -> bool:
        try:
            return bool(self._handle.runtime_id)
        except Exception:
            logger.debug("liveness probe raised, treating channel as dead", exc_info=True)
            return False
