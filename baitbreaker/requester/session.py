from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from baitbreaker.channel.errors import ChannelClosed, ChannelDead, RequestTimeout
from baitbreaker.channel.guard import ChannelGuard
from baitbreaker.channel.requester import ResilientRequester
from baitbreaker.config import Config, DETECTION_HEURISTIC, SENSITIVITY_DEFAULT
from baitbreaker.coordinator.service import ACTION_CACHE_STATS, ACTION_CLASSIFY, ACTION_CLEAR_CACHE, ACTION_SUMMARY
from baitbreaker.requester.lifecycle import LinkStatus, LinkTracker
from baitbreaker.runtime.host import RuntimeHandle
from baitbreaker.utils import domain_from


logger = logging.getLogger(__name__)


MSG_DISABLED = "Extension was reloaded or updated. Please refresh this page to continue."
MSG_CHANNEL_CLOSED = "Connection lost to extension service. Hover to retry."
MSG_TIMEOUT = "Request timed out. Hover to retry."
MSG_UNAVAILABLE = "Service unavailable: {}"


@dataclass(frozen=True)
class LinkRef:
    identity: str
    text: str
    href: str

    @property
    def domain(self) -> str:
        return domain_from(self.href)


class DocumentSession:
    """Requester context for one document.

    Sends classification batches and summary requests through a
    ResilientRequester and records every outcome in a LinkTracker. Channel
    death disables the whole document; timeouts and closed channels only put
    the affected links back where they were.
    """

    def __init__(
        self,
        handle: RuntimeHandle,
        *,
        timeout_seconds: float = 45.0,
        max_retries: int = 2,
        retry_delay_seconds: float = 1.0,
        detection_mode: str = DETECTION_HEURISTIC,
        sensitivity: int = SENSITIVITY_DEFAULT,
        prefetch_summaries: bool = True,
    ) -> None:
        self.guard = ChannelGuard(handle)
        self.requester = ResilientRequester(
            handle.send_message,
            self.guard,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
        )
        self.links = LinkTracker()
        self.detection_mode = detection_mode
        self.sensitivity = sensitivity
        self.prefetch_summaries = prefetch_summaries

        self._refs: dict[str, LinkRef] = {}
        self._results: dict[str, dict] = {}
        self._summaries: dict[str, str] = {}
        self._summary_tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls, handle: RuntimeHandle, config: Config) -> "DocumentSession":
        return cls(
            handle,
            timeout_seconds=config.message_timeout_seconds,
            max_retries=config.max_retries,
            retry_delay_seconds=config.retry_delay_seconds,
            detection_mode=config.detection_mode,
            sensitivity=config.sensitivity,
            prefetch_summaries=config.prefetch_summaries,
        )

    @property
    def clickbait_count(self) -> int:
        return sum(1 for r in self._results.values() if r.get("is_clickbait"))

    def result(self, identity: str) -> dict | None:
        return self._results.get(identity)

    def summary(self, identity: str) -> str | None:
        return self._summaries.get(identity)

    def _on_channel_dead(self, e: ChannelDead) -> None:
        logger.warning("coordinator context invalidated, disabling links: %s", e)
        self.links.disable_all(MSG_DISABLED)

    async def classify_links(self, links: Sequence[LinkRef]) -> list[LinkRef]:
        """Classify every link not yet classified; returns the flagged ones."""
        if self.links.disabled:
            return []

        batch: list[LinkRef] = []
        seen: set[str] = set()
        for link in links:
            self._refs[link.identity] = link
            if link.identity not in seen and self.links.can_classify(link.identity):
                seen.add(link.identity)
                batch.append(link)
        if not batch:
            return []

        for link in batch:
            self.links.begin_classify(link.identity)

        try:
            response = await self.requester.send(
                {
                    "action": ACTION_CLASSIFY,
                    "links": [{"text": link.text, "href": link.href} for link in batch],
                    "detection_mode": self.detection_mode,
                    "sensitivity": self.sensitivity,
                }
            )
        except ChannelDead as e:
            self._on_channel_dead(e)
            return []
        except (ChannelClosed, RequestTimeout) as e:
            logger.warning("cannot classify links, %s", e.error_type.lower())
            msg = MSG_TIMEOUT if isinstance(e, RequestTimeout) else MSG_CHANNEL_CLOSED
            if not self.links.disabled:
                for link in batch:
                    self.links.revert(link.identity, msg)
            return []
        except Exception as e:
            logger.exception("failed to classify links")
            if not self.links.disabled:
                for link in batch:
                    self.links.fail(link.identity, str(e))
            return []

        if self.links.disabled:
            return []

        if not isinstance(response, list) or len(response) != len(batch):
            message = response.get("message") if isinstance(response, dict) and response.get("error") else "invalid response format"
            logger.warning("classification service error: %s", message)
            for link in batch:
                self.links.fail(link.identity, MSG_UNAVAILABLE.format(message))
            return []

        flagged: list[LinkRef] = []
        for link, result in zip(batch, response):
            result = result if isinstance(result, dict) else {}
            if result.get("error"):
                self.links.fail(link.identity, str(result.get("error_message") or "classification failed"))
                continue
            self._results[link.identity] = result
            is_bait = bool(result.get("is_clickbait"))
            self.links.finish_classify(link.identity, flagged=is_bait, detail=str(result.get("reason") or ""))
            if is_bait:
                flagged.append(link)

        logger.info("classified %s links, %s flagged", len(batch), len(flagged))

        if flagged and self.prefetch_summaries:
            await asyncio.gather(*(self.request_summary(link.identity) for link in flagged))
        return flagged

    async def request_summary(self, identity: str) -> str | None:
        """Summary for a flagged link; concurrent callers share one request."""
        if identity in self._summaries:
            return self._summaries[identity]

        task = self._summary_tasks.get(identity)
        if task is None:
            if self.links.disabled or not self.links.can_summarize(identity):
                return None
            task = asyncio.get_running_loop().create_task(self._fetch_summary(identity))
            self._summary_tasks[identity] = task
            task.add_done_callback(lambda t: self._forget_summary_task(identity, t))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # the shared task was dropped by refresh()
            if task.cancelled():
                return None
            raise

    def _forget_summary_task(self, identity: str, task: asyncio.Task) -> None:
        if self._summary_tasks.get(identity) is task:
            del self._summary_tasks[identity]

    async def _fetch_summary(self, identity: str) -> str | None:
        ref = self._refs[identity]
        self.links.begin_summary(identity)
        try:
            response: Any = await self.requester.send({"action": ACTION_SUMMARY, "url": ref.href})
        except ChannelDead as e:
            self._on_channel_dead(e)
            return None
        except RequestTimeout:
            logger.warning("cannot fetch summary for %s: timeout", ref.domain)
            if not self.links.disabled:
                self.links.revert(identity, MSG_TIMEOUT)
            return None
        except ChannelClosed:
            logger.warning("cannot fetch summary for %s: message channel closed", ref.domain)
            if not self.links.disabled:
                self.links.revert(identity, MSG_CHANNEL_CLOSED)
            return None
        except Exception as e:
            logger.exception("background summary failed for %s", ref.domain)
            if not self.links.disabled:
                self.links.fail(identity, str(e))
            return None

        # another request may have found the channel dead meanwhile
        if self.links.disabled:
            return None

        if isinstance(response, dict) and response.get("error"):
            self.links.fail(identity, MSG_UNAVAILABLE.format(response.get("message")))
            return None

        text = str(response or "")
        self._summaries[identity] = text
        self.links.finish_summary(identity)
        return text

    async def cache_stats(self) -> dict:
        return await self.requester.send({"action": ACTION_CACHE_STATS})

    async def clear_cache(self) -> dict:
        return await self.requester.send({"action": ACTION_CLEAR_CACHE})

    def refresh(self) -> None:
        """External refresh of the document: all state is dropped."""
        for task in self._summary_tasks.values():
            task.cancel()
        self._summary_tasks.clear()
        self._summaries.clear()
        self._results.clear()
        self.links.reset(self._refs)

    def flagged(self) -> list[str]:
        return [
            i.identity
            for i in self.links.items()
            if i.status in (LinkStatus.CLASSIFIED_FLAGGED, LinkStatus.SUMMARIZING, LinkStatus.SUMMARIZED)
        ]
