from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterable


logger = logging.getLogger(__name__)


class LinkStatus(str, enum.Enum):
    UNCLASSIFIED = "unclassified"
    CLASSIFYING = "classifying"
    CLASSIFIED_CLEAN = "classified_clean"
    CLASSIFIED_FLAGGED = "classified_flagged"
    SUMMARIZING = "summarizing"
    SUMMARIZED = "summarized"
    ERRORED = "errored"
    DISABLED = "disabled"


IN_FLIGHT = {LinkStatus.CLASSIFYING, LinkStatus.SUMMARIZING}

_FORWARD: dict[LinkStatus, set[LinkStatus]] = {
    LinkStatus.UNCLASSIFIED: {LinkStatus.CLASSIFYING},
    LinkStatus.CLASSIFYING: {LinkStatus.CLASSIFIED_CLEAN, LinkStatus.CLASSIFIED_FLAGGED, LinkStatus.ERRORED},
    LinkStatus.CLASSIFIED_FLAGGED: {LinkStatus.SUMMARIZING},
    LinkStatus.SUMMARIZING: {LinkStatus.SUMMARIZED, LinkStatus.ERRORED},
    LinkStatus.ERRORED: {LinkStatus.CLASSIFYING, LinkStatus.SUMMARIZING},
}


class InvalidTransition(ValueError):
    pass


@dataclass
class PipelineItem:
    identity: str
    status: LinkStatus = LinkStatus.UNCLASSIFIED
    # state to fall back to when an attempt fails transiently
    previous: LinkStatus | None = None
    # stage an Errored item re-enters on retry
    failed_from: LinkStatus | None = None
    detail: str = ""


Listener = Callable[[PipelineItem, LinkStatus, LinkStatus], None]


class LinkTracker:
    """Per-document state of every link, surfaced to the rendering layer.

    Transitions only move forward, with three exceptions: an Errored item may
    re-enter the stage that failed, a transient channel failure puts the item
    back where it was before the attempt, and channel death disables every
    item at once until ``reset``.
    """

    def __init__(self) -> None:
        self._items: dict[str, PipelineItem] = {}
        self._listeners: list[Listener] = []
        self._disabled = False

    @property
    def disabled(self) -> bool:
        return self._disabled

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def track(self, identity: str) -> PipelineItem:
        item = self._items.get(identity)
        if item is None:
            item = PipelineItem(identity=identity, status=LinkStatus.DISABLED if self._disabled else LinkStatus.UNCLASSIFIED)
            self._items[identity] = item
        return item

    def get(self, identity: str) -> PipelineItem | None:
        return self._items.get(identity)

    def status(self, identity: str) -> LinkStatus | None:
        item = self._items.get(identity)
        return item.status if item is not None else None

    def items(self) -> list[PipelineItem]:
        return list(self._items.values())

    def in_flight(self) -> list[PipelineItem]:
        return [i for i in self._items.values() if i.status in IN_FLIGHT]

    def count(self, status: LinkStatus) -> int:
        return sum(1 for i in self._items.values() if i.status == status)

    def _item(self, identity: str) -> PipelineItem:
        item = self._items.get(identity)
        if item is None:
            raise KeyError(identity)
        return item

    def _move(self, item: PipelineItem, new: LinkStatus, detail: str | None = None) -> None:
        old = item.status
        item.status = new
        if detail is not None:
            item.detail = detail
        for listener in list(self._listeners):
            try:
                listener(item, old, new)
            except Exception:
                logger.exception("link listener failed for %s", item.identity)

    def _advance(self, identity: str, new: LinkStatus, detail: str | None = None) -> PipelineItem:
        item = self._item(identity)
        if item.status == LinkStatus.DISABLED:
            raise InvalidTransition(f"{identity} is disabled")
        if new not in _FORWARD.get(item.status, set()):
            raise InvalidTransition(f"{identity}: {item.status.value} -> {new.value}")
        if item.status == LinkStatus.ERRORED and item.failed_from != new:
            raise InvalidTransition(f"{identity} failed while {item.failed_from}, cannot retry as {new.value}")
        self._move(item, new, detail)
        return item

    def can_classify(self, identity: str) -> bool:
        item = self.track(identity)
        if item.status == LinkStatus.UNCLASSIFIED:
            return True
        return item.status == LinkStatus.ERRORED and item.failed_from == LinkStatus.CLASSIFYING

    def can_summarize(self, identity: str) -> bool:
        item = self._items.get(identity)
        if item is None:
            return False
        if item.status == LinkStatus.CLASSIFIED_FLAGGED:
            return True
        return item.status == LinkStatus.ERRORED and item.failed_from == LinkStatus.SUMMARIZING

    def _begin(self, identity: str, stage: LinkStatus) -> PipelineItem:
        item = self._item(identity)
        before = item.status
        self._advance(identity, stage, detail="")
        item.previous = before
        return item

    def begin_classify(self, identity: str) -> PipelineItem:
        self.track(identity)
        return self._begin(identity, LinkStatus.CLASSIFYING)

    def finish_classify(self, identity: str, flagged: bool, detail: str = "") -> PipelineItem:
        target = LinkStatus.CLASSIFIED_FLAGGED if flagged else LinkStatus.CLASSIFIED_CLEAN
        item = self._advance(identity, target, detail)
        item.previous = None
        item.failed_from = None
        return item

    def begin_summary(self, identity: str) -> PipelineItem:
        return self._begin(identity, LinkStatus.SUMMARIZING)

    def finish_summary(self, identity: str, detail: str = "") -> PipelineItem:
        item = self._advance(identity, LinkStatus.SUMMARIZED, detail)
        item.previous = None
        item.failed_from = None
        return item

    def fail(self, identity: str, detail: str) -> PipelineItem:
        item = self._item(identity)
        stage = item.status
        self._advance(identity, LinkStatus.ERRORED, detail)
        item.failed_from = stage
        return item

    def revert(self, identity: str, detail: str = "") -> PipelineItem:
        """Undo an in-flight attempt after a timeout or a closed channel."""
        item = self._item(identity)
        if item.status not in IN_FLIGHT:
            raise InvalidTransition(f"{identity} is not in flight ({item.status.value})")
        target = item.previous or LinkStatus.UNCLASSIFIED
        item.previous = None
        self._move(item, target, detail)
        return item

    def disable_all(self, detail: str = "") -> int:
        """Channel death: every item stops, whatever it was doing."""
        self._disabled = True
        n = 0
        for item in self._items.values():
            if item.status != LinkStatus.DISABLED:
                item.previous = None
                self._move(item, LinkStatus.DISABLED, detail)
                n += 1
        return n

    def reset(self, identities: Iterable[str] = ()) -> None:
        """External refresh: forget everything and start over."""
        self._items.clear()
        self._disabled = False
        for identity in identities:
            self.track(identity)
