import asyncio

from baitbreaker.cache.store import CacheStore
from baitbreaker.classify.heuristic import HeuristicClassifier
from baitbreaker.coordinator.heartbeat import Heartbeat
from baitbreaker.coordinator.orchestrator import ClassifierOrchestrator
from baitbreaker.coordinator.service import Coordinator
from baitbreaker.requester.lifecycle import LinkStatus
from baitbreaker.requester.session import MSG_DISABLED, MSG_TIMEOUT, DocumentSession, LinkRef
from baitbreaker.runtime.host import CoordinatorHost
from baitbreaker.storage.kv import MemoryKeyValueStore
from baitbreaker.storage.types import Verdict


BAIT_TITLE = "You Won't Believe What Happened Next"
PLAIN_TITLE = "Council approves new budget"


class FakeModel:
    """Model backend stand-in.

    Calls wait on ``gate`` when one is set; with ``blocked_calls`` only the
    first N calls wait.
    """

    configured = True

    def __init__(self, gate=None, blocked_calls=None, delay=0.0):
        self.gate = gate
        self.blocked_calls = blocked_calls
        self.delay = delay
        self.calls = []
        self.summaries = []

    async def classify(self, text):
        self.calls.append(text)
        if self.gate is not None and (self.blocked_calls is None or len(self.calls) <= self.blocked_calls):
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        bait = "believe" in text.lower()
        return Verdict(is_clickbait=bait, confidence=0.9 if bait else 0.1, reason="curiosity gap" if bait else "")

    async def summarize(self, text):
        self.summaries.append(text)
        return f"TL;DR: {text[:20]}"


class FakeFetcher:
    def __init__(self, delay=0.0):
        self.delay = delay
        self.calls = []

    async def fetch_text(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        return f"article at {url}"


class Stack:
    def __init__(self, model=None, fetcher=None, idle_timeout_seconds=30.0, watchdog_interval_seconds=None):
        self.store = MemoryKeyValueStore()
        self.cache = CacheStore(self.store)
        self.model = model or FakeModel()
        self.fetcher = fetcher or FakeFetcher()
        self.spawned = []
        self.handles = []
        self.host = CoordinatorHost(
            self._spawn,
            idle_timeout_seconds=idle_timeout_seconds,
            watchdog_interval_seconds=watchdog_interval_seconds,
        )

    async def _beat(self):
        self.host.touch()

    async def _spawn(self):
        coordinator = Coordinator(
            cache=self.cache,
            orchestrator=ClassifierOrchestrator(self.cache),
            heuristic=HeuristicClassifier(),
            model=self.model,
            fetcher=self.fetcher,
            heartbeat=Heartbeat(self._beat, interval_seconds=0.01),
        )
        await coordinator.initialize()
        self.spawned.append(coordinator)
        return coordinator

    def session(self, **kwargs):
        kwargs.setdefault("timeout_seconds", 2.0)
        kwargs.setdefault("max_retries", 2)
        kwargs.setdefault("retry_delay_seconds", 0.0)
        kwargs.setdefault("prefetch_summaries", False)
        handle = self.host.handle()
        self.handles.append(handle)
        return DocumentSession(handle, **kwargs)


async def until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


LINKS = [
    LinkRef(identity="a", text=BAIT_TITLE, href="https://news.example/a"),
    LinkRef(identity="b", text=PLAIN_TITLE, href="https://news.example/b"),
]


def test_heuristic_classification_with_summary_prefetch():
    async def run():
        stack = Stack()
        session = stack.session(prefetch_summaries=True)
        flagged = await session.classify_links(LINKS)
        await stack.host.aclose()
        return stack, session, flagged

    stack, session, flagged = asyncio.run(run())

    assert [link.identity for link in flagged] == ["a"]
    assert session.links.status("a") == LinkStatus.SUMMARIZED
    assert session.links.status("b") == LinkStatus.CLASSIFIED_CLEAN
    assert session.summary("a").startswith("TL;DR: article at")
    assert session.clickbait_count == 1
    assert session.flagged() == ["a"]
    assert stack.fetcher.calls == ["https://news.example/a"]


def test_refresh_drops_summary_in_flight_and_rehover_is_shared():
    async def run():
        stack = Stack(fetcher=FakeFetcher(delay=0.1))
        session = stack.session()
        await session.classify_links(LINKS)

        stale = asyncio.create_task(session.request_summary("a"))
        await until(lambda: len(stack.fetcher.calls) == 1)
        session.refresh()

        # flag again without a round trip, while the dropped task is still unwinding
        session.links.begin_classify("a")
        session.links.finish_classify("a", flagged=True)
        first = asyncio.create_task(session.request_summary("a"))
        await asyncio.sleep(0.01)
        second = await session.request_summary("a")
        results = (await stale, await first, second)
        await stack.host.aclose()
        return stack, session, results

    stack, session, (stale, first, second) = asyncio.run(run())

    assert stale is None
    assert first is not None and first == second
    assert session.links.status("a") == LinkStatus.SUMMARIZED
    assert stack.model.calls == []


def test_model_mode_reuses_cached_verdicts_across_documents():
    async def run():
        stack = Stack()
        first = stack.session(detection_mode="model")
        second = stack.session(detection_mode="model")
        await first.classify_links(LINKS)
        await second.classify_links([LinkRef("z", BAIT_TITLE, "https://other.example/z")])
        stats = await second.cache_stats()
        await stack.host.aclose()
        return stack, first, second, stats

    stack, first, second, stats = asyncio.run(run())

    assert stack.model.calls == [BAIT_TITLE, PLAIN_TITLE]
    assert first.result("a")["cached"] is False
    assert second.result("z")["cached"] is True
    assert second.result("z")["is_clickbait"] is True
    assert stats == {"classification": 2, "summary": 0, "total": 2}


def test_already_classified_links_are_not_resent():
    async def run():
        stack = Stack()
        session = stack.session(detection_mode="model")
        await session.classify_links(LINKS)
        again = await session.classify_links(LINKS + [LINKS[0]])
        await stack.host.aclose()
        return stack, again

    stack, again = asyncio.run(run())
    assert again == []
    assert len(stack.model.calls) == 2


def test_retry_reaches_respawned_coordinator_after_termination():
    async def run():
        stack = Stack(model=FakeModel(gate=asyncio.Event(), blocked_calls=1))
        session = stack.session(detection_mode="model")

        task = asyncio.create_task(session.classify_links(LINKS[:1]))
        await until(lambda: len(stack.model.calls) == 1)
        assert session.links.status("a") == LinkStatus.CLASSIFYING

        stack.host.terminate()
        flagged = await task
        pending = stack.handles[0].pending_count
        await stack.host.aclose()
        return stack, session, flagged, pending

    stack, session, flagged, pending = asyncio.run(run())

    assert [link.identity for link in flagged] == ["a"]
    assert stack.host.generation == 2
    assert len(stack.model.calls) == 2
    assert session.links.status("a") == LinkStatus.CLASSIFIED_FLAGGED
    assert pending == 0


def test_invalidation_disables_the_document():
    async def run():
        stack = Stack(model=FakeModel(gate=asyncio.Event()))
        session = stack.session(detection_mode="model")

        task = asyncio.create_task(session.classify_links(LINKS))
        await until(lambda: len(stack.model.calls) == 2)
        stack.host.invalidate()
        flagged = await task

        calls_before = len(stack.model.calls)
        later = await session.classify_links([LinkRef("c", "Another headline", "https://news.example/c")])
        summary = await session.request_summary("a")
        await stack.host.aclose()
        return stack, session, flagged, later, summary, calls_before

    stack, session, flagged, later, summary, calls_before = asyncio.run(run())

    assert flagged == [] and later == [] and summary is None
    assert session.links.disabled is True
    assert session.links.status("a") == LinkStatus.DISABLED
    assert session.links.get("b").detail == MSG_DISABLED
    assert len(stack.model.calls) == calls_before


def test_timeout_reverts_links_and_late_result_still_fills_cache():
    async def run():
        gate = asyncio.Event()
        stack = Stack(model=FakeModel(gate=gate, blocked_calls=1))
        session = stack.session(detection_mode="model", timeout_seconds=0.05, max_retries=0)

        flagged = await session.classify_links(LINKS[:1])
        status_after_timeout = session.links.status("a")
        detail = session.links.get("a").detail

        # the coordinator finishes the abandoned request in its own time
        gate.set()
        await until(lambda: len(stack.store) == 1)

        retried = await session.classify_links(LINKS[:1])
        await stack.host.aclose()
        return stack, session, flagged, status_after_timeout, detail, retried

    stack, session, flagged, status_after_timeout, detail, retried = asyncio.run(run())

    assert flagged == []
    assert status_after_timeout == LinkStatus.UNCLASSIFIED
    assert detail == MSG_TIMEOUT
    assert [link.identity for link in retried] == ["a"]
    assert len(stack.model.calls) == 1
    assert session.result("a")["cached"] is True


def test_concurrent_summary_requests_share_one_exchange():
    async def run():
        stack = Stack(fetcher=FakeFetcher(delay=0.02))
        session = stack.session()
        await session.classify_links(LINKS)
        first, second = await asyncio.gather(session.request_summary("a"), session.request_summary("a"))
        third = await session.request_summary("a")
        clean = await session.request_summary("b")
        await stack.host.aclose()
        return stack, first, second, third, clean

    stack, first, second, third, clean = asyncio.run(run())

    assert first == second == third
    assert clean is None
    assert stack.fetcher.calls == ["https://news.example/a"]


def test_busy_coordinator_survives_idle_watchdog():
    async def run():
        stack = Stack(
            model=FakeModel(delay=0.25),
            idle_timeout_seconds=0.1,
            watchdog_interval_seconds=0.02,
        )
        await stack.host.start()
        session = stack.session(detection_mode="model")

        flagged = await session.classify_links(LINKS[:1])
        generation = stack.host.generation
        await until(lambda: not stack.host.running)
        await stack.host.aclose()
        return flagged, generation

    flagged, generation = asyncio.run(run())

    assert [link.identity for link in flagged] == ["a"]
    assert generation == 1


def test_admin_actions_and_refresh():
    async def run():
        stack = Stack()
        await stack.store.set("_last_keepalive", 1.0)
        session = stack.session(detection_mode="model")
        await session.classify_links(LINKS)
        cleared = await session.clear_cache()
        stats = await session.cache_stats()
        session.refresh()
        await stack.host.aclose()
        return stack, session, cleared, stats

    stack, session, cleared, stats = asyncio.run(run())

    assert cleared == {"success": True, "cleared": 2}
    assert stats["total"] == 0
    assert asyncio.run(stack.store.get("_last_keepalive")) == 1.0
    assert session.links.status("a") == LinkStatus.UNCLASSIFIED
    assert session.result("a") is None
