from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from baitbreaker.ai.client import AIConfig, ModelClient
from baitbreaker.cache.store import CacheStore
from baitbreaker.classify.heuristic import HeuristicClassifier
from baitbreaker.classify.loader import load_rules
from baitbreaker.config import Config
from baitbreaker.coordinator.heartbeat import Heartbeat
from baitbreaker.coordinator.orchestrator import ClassifierOrchestrator
from baitbreaker.coordinator.service import Coordinator
from baitbreaker.fetcher.article_fetcher import ArticleFetcher
from baitbreaker.metrics.metrics import Metrics
from baitbreaker.ratelimit import MinIntervalLimiter
from baitbreaker.runtime.host import CoordinatorHost
from baitbreaker.storage.kv import KeyValueStore, SqliteKeyValueStore


logger = logging.getLogger(__name__)


KEEPALIVE_KEY = "_last_keepalive"


@dataclass
class AppContext:
    """Resources that outlive any single coordinator generation."""

    config: Config
    storage: KeyValueStore
    cache: CacheStore
    heuristic: HeuristicClassifier
    model: ModelClient
    fetcher: ArticleFetcher
    metrics: Metrics
    model_limiter: MinIntervalLimiter


async def build_app_context(config: Config, storage: KeyValueStore | None = None) -> AppContext:
    if storage is None:
        sqlite = SqliteKeyValueStore(config.sqlite_path)
        await sqlite.connect()
        storage = sqlite

    metrics = Metrics()
    if config.metrics_enabled:
        metrics.start_server(config.metrics_bind, config.metrics_port)

    cache = CacheStore(
        storage,
        ttl_seconds=config.cache_ttl_seconds,
        max_size=config.cache_max_size,
        metrics=metrics,
    )

    model_limiter = MinIntervalLimiter(min_interval_seconds=config.ai_min_interval_seconds)
    model = ModelClient(
        AIConfig(
            base_url=config.ai_base_url,
            api_key=config.ai_api_key,
            model=config.ai_model,
            timeout_seconds=config.ai_timeout_seconds,
            max_retries=config.ai_max_retries,
            fallback_summary_chars=config.ai_fallback_summary_chars,
        ),
        limiter=model_limiter,
    )

    fetcher = ArticleFetcher(
        timeout_seconds=config.fetch_timeout_seconds,
        max_retries=config.fetch_max_retries,
        user_agent=config.user_agent,
        max_chars=config.article_length_limit,
    )

    rules = load_rules(config.rules_path, config.rules_overrides_path)

    return AppContext(
        config=config,
        storage=storage,
        cache=cache,
        heuristic=HeuristicClassifier(rules),
        model=model,
        fetcher=fetcher,
        metrics=metrics,
        model_limiter=model_limiter,
    )


def build_host(ctx: AppContext) -> CoordinatorHost:
    config = ctx.config
    host: CoordinatorHost

    async def beat() -> None:
        host.touch()
        await ctx.storage.set(KEEPALIVE_KEY, time.time())

    async def spawn() -> Coordinator:
        coordinator = Coordinator(
            cache=ctx.cache,
            orchestrator=ClassifierOrchestrator(
                ctx.cache,
                base_timeout_seconds=config.classification_base_timeout_seconds,
                per_item_timeout_seconds=config.classification_per_item_timeout_seconds,
                metrics=ctx.metrics,
            ),
            heuristic=ctx.heuristic,
            model=ctx.model,
            fetcher=ctx.fetcher,
            heartbeat=Heartbeat(beat, config.keepalive_interval_seconds, metrics=ctx.metrics),
            concurrency_limit=config.concurrency_limit,
            summary_timeout_seconds=config.summary_timeout_seconds,
            metrics=ctx.metrics,
        )
        await coordinator.initialize()
        return coordinator

    host = CoordinatorHost(
        spawn,
        idle_timeout_seconds=config.idle_timeout_seconds,
        metrics=ctx.metrics,
    )
    return host


async def close_app_context(ctx: AppContext) -> None:
    await ctx.model.aclose()
    await ctx.fetcher.aclose()
    close = getattr(ctx.storage, "close", None)
    if close is not None:
        await close()
