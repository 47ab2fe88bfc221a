from __future__ import annotations

import logging

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server


logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        # one registry per instance, so several coordinators can coexist in a process
        self.registry = registry if registry is not None else CollectorRegistry()
        r = self.registry

        self.requests_total = Counter("requests_total", "Handled coordinator requests", ["action"], registry=r)
        self.request_errors_total = Counter("request_errors_total", "Requests answered with an error", ["action"], registry=r)
        self.request_latency_seconds = Histogram(
            "request_latency_seconds",
            "Coordinator request latency",
            ["action"],
            buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60),
            registry=r,
        )

        self.classifications_total = Counter("classifications_total", "Classified items", ["source"], registry=r)
        self.classification_errors_total = Counter("classification_errors_total", "Per-item classification failures", registry=r)
        self.summaries_total = Counter("summaries_total", "Summaries produced", ["source"], registry=r)

        self.cache_hits_total = Counter("cache_hits_total", "Cache hits", ["kind"], registry=r)
        self.cache_misses_total = Counter("cache_misses_total", "Cache misses", ["kind"], registry=r)
        self.cache_evictions_total = Counter("cache_evictions_total", "Entries evicted by size bound", ["kind"], registry=r)
        self.cache_storage_errors_total = Counter("cache_storage_errors_total", "Storage faults hidden from callers", registry=r)

        self.heartbeat_beats_total = Counter("heartbeat_beats_total", "Heartbeat liveness signals", registry=r)
        self.coordinator_spawns_total = Counter("coordinator_spawns_total", "Coordinator generations started", registry=r)
        self.coordinator_terminations_total = Counter(
            "coordinator_terminations_total", "Coordinator terminations", ["reason"], registry=r
        )

    def start_server(self, bind: str, port: int) -> None:
        start_http_server(port, addr=bind, registry=self.registry)
        logger.info("metrics server started at %s:%s", bind, port)

    def value(self, name: str, **labels) -> float:
        """Current sample value, 0.0 when the series has not been touched."""
        v = self.registry.get_sample_value(name, labels or None)
        return float(v or 0.0)
