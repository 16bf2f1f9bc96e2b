"""
Pipeline Metrics

Per-instance counters for cache and pub/sub observability.
One instance is created per process (or per test) and injected where needed.
"""
import threading


class PipelineMetrics:
    """Lock-protected counters; safe to share between threads of one process."""

    def __init__(self):
        self._lock = threading.Lock()
        self.cache_hits = 0
        self.cache_misses = 0
        self.pubsub_events = 0
        self.stream_events = 0

    def _incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def record_cache_hit(self) -> None:
        self._incr("cache_hits")

    def record_cache_miss(self) -> None:
        self._incr("cache_misses")

    def record_publish(self) -> None:
        self._incr("pubsub_events")

    def record_stream_event(self) -> None:
        self._incr("stream_events")

    def snapshot(self) -> dict:
        with self._lock:
            total = self.cache_hits + self.cache_misses
            ratio = (self.cache_hits / total) * 100 if total else 0.0
            return {
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "cache_total": total,
                "cache_hit_ratio": round(ratio, 2),
                "pubsub_events": self.pubsub_events,
                "stream_events": self.stream_events,
            }

    def reset(self) -> None:
        with self._lock:
            self.cache_hits = 0
            self.cache_misses = 0
            self.pubsub_events = 0
            self.stream_events = 0
