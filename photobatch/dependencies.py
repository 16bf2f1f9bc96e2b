"""
Dependencies

Process-wide wiring of the concrete collaborators. Each getter builds its
object once per process; tests build their own graph instead.
"""
from functools import lru_cache

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from photobatch.analysis.registry import get_analyzer
from photobatch.batch.orchestrator import BatchOrchestrator
from photobatch.batch.progress import ProgressAggregator
from photobatch.config import settings
from photobatch.db.connection import create_engine, create_sessionmaker
from photobatch.db.repository import BatchRepository
from photobatch.metrics import PipelineMetrics
from photobatch.queue.jobs import CeleryJobQueue
from photobatch.queue.worker import PhotoAnalysisWorker
from photobatch.realtime.cache import ProgressCache
from photobatch.realtime.pubsub import BatchEventBus
from photobatch.realtime.relay import NotificationRelay
from photobatch.realtime.stream import BatchStream


@lru_cache
def get_engine() -> AsyncEngine:
    return create_engine(settings.DATABASE_URL)


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return create_sessionmaker(get_engine())


@lru_cache
def get_repository() -> BatchRepository:
    return BatchRepository(get_sessionmaker())


@lru_cache
def get_redis() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)


@lru_cache
def get_metrics() -> PipelineMetrics:
    return PipelineMetrics()


@lru_cache
def get_cache() -> ProgressCache:
    return ProgressCache(get_redis(), get_metrics(), ttl_seconds=settings.PROGRESS_CACHE_TTL_SECONDS)


@lru_cache
def get_event_bus() -> BatchEventBus:
    return BatchEventBus(get_redis(), get_metrics())


@lru_cache
def get_aggregator() -> ProgressAggregator:
    return ProgressAggregator(get_repository(), get_cache())


@lru_cache
def get_relay() -> NotificationRelay:
    return NotificationRelay(get_aggregator(), get_cache(), get_event_bus())


@lru_cache
def get_stream() -> BatchStream:
    return BatchStream(
        get_aggregator(),
        get_event_bus(),
        get_metrics(),
        heartbeat_seconds=settings.STREAM_HEARTBEAT_SECONDS,
        max_lifetime_seconds=settings.STREAM_MAX_LIFETIME_SECONDS,
    )


@lru_cache
def get_orchestrator() -> BatchOrchestrator:
    return BatchOrchestrator(get_repository(), CeleryJobQueue(settings.PHOTO_ANALYZE_QUEUE), get_relay())


@lru_cache
def get_worker() -> PhotoAnalysisWorker:
    return PhotoAnalysisWorker(get_repository(), get_analyzer(settings=settings), get_relay())
