"""
Progress Cache

BatchProgress snapshots in Redis with a short TTL.
The cache is disposable: every failure is logged and treated as a miss.

Each batch also has a generation counter, bumped on every invalidation.
A reader that rebuilt its snapshot from the store only writes it back if
the generation it saw before reading is still current, so a slow reader
can never overwrite a fresher snapshot.
"""
import logging

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from photobatch.batch.schemas import BatchProgress
from photobatch.metrics import PipelineMetrics

logger = logging.getLogger(__name__)

GENERATION_TTL_SECONDS = 24 * 60 * 60


def progress_key(batch_id: str) -> str:
    return f"batch:progress:{batch_id}"


def generation_key(batch_id: str) -> str:
    return f"batch:progress:gen:{batch_id}"


class ProgressCache:
    def __init__(self, redis: Redis, metrics: PipelineMetrics, ttl_seconds: int = 10):
        self.redis = redis
        self.metrics = metrics
        self.ttl_seconds = ttl_seconds

    async def get(self, batch_id: str) -> BatchProgress | None:
        try:
            value = await self.redis.get(progress_key(batch_id))
        except RedisError as e:
            self.metrics.record_cache_miss()
            logger.warning(f"Error reading cached progress for batch {batch_id}: {e}")
            return None

        if value is None:
            self.metrics.record_cache_miss()
            logger.debug(f"Cache MISS for batch {batch_id}")
            return None

        try:
            progress = BatchProgress.model_validate_json(value)
        except ValidationError as e:
            self.metrics.record_cache_miss()
            logger.warning(f"Discarding unreadable cache entry for batch {batch_id}: {e}")
            return None

        self.metrics.record_cache_hit()
        logger.debug(f"Cache HIT for batch {batch_id}")
        return progress

    async def generation(self, batch_id: str) -> int | None:
        """Current generation of the batch's snapshot, or None if Redis is unreachable."""
        try:
            value = await self.redis.get(generation_key(batch_id))
        except RedisError as e:
            logger.warning(f"Error reading cache generation for batch {batch_id}: {e}")
            return None
        return int(value or 0)

    async def set_if_current(self, progress: BatchProgress, generation: int, ttl_seconds: int | None = None) -> bool:
        """
        Store a snapshot only if no invalidation happened since `generation`
        was read. Returns True when the snapshot was written.
        """
        ttl = ttl_seconds or self.ttl_seconds
        gen_key = generation_key(progress.batch_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(gen_key)
                current = int(await pipe.get(gen_key) or 0)
                if current != generation:
                    logger.debug(
                        f"Not caching stale progress for batch {progress.batch_id} "
                        f"(generation {generation}, now {current})"
                    )
                    return False
                pipe.multi()
                pipe.setex(progress_key(progress.batch_id), ttl, progress.model_dump_json(by_alias=True))
                await pipe.execute()
        except WatchError:
            logger.debug(f"Batch {progress.batch_id} invalidated while caching, snapshot dropped")
            return False
        except RedisError as e:
            logger.warning(f"Error caching progress for batch {progress.batch_id}: {e}")
            return False
        return True

    async def invalidate(self, batch_id: str) -> None:
        """Bump the generation and drop the cached snapshot, atomically."""
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(generation_key(batch_id))
                pipe.expire(generation_key(batch_id), GENERATION_TTL_SECONDS)
                pipe.delete(progress_key(batch_id))
                await pipe.execute()
        except RedisError as e:
            logger.warning(f"Error invalidating cache for batch {batch_id}: {e}")
