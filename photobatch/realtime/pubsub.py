"""
Batch Event Bus

Redis Pub/Sub channel per batch. Publishing is fire-and-forget; every
subscriber gets its own connection and its own copy of each message.
"""
import asyncio
import contextlib
import inspect
import logging
from typing import Awaitable, Callable

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from photobatch.batch.schemas import BatchProgress
from photobatch.metrics import PipelineMetrics

logger = logging.getLogger(__name__)

OnUpdate = Callable[[BatchProgress], Awaitable[None] | None]
OnLost = Callable[[Exception], None]


def batch_channel(batch_id: str) -> str:
    return f"batch:{batch_id}"


async def deliver(on_update: OnUpdate, progress: BatchProgress) -> None:
    """Hand a snapshot to a sync or async callback."""
    result = on_update(progress)
    if inspect.isawaitable(result):
        await result


class BatchSubscription:
    """Handle returned by subscribe(); call unsubscribe() to stop receiving."""

    def __init__(self, batch_id: str, pubsub: PubSub, on_update: OnUpdate, on_lost: OnLost | None = None):
        self.batch_id = batch_id
        self.channel = batch_channel(batch_id)
        self._pubsub = pubsub
        self._on_update = on_update
        self._on_lost = on_lost
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._task = asyncio.create_task(self._read(), name=f"subscription:{self.channel}")

    async def _read(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    progress = BatchProgress.model_validate_json(message["data"])
                except ValidationError as e:
                    logger.warning(f"Error parsing message on {self.channel}: {e}")
                    continue
                try:
                    await deliver(self._on_update, progress)
                except Exception:
                    logger.exception(f"Subscriber callback failed on {self.channel}")
        except RedisError as e:
            logger.error(f"Subscription to {self.channel} lost: {e}")
            if self._on_lost is not None:
                self._on_lost(e)

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error unsubscribing from {self.channel}: {e}")
        logger.debug(f"Unsubscribed from {self.channel}")


class BatchEventBus:
    def __init__(self, redis: Redis, metrics: PipelineMetrics):
        self.redis = redis
        self.metrics = metrics

    async def publish(self, progress: BatchProgress) -> None:
        """Publish a snapshot. Failures are logged, never raised."""
        channel = batch_channel(progress.batch_id)
        try:
            receivers = await self.redis.publish(channel, progress.model_dump_json(by_alias=True))
        except RedisError as e:
            logger.warning(f"Error publishing batch update on {channel}: {e}")
            return
        self.metrics.record_publish()
        logger.debug(f"Published to {channel}: {progress.status.value} {progress.progress}% ({receivers} receivers)")

    async def subscribe(
        self,
        batch_id: str,
        on_update: OnUpdate,
        on_lost: OnLost | None = None,
        start: bool = True,
    ) -> BatchSubscription:
        """
        Subscribe to a batch channel; on_update may be sync or async.

        on_lost is called once if the connection drops. With start=False the
        channel is subscribed but messages stay buffered until start().
        Raises RedisError if the subscription cannot be opened.
        """
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(batch_channel(batch_id))
        except RedisError:
            with contextlib.suppress(RedisError):
                await pubsub.aclose()
            raise
        subscription = BatchSubscription(batch_id, pubsub, on_update, on_lost)
        if start:
            subscription.start()
        logger.debug(f"Subscribed to {subscription.channel}")
        return subscription
