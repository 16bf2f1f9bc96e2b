"""
Notification Relay

After every state-affecting write: invalidate the cached snapshot, recompute
it from the durable store, and publish it on the batch channel.
Cache and pub/sub failures stop here; they never reach the worker.
"""
import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from photobatch.batch.progress import ProgressAggregator
from photobatch.batch.schemas import BatchProgress
from photobatch.errors import NotFoundError
from photobatch.realtime.cache import ProgressCache
from photobatch.realtime.pubsub import BatchEventBus, BatchSubscription, OnLost, OnUpdate, deliver

logger = logging.getLogger(__name__)


class NotifyPort(Protocol):
    """What the worker and orchestrator need from the relay."""

    async def notify_batch_update(self, batch_id: str) -> None:
        ...


class NotificationRelay:
    def __init__(self, aggregator: ProgressAggregator, cache: ProgressCache, event_bus: BatchEventBus):
        self.aggregator = aggregator
        self.cache = cache
        self.event_bus = event_bus

    async def notify_batch_update(self, batch_id: str) -> BatchProgress | None:
        """Invalidate, recompute and publish. Returns the published snapshot, if any."""
        # Invalidate first so a reader arriving before the publish falls back to the store
        await self.cache.invalidate(batch_id)

        try:
            progress = await self.aggregator.compute_batch_progress(batch_id, use_cache=False)
        except NotFoundError:
            logger.warning(f"Batch {batch_id} not found, skipping publish")
            return None
        except SQLAlchemyError:
            logger.exception(f"Could not recompute progress for batch {batch_id}, skipping publish")
            return None

        await self.event_bus.publish(progress)
        logger.info(f"Batch {batch_id} update published: {progress.status.value} {progress.progress}%")
        return progress

    async def subscribe_to_batch(
        self,
        batch_id: str,
        on_update: OnUpdate,
        on_lost: OnLost | None = None,
    ) -> BatchSubscription:
        """
        Subscribe to a batch and immediately deliver its current snapshot
        (cache-first) to on_update, then every published update after it.

        Raises NotFoundError for an unknown batch, RedisError if the channel
        cannot be subscribed.
        """
        # Updates published while the snapshot is read stay buffered on the channel
        subscription = await self.event_bus.subscribe(batch_id, on_update, on_lost, start=False)
        try:
            current = await self.aggregator.compute_batch_progress(batch_id, use_cache=True)
            await deliver(on_update, current)
        except BaseException:
            await subscription.unsubscribe()
            raise
        subscription.start()
        return subscription
