"""
Live Batch Stream

Turns a batch subscription into a finite sequence of named events:
one initial `progress`, a `progress` per published update, `ping` on idle,
then either `complete` (terminal batch), `timeout` (lifetime reached) or
`error` (unknown batch, or live updates unavailable).
"""
import asyncio
import logging
import time
from typing import AsyncIterator

from redis.exceptions import RedisError

from photobatch.batch.progress import ProgressAggregator
from photobatch.batch.schemas import BatchEvent, BatchProgress
from photobatch.batch.status import is_terminal
from photobatch.errors import NotFoundError
from photobatch.metrics import PipelineMetrics
from photobatch.realtime.pubsub import BatchEventBus

logger = logging.getLogger(__name__)


class BatchStream:
    def __init__(
        self,
        aggregator: ProgressAggregator,
        event_bus: BatchEventBus,
        metrics: PipelineMetrics,
        heartbeat_seconds: float = 15.0,
        max_lifetime_seconds: float = 30 * 60,
    ):
        self.aggregator = aggregator
        self.event_bus = event_bus
        self.metrics = metrics
        self.heartbeat_seconds = heartbeat_seconds
        self.max_lifetime_seconds = max_lifetime_seconds

    def _event(self, name: str, data: dict) -> BatchEvent:
        self.metrics.record_stream_event()
        return BatchEvent(event=name, data=data)

    async def events(self, batch_id: str) -> AsyncIterator[BatchEvent]:
        """
        Yield the events of one live subscription.

        The subscription is opened before the initial snapshot is read, so no
        update published in between is lost. Closing the generator early
        (client disconnect) unsubscribes and stops the timers.

        If the event bus cannot be reached, the current snapshot is still
        sent, followed by `complete` or an `error` event.
        """
        updates: asyncio.Queue[BatchProgress | Exception] = asyncio.Queue()
        started = time.monotonic()
        try:
            subscription = await self.event_bus.subscribe(batch_id, updates.put_nowait, on_lost=updates.put_nowait)
        except RedisError as e:
            logger.warning(f"Live updates unavailable for batch {batch_id}: {e}")
            subscription = None

        try:
            try:
                current = await self.aggregator.compute_batch_progress(batch_id, use_cache=True)
            except NotFoundError as e:
                yield self._event("error", {"message": str(e)})
                return

            yield self._event("progress", current.to_json_dict())
            if is_terminal(current.status):
                yield self._event("complete", current.to_json_dict())
                return
            if subscription is None:
                yield self._event("error", {"message": "Live updates unavailable"})
                return

            deadline = started + self.max_lifetime_seconds
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    update = await asyncio.wait_for(updates.get(), timeout=min(self.heartbeat_seconds, remaining))
                except asyncio.TimeoutError:
                    if time.monotonic() >= deadline:
                        break
                    yield self._event("ping", {"timestamp": int(time.time() * 1000)})
                    continue

                if isinstance(update, Exception):
                    yield self._event("error", {"message": "Live updates interrupted"})
                    return

                yield self._event("progress", update.to_json_dict())
                if is_terminal(update.status):
                    yield self._event("complete", update.to_json_dict())
                    return

            minutes = self.max_lifetime_seconds / 60
            yield self._event("timeout", {"message": f"Stream timeout after {minutes:g} minutes"})
        finally:
            if subscription is not None:
                await subscription.unsubscribe()
            logger.debug(f"Stream for batch {batch_id} closed after {time.monotonic() - started:.1f}s")
