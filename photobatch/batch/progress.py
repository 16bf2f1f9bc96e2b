"""
Progress Aggregator

Computes the BatchProgress projection from durable state, cache-first on demand.
"""
import logging
from collections import defaultdict
from typing import TYPE_CHECKING

from photobatch.batch.schemas import (
    BatchCounts,
    BatchProgress,
    InventorySummary,
    PhotoSummary,
    RoomSummary,
)
from photobatch.batch.status import COUNTER_FOR_STATUS, compute_progress, derive_batch_status, is_terminal
from photobatch.db.models import Batch, BatchStatus, PhotoStatus
from photobatch.db.repository import BatchRepository

if TYPE_CHECKING:
    from photobatch.realtime.cache import ProgressCache

logger = logging.getLogger(__name__)


def build_inventory_summary(batch: Batch) -> InventorySummary:
    """Items and volume per room over the successfully analyzed photos."""
    rooms: dict[str, dict] = defaultdict(lambda: {"items_count": 0, "volume_m3": 0.0})
    total_items = 0
    total_volume = 0.0

    for photo in batch.photos:
        if photo.status != PhotoStatus.DONE.value or not photo.analysis:
            continue
        analysis = photo.analysis
        items_count = len(analysis.get("items") or [])
        volume = float((analysis.get("totals") or {}).get("volume_m3") or 0)

        room = rooms[photo.room_type or "unknown"]
        room["items_count"] += items_count
        room["volume_m3"] += volume
        total_items += items_count
        total_volume += volume

    return InventorySummary(
        total_items=total_items,
        total_volume=round(total_volume, 3),
        rooms=[
            RoomSummary(room_type=room_type, items_count=data["items_count"], volume_m3=round(data["volume_m3"], 3))
            for room_type, data in rooms.items()
        ],
    )


def build_batch_progress(batch: Batch) -> BatchProgress:
    """
    Project a batch (with its photos loaded) into a BatchProgress.

    Counters come from the batch row. If they no longer add up to the number
    of photos, the projection recounts from photo statuses instead, so the
    snapshot always satisfies queued + processing + completed + failed == total.
    """
    total = len(batch.photos)
    counters = {
        "queued": batch.count_queued,
        "processing": batch.count_processing,
        "completed": batch.count_completed,
        "failed": batch.count_failed,
    }
    status = BatchStatus(batch.status)

    if sum(counters.values()) != total:
        logger.warning(f"Batch {batch.id} counters {counters} do not add up to {total} photos; recounting")
        by_status = defaultdict(int)
        for photo in batch.photos:
            by_status[COUNTER_FOR_STATUS[PhotoStatus(photo.status)]] += 1
        counters = {
            "queued": by_status["count_queued"],
            "processing": by_status["count_processing"],
            "completed": by_status["count_completed"],
            "failed": by_status["count_failed"],
        }
        status = derive_batch_status(**counters)

    progress = BatchProgress(
        batch_id=batch.id,
        status=status,
        progress=compute_progress(counters["completed"], counters["failed"], total),
        counts=BatchCounts(total=total, **counters),
        photos=[
            PhotoSummary(
                id=photo.id,
                filename=photo.filename,
                status=PhotoStatus(photo.status),
                room_type=photo.room_type,
                error_code=photo.error_code,
                error_message=photo.error_message,
            )
            for photo in batch.photos
        ],
    )

    if is_terminal(status):
        progress.inventory_summary = build_inventory_summary(batch)

    return progress


class ProgressAggregator:
    def __init__(self, repository: BatchRepository, cache: "ProgressCache | None" = None):
        self.repository = repository
        self.cache = cache

    async def compute_batch_progress(self, batch_id: str, use_cache: bool = False) -> BatchProgress:
        """
        Current progress of a batch.

        With use_cache, a cached snapshot is returned when present. Otherwise
        the snapshot is rebuilt from the durable store and written back to the
        cache, unless the batch was invalidated while it was being read.
        Raises NotFoundError for an unknown batch.
        """
        generation = None
        if self.cache is not None:
            if use_cache:
                cached = await self.cache.get(batch_id)
                if cached is not None:
                    return cached
            # Read before the store so a write landing in between is detected
            generation = await self.cache.generation(batch_id)

        batch = await self.repository.get_batch_with_photos(batch_id)
        progress = build_batch_progress(batch)

        if generation is not None:
            await self.cache.set_if_current(progress, generation)
        return progress
