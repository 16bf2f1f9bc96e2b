"""
Batch Orchestrator

Creates batches and dispatches one analysis job per photo.

Enqueue policy:
- enqueue_batch only dispatches photos that are PENDING and have no active
  job, so it can be called again to finish a partially failed enqueue.
  With force=True, DONE and ERROR photos are reset and re-analyzed too.
- enqueue_photo_analysis always accepts a DONE or ERROR photo (explicit
  re-analysis) and reports already_processing when a job already owns it.
"""
import logging
import uuid
from typing import Iterable

from pydantic import ValidationError

from photobatch.batch.schemas import AssetDescriptor, EnqueueResult, JobHandle, JobPayload
from photobatch.batch.status import TERMINAL_PHOTO_STATUSES
from photobatch.db.models import Batch, PhotoStatus
from photobatch.db.repository import BatchRepository, Reservation, ReservationStatus
from photobatch.errors import InvalidRequestError
from photobatch.queue.jobs import JobQueue
from photobatch.realtime.relay import NotifyPort

logger = logging.getLogger(__name__)


def _require_id(value: str, name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{name} is required")


class BatchOrchestrator:
    def __init__(self, repository: BatchRepository, job_queue: JobQueue, notifier: NotifyPort | None = None):
        self.repository = repository
        self.job_queue = job_queue
        self.notifier = notifier

    async def create_batch(
        self,
        project_id: str,
        user_id: str,
        assets: Iterable[AssetDescriptor | dict],
    ) -> Batch:
        """
        Persist a batch and one PENDING photo per asset, atomically.

        Raises InvalidRequestError for an empty or malformed asset list,
        NotFoundError / UnauthorizedError for a missing or foreign project.
        """
        _require_id(project_id, "project_id")
        _require_id(user_id, "user_id")

        try:
            descriptors = [
                asset if isinstance(asset, AssetDescriptor) else AssetDescriptor.model_validate(asset)
                for asset in assets
            ]
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid asset descriptor: {e}") from e

        if not descriptors:
            raise InvalidRequestError("At least one asset is required")

        batch = await self.repository.create_batch(project_id, user_id, descriptors)
        logger.info(f"Batch {batch.id} created with {len(batch.photos)} photos for project {project_id}")
        return batch

    async def enqueue_batch(self, batch_id: str, force: bool = False) -> list[JobHandle]:
        """Push one job per dispatchable photo of the batch. Each photo is independent."""
        _require_id(batch_id, "batch_id")
        batch = await self.repository.get_batch_with_photos(batch_id)

        handles = []
        reset_any = False
        for photo in batch.photos:
            status = PhotoStatus(photo.status)
            if status == PhotoStatus.PROCESSING or photo.active_job_id is not None:
                continue
            if status in TERMINAL_PHOTO_STATUSES and not force:
                continue

            reservation = await self._dispatch(photo.id, batch.user_id, photo.room_type, reset_terminal=force)
            if reservation.status != ReservationStatus.RESERVED:
                continue
            reset_any = reset_any or reservation.previous_status in TERMINAL_PHOTO_STATUSES
            handles.append(JobHandle(job_id=reservation.job_id, photo_id=photo.id))

        if not handles:
            logger.warning(f"No dispatchable photos in batch {batch_id}")
        else:
            logger.info(f"{len(handles)} jobs enqueued for batch {batch_id}")

        if reset_any and self.notifier is not None:
            await self.notifier.notify_batch_update(batch_id)
        return handles

    async def enqueue_photo_analysis(self, photo_id: str, user_id: str, room_type: str | None = None) -> EnqueueResult:
        """Enqueue a single photo, refusing to double-enqueue one that is already owned by a job."""
        _require_id(photo_id, "photo_id")
        _require_id(user_id, "user_id")

        reservation = await self._dispatch(photo_id, user_id, room_type, reset_terminal=True)

        if reservation.status != ReservationStatus.RESERVED:
            logger.warning(f"Photo {photo_id} already being processed, skip enqueue")
            return EnqueueResult(status="already_processing", photo_id=photo_id, job_id=reservation.job_id)

        if reservation.previous_status == PhotoStatus.DONE:
            logger.info(f"Photo {photo_id} already analyzed, re-analysis enqueued")

        if reservation.batch_id and self.notifier is not None and reservation.previous_status != PhotoStatus.PENDING:
            await self.notifier.notify_batch_update(reservation.batch_id)

        logger.info(f"Photo {photo_id} enqueued (job {reservation.job_id})")
        return EnqueueResult(status="enqueued", photo_id=photo_id, job_id=reservation.job_id)

    async def _dispatch(
        self,
        photo_id: str,
        user_id: str,
        room_type: str | None,
        reset_terminal: bool,
    ) -> Reservation:
        """Reserve the photo for a new job, then push the job. Undo the reservation if the push fails."""
        job_id = str(uuid.uuid4())
        reservation = await self.repository.reserve_photo(
            photo_id, job_id, user_id, room_type, reset_terminal=reset_terminal
        )
        if reservation.status != ReservationStatus.RESERVED:
            return reservation

        payload = JobPayload(
            job_id=job_id,
            photo_id=photo_id,
            user_id=user_id,
            room_type=room_type,
            batch_id=reservation.batch_id,
            # The reservation already reset the photo to PENDING, so a redelivery
            # of this job after it finished must hit the DONE short-circuit
            force=False,
        )
        try:
            await self.job_queue.enqueue(payload)
        except Exception as e:
            logger.error(f"Failed to enqueue job {job_id} for photo {photo_id}: {e}")
            await self.repository.release_reservation(photo_id, job_id, str(e))
            raise
        return reservation
