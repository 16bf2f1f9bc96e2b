"""
Photo Analysis Worker

Processes one queued job: claim the photo, run inference, record the
outcome, notify the batch. Safe under at-least-once delivery: a redelivered
job either resumes its own claim or short-circuits on an analyzed photo.
"""
import logging
from enum import Enum

from photobatch.analysis.base import PhotoAnalyzer
from photobatch.batch.schemas import JobPayload
from photobatch.db.models import JobState, PhotoStatus
from photobatch.db.repository import BatchRepository, ClaimOutcome
from photobatch.errors import AnalysisError, AnalysisErrorCode
from photobatch.realtime.relay import NotifyPort

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"


class PhotoAnalysisWorker:
    """Worker-side job processing. Stateless: all coordination goes through the store."""

    def __init__(self, repository: BatchRepository, analyzer: PhotoAnalyzer, notifier: NotifyPort | None = None):
        self.repository = repository
        self.analyzer = analyzer
        self.notifier = notifier

    async def _notify(self, batch_id: str | None) -> None:
        if batch_id and self.notifier is not None:
            await self.notifier.notify_batch_update(batch_id)

    async def process_job(self, job: JobPayload) -> JobOutcome:
        claim = await self.repository.claim_photo(job.photo_id, job.job_id, force=job.force)

        if claim.outcome == ClaimOutcome.NOT_FOUND:
            logger.warning(f"Photo {job.photo_id} not found, dropping job {job.job_id}")
            await self.repository.finish_job(job.job_id, JobState.COMPLETED, "photo not found")
            return JobOutcome.DROPPED

        photo = claim.photo

        if claim.outcome == ClaimOutcome.DUPLICATE:
            logger.warning(f"Photo {photo.id} is owned by another job, skipping job {job.job_id}")
            await self.repository.finish_job(job.job_id, JobState.COMPLETED, "duplicate")
            return JobOutcome.DUPLICATE

        if claim.outcome == ClaimOutcome.ALREADY_TERMINAL:
            logger.info(f"Photo {photo.id} already {photo.status.value}, skipping analysis")
            # A previous run may have died before its counters or notification landed
            if photo.batch_id:
                await self.repository.reconcile_batch_counts(photo.batch_id)
            await self._notify(photo.batch_id)
            await self.repository.finish_job(job.job_id, JobState.COMPLETED, f"already {photo.status.value}")
            return JobOutcome.SKIPPED

        if claim.outcome == ClaimOutcome.RESUMED:
            logger.info(f"Resuming job {job.job_id} for photo {photo.id} after redelivery")

        if job.room_type and not photo.room_type:
            photo = photo.model_copy(update={"room_type": job.room_type})

        await self._notify(photo.batch_id)

        try:
            result = await self.analyzer.run(photo)
        except AnalysisError as error:
            logger.warning(f"Photo {photo.id} analysis failed: {error.code.value} {error.message}")
            applied = await self.repository.finish_photo(photo.id, job.job_id, error=error)
            outcome = JobOutcome.ERROR
        else:
            logger.info(
                f"Photo {photo.id} analyzed by {result.provider}: "
                f"{len(result.items)} items, {result.totals.volume_m3} m3 in {result.latency_ms}ms"
            )
            applied = await self.repository.finish_photo(
                photo.id, job.job_id,
                analysis=result.model_dump(mode="json"),
                room_type=result.room_type,
            )
            outcome = JobOutcome.DONE

        await self._notify(photo.batch_id)
        return outcome if applied else JobOutcome.DUPLICATE

    async def abandon_job(self, job: JobPayload, exc: BaseException) -> bool:
        """
        Record a job the queue gave up on as a photo ERROR so its batch can
        still reach a terminal state. No-op if the job no longer owns the photo.
        """
        error = AnalysisError(
            AnalysisErrorCode.WORKER_FAILURE,
            f"Job abandoned after retries: {exc}"[:500],
            retryable=False,
        )
        applied = await self.repository.finish_photo(
            job.photo_id, job.job_id,
            error=error,
            from_statuses=(PhotoStatus.PENDING, PhotoStatus.PROCESSING),
        )
        if applied:
            logger.error(f"Job {job.job_id} abandoned; photo {job.photo_id} marked ERROR")
            await self._notify(job.batch_id)
        return applied
