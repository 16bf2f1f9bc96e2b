"""
Celery Tasks

Thin wrappers running the async worker on a per-process event loop.
"""
import asyncio
import logging

from celery import Task
from sqlalchemy.exc import SQLAlchemyError

from photobatch.batch.schemas import JobPayload
from photobatch.config import settings
from photobatch.dependencies import get_worker
from photobatch.queue.celery_app import celery_app

logger = logging.getLogger(__name__)

_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """Run a coroutine on this worker process's long-lived event loop."""
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


class AnalyzePhotoTask(Task):
    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """The queue gave up on this job: fail the photo so its batch converges."""
        try:
            job = JobPayload(job_id=task_id, **kwargs)
            run_async(get_worker().abandon_job(job, exc))
        except Exception:
            logger.exception(f"Could not record abandoned job {task_id}")


@celery_app.task(
    bind=True,
    base=AnalyzePhotoTask,
    name="photobatch.analyze_photo",
    autoretry_for=(SQLAlchemyError, ConnectionError),
    retry_backoff=True,
    max_retries=settings.TASK_MAX_RETRIES,
)
def analyze_photo(
    self,
    photo_id: str,
    user_id: str,
    room_type: str | None = None,
    batch_id: str | None = None,
    force: bool = False,
):
    """
    Analyze one photo.

    Store errors are retried by the queue with the same task id, which lets
    the retry resume the claim taken by the failed attempt.
    """
    job = JobPayload(
        job_id=self.request.id,
        photo_id=photo_id,
        user_id=user_id,
        room_type=room_type,
        batch_id=batch_id,
        force=force,
    )
    logger.info(f"Processing job {job.job_id} for photo {photo_id} (attempt {self.request.retries + 1})")

    outcome = run_async(get_worker().process_job(job))

    return {"job_id": job.job_id, "photo_id": photo_id, "outcome": outcome.value}
