"""
Job Queue Port

The orchestrator only needs to push one payload per photo.
CeleryJobQueue is the production implementation.
"""
import asyncio
from typing import Protocol

from photobatch.batch.schemas import JobPayload


class JobQueue(Protocol):
    async def enqueue(self, payload: JobPayload) -> str:
        """Push one job and return its queue id."""
        ...


class CeleryJobQueue:
    def __init__(self, queue_name: str):
        self.queue_name = queue_name

    async def enqueue(self, payload: JobPayload) -> str:
        from photobatch.queue.tasks import analyze_photo

        # apply_async talks to the broker synchronously
        result = await asyncio.to_thread(
            analyze_photo.apply_async,
            kwargs=payload.task_kwargs(),
            task_id=payload.job_id,
            queue=self.queue_name,
        )
        return result.id
