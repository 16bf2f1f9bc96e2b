"""
Photo Batch API

HTTP surface for submitting photo batches and following their progress.
Authentication is handled upstream; the caller's id arrives in X-User-Id.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from photobatch.batch.orchestrator import BatchOrchestrator
from photobatch.batch.progress import ProgressAggregator
from photobatch.batch.schemas import AssetDescriptor, EnqueueResult
from photobatch.config import configure_logging
from photobatch.db.repository import BatchRepository
from photobatch.dependencies import (
    get_aggregator,
    get_metrics,
    get_orchestrator,
    get_repository,
    get_stream,
)
from photobatch.errors import InvalidRequestError, NotFoundError, PipelineError, UnauthorizedError
from photobatch.metrics import PipelineMetrics
from photobatch.realtime.stream import BatchStream


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield


app = FastAPI(
    title="Photo Batch Analysis",
    description="Asynchronous batch photo analysis with live progress",
    version="0.1.0",
    lifespan=lifespan,
)


class BatchSubmission(BaseModel):
    """Request to analyze a group of uploaded photos."""
    project_id: str
    assets: list[AssetDescriptor] = Field(default_factory=list)


class BatchResponse(BaseModel):
    """Response after batch submission."""
    batch_id: str
    status: str
    photos_count: int
    jobs_enqueued: int


class EnqueuePhotoRequest(BaseModel):
    photo_id: str
    room_type: Optional[str] = None


def get_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    return x_user_id


def _http_error(error: PipelineError) -> HTTPException:
    if isinstance(error, InvalidRequestError):
        status_code = 400
    elif isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, UnauthorizedError):
        status_code = 403
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail={"error": str(error), "code": error.code})


async def _owned_batch(batch_id: str, user_id: str, repository: BatchRepository) -> None:
    try:
        batch = await repository.get_batch(batch_id)
    except NotFoundError as e:
        raise _http_error(e)
    if batch.user_id != user_id:
        raise _http_error(UnauthorizedError(f"Batch {batch_id} does not belong to user {user_id}"))


@app.get("/")
async def root():
    return {
        "service": "Photo Batch Analysis",
        "status": "operational",
        "docs": "/docs"
    }


@app.post("/batches", response_model=BatchResponse, status_code=202)
async def submit_batch(
    submission: BatchSubmission,
    user_id: str = Depends(get_user_id),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
):
    """
    Create a batch of photos and enqueue one analysis job per photo.

    Returns a batch_id for tracking progress.
    """
    try:
        batch = await orchestrator.create_batch(submission.project_id, user_id, submission.assets)
        jobs = await orchestrator.enqueue_batch(batch.id)
    except PipelineError as e:
        raise _http_error(e)

    return BatchResponse(
        batch_id=batch.id,
        status=batch.status,
        photos_count=len(batch.photos),
        jobs_enqueued=len(jobs),
    )


@app.post("/batches/{batch_id}/enqueue")
async def reenqueue_batch(
    batch_id: str,
    force: bool = False,
    user_id: str = Depends(get_user_id),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    repository: BatchRepository = Depends(get_repository),
):
    """Dispatch the photos of a batch that have no job yet (or all of them with force)."""
    await _owned_batch(batch_id, user_id, repository)
    try:
        jobs = await orchestrator.enqueue_batch(batch_id, force=force)
    except PipelineError as e:
        raise _http_error(e)
    return {"batch_id": batch_id, "jobs": [job.to_json_dict() for job in jobs]}


@app.get("/batches/{batch_id}")
async def get_batch_progress(
    batch_id: str,
    user_id: str = Depends(get_user_id),
    aggregator: ProgressAggregator = Depends(get_aggregator),
    repository: BatchRepository = Depends(get_repository),
):
    """Current progress of a batch (cache-first)."""
    await _owned_batch(batch_id, user_id, repository)
    try:
        progress = await aggregator.compute_batch_progress(batch_id, use_cache=True)
    except PipelineError as e:
        raise _http_error(e)
    return progress.to_json_dict()


@app.get("/batches/{batch_id}/stream")
async def stream_batch(
    batch_id: str,
    request: Request,
    user_id: str = Depends(get_user_id),
    stream: BatchStream = Depends(get_stream),
    repository: BatchRepository = Depends(get_repository),
):
    """Server-Sent Events: progress, complete, error, ping, timeout."""
    await _owned_batch(batch_id, user_id, repository)

    async def event_source():
        events = stream.events(batch_id)
        try:
            async for event in events:
                if await request.is_disconnected():
                    break
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@app.post("/photos/enqueue", response_model=EnqueueResult, response_model_by_alias=True)
async def enqueue_photo(
    body: EnqueuePhotoRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
):
    """Enqueue one photo for (re-)analysis."""
    try:
        return await orchestrator.enqueue_photo_analysis(body.photo_id, user_id, body.room_type)
    except PipelineError as e:
        raise _http_error(e)


@app.get("/metrics")
async def metrics(
    pipeline_metrics: PipelineMetrics = Depends(get_metrics),
    repository: BatchRepository = Depends(get_repository),
):
    """Cache / pub-sub counters of this process and tracked job counts."""
    return {
        "pipeline": pipeline_metrics.snapshot(),
        "jobs": await repository.count_jobs_by_state(),
    }


@app.get("/health")
async def health_check():
    """Health check for container orchestration."""
    return {"status": "healthy"}
