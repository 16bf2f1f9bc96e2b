"""Tests for workers and enqueue calls racing on the same batch."""
import asyncio

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from photobatch.db.connection import init_db
from photobatch.db.models import BatchStatus, PhotoStatus
from photobatch.queue.worker import JobOutcome

from conftest import ScriptedAnalyzer, make_assets


class SlowAnalyzer(ScriptedAnalyzer):
    """Yields to the loop before answering so concurrent jobs interleave."""

    async def analyze(self, photo):
        await asyncio.sleep(0.01)
        return await super().analyze(photo)


@pytest.fixture
async def engine(tmp_path):
    """File database behind a single connection, so transactions run one at a time."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'photobatch.db'}",
        poolclass=AsyncAdaptedQueuePool,
        pool_size=1,
        max_overflow=0,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def analyzer():
    return SlowAnalyzer()


async def submit(orchestrator, project, count: int):
    batch = await orchestrator.create_batch(project.id, "user-1", make_assets(count))
    await orchestrator.enqueue_batch(batch.id)
    return batch


class TestConcurrentWorkers:
    async def test_redelivered_jobs_converge(self, orchestrator, worker, job_queue, aggregator, project):
        batch = await submit(orchestrator, project, 6)
        # Every job delivered twice at once
        payloads = list(job_queue.payloads) * 2

        outcomes = await asyncio.gather(*(worker.process_job(payload) for payload in payloads))
        progress = await aggregator.compute_batch_progress(batch.id)
        counts = progress.counts

        assert outcomes.count(JobOutcome.DONE) == 6
        assert set(outcomes) <= {JobOutcome.DONE, JobOutcome.DUPLICATE, JobOutcome.SKIPPED}
        assert (counts.queued, counts.processing, counts.completed, counts.failed) == (0, 0, 6, 0)
        assert progress.status == BatchStatus.COMPLETED
        assert all(photo.status == PhotoStatus.DONE for photo in progress.photos)

    async def test_counters_add_up_while_jobs_run(self, orchestrator, worker, job_queue, aggregator, project):
        batch = await submit(orchestrator, project, 6)
        snapshots = []
        running = True

        async def sample():
            while running:
                snapshots.append(await aggregator.compute_batch_progress(batch.id))
                await asyncio.sleep(0)

        sampler = asyncio.create_task(sample())
        try:
            await asyncio.gather(*(worker.process_job(payload) for payload in list(job_queue.payloads)))
        finally:
            running = False
            await sampler

        assert snapshots
        for progress in snapshots:
            counts = progress.counts
            assert counts.queued + counts.processing + counts.completed + counts.failed == counts.total == 6

    async def test_mixed_failures_end_partial(self, orchestrator, worker, analyzer, job_queue, aggregator, project):
        batch = await submit(orchestrator, project, 5)
        analyzer.script["img1.jpg"] = RuntimeError("Invalid image format")
        analyzer.script["img3.jpg"] = RuntimeError("Invalid image format")

        outcomes = await asyncio.gather(*(worker.process_job(payload) for payload in list(job_queue.payloads)))
        progress = await aggregator.compute_batch_progress(batch.id)

        assert sorted(outcome.value for outcome in outcomes) == ["done", "done", "done", "error", "error"]
        assert (progress.counts.completed, progress.counts.failed) == (3, 2)
        assert progress.status == BatchStatus.PARTIAL
        assert progress.progress == 100


class TestConcurrentEnqueue:
    async def test_double_enqueue_dispatches_once(self, orchestrator, repository, job_queue, project):
        batch = await orchestrator.create_batch(project.id, "user-1", make_assets(3))
        photo_id = batch.photos[0].id

        results = await asyncio.gather(
            orchestrator.enqueue_photo_analysis(photo_id, "user-1"),
            orchestrator.enqueue_photo_analysis(photo_id, "user-1"),
        )

        assert sorted(result.status for result in results) == ["already_processing", "enqueued"]
        assert len(job_queue.payloads) == 1
        enqueued = next(result for result in results if result.status == "enqueued")
        assert job_queue.payloads[0].job_id == enqueued.job_id

        refreshed = await repository.get_batch(batch.id)
        assert (refreshed.count_queued, refreshed.count_processing) == (3, 0)

    async def test_double_reanalysis_moves_counter_once(self, orchestrator, repository, worker, job_queue, project):
        batch = await submit(orchestrator, project, 2)
        for payload in list(job_queue.payloads):
            await worker.process_job(payload)
        photo_id = batch.photos[0].id
        job_queue.payloads.clear()

        results = await asyncio.gather(
            orchestrator.enqueue_photo_analysis(photo_id, "user-1"),
            orchestrator.enqueue_photo_analysis(photo_id, "user-1"),
        )

        assert sorted(result.status for result in results) == ["already_processing", "enqueued"]
        assert len(job_queue.payloads) == 1
        refreshed = await repository.get_batch(batch.id)
        assert (refreshed.count_queued, refreshed.count_completed) == (1, 1)
        assert refreshed.status == BatchStatus.PROCESSING.value
