"""Pytest configuration and fixtures."""
import asyncio

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from photobatch.analysis.base import AnalysisResult, DetectedItem, PhotoAnalyzer
from photobatch.batch.orchestrator import BatchOrchestrator
from photobatch.batch.progress import ProgressAggregator
from photobatch.batch.schemas import AssetDescriptor, JobPayload
from photobatch.db.connection import create_sessionmaker, init_db
from photobatch.db.repository import BatchRepository
from photobatch.metrics import PipelineMetrics
from photobatch.queue.worker import PhotoAnalysisWorker
from photobatch.realtime.cache import ProgressCache
from photobatch.realtime.pubsub import BatchEventBus
from photobatch.realtime.relay import NotificationRelay


class RecordingJobQueue:
    """JobQueue that records payloads instead of talking to a broker."""

    def __init__(self):
        self.payloads: list[JobPayload] = []
        self.fail_on: set[str] = set()

    async def enqueue(self, payload: JobPayload) -> str:
        if payload.photo_id in self.fail_on:
            raise ConnectionError("broker unavailable")
        self.payloads.append(payload)
        return payload.job_id


class ScriptedAnalyzer(PhotoAnalyzer):
    """
    Analyzer whose outcome per filename is scripted.

    A script value may be an exception (raised on every attempt) or a room
    type string; unscripted photos succeed with one item.
    """

    name = "scripted"

    def __init__(self, script: dict | None = None):
        super().__init__(max_retries=2, retry_delay=0, timeout=5)
        self.script = script or {}
        self.calls: list[str] = []

    async def analyze(self, photo):
        self.calls.append(photo.filename)
        outcome = self.script.get(photo.filename)
        if isinstance(outcome, BaseException):
            raise outcome
        return AnalysisResult(
            photo_id=photo.id,
            room_type=outcome or photo.room_type or "salon",
            items=[DetectedItem(name="Carton", volume_m3=0.1)],
            confidence=0.8,
        ).with_totals()


def make_assets(count: int, prefix: str = "img") -> list[AssetDescriptor]:
    return [
        AssetDescriptor(
            filename=f"{prefix}{i}.jpg",
            file_path=f"uploads/{prefix}{i}.jpg",
            url=f"https://cdn.example.com/{prefix}{i}.jpg",
        )
        for i in range(count)
    ]


async def wait_until(predicate, timeout: float = 2.0):
    """Poll until predicate() is truthy or fail."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def repository(engine):
    return BatchRepository(create_sessionmaker(engine))


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def metrics():
    return PipelineMetrics()


@pytest.fixture
def cache(redis, metrics):
    return ProgressCache(redis, metrics, ttl_seconds=10)


@pytest.fixture
def event_bus(redis, metrics):
    return BatchEventBus(redis, metrics)


@pytest.fixture
def aggregator(repository, cache):
    return ProgressAggregator(repository, cache)


@pytest.fixture
def relay(aggregator, cache, event_bus):
    return NotificationRelay(aggregator, cache, event_bus)


@pytest.fixture
def job_queue():
    return RecordingJobQueue()


@pytest.fixture
def analyzer():
    return ScriptedAnalyzer()


@pytest.fixture
def orchestrator(repository, job_queue, relay):
    return BatchOrchestrator(repository, job_queue, relay)


@pytest.fixture
def worker(repository, analyzer, relay):
    return PhotoAnalysisWorker(repository, analyzer, relay)


@pytest.fixture
async def project(repository):
    return await repository.create_project(user_id="user-1", name="Déménagement Lyon")


@pytest.fixture
def sample_assets():
    return make_assets(3)
