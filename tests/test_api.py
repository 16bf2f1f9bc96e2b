"""Tests for the HTTP surface."""
import httpx
import pytest

from photobatch.api.main import app
from photobatch.dependencies import get_aggregator, get_metrics, get_orchestrator, get_repository, get_stream
from photobatch.realtime.stream import BatchStream

from conftest import make_assets

HEADERS = {"X-User-Id": "user-1"}


def asset_json(count: int) -> list[dict]:
    return [asset.model_dump(by_alias=True) for asset in make_assets(count)]


@pytest.fixture
async def client(orchestrator, repository, aggregator, metrics, event_bus):
    app.dependency_overrides.update({
        get_orchestrator: lambda: orchestrator,
        get_repository: lambda: repository,
        get_aggregator: lambda: aggregator,
        get_metrics: lambda: metrics,
        get_stream: lambda: BatchStream(aggregator, event_bus, metrics, heartbeat_seconds=5, max_lifetime_seconds=10),
    })
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestBatchEndpoints:
    async def test_submit_batch(self, client, job_queue, project):
        response = await client.post(
            "/batches", headers=HEADERS, json={"project_id": project.id, "assets": asset_json(3)},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "QUEUED"
        assert body["photos_count"] == 3
        assert body["jobs_enqueued"] == 3
        assert len(job_queue.payloads) == 3

    async def test_empty_batch_is_rejected(self, client, project):
        response = await client.post("/batches", headers=HEADERS, json={"project_id": project.id, "assets": []})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    async def test_unknown_project(self, client):
        response = await client.post("/batches", headers=HEADERS, json={"project_id": "missing", "assets": asset_json(1)})
        assert response.status_code == 404

    async def test_foreign_project(self, client, project):
        response = await client.post(
            "/batches", headers={"X-User-Id": "intruder"}, json={"project_id": project.id, "assets": asset_json(1)},
        )
        assert response.status_code == 403

    async def test_user_header_is_required(self, client, project):
        response = await client.post("/batches", json={"project_id": project.id, "assets": asset_json(1)})
        assert response.status_code == 422

    async def test_get_progress(self, client, orchestrator, project):
        batch = await orchestrator.create_batch(project.id, "user-1", make_assets(2))

        response = await client.get(f"/batches/{batch.id}", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["batchId"] == batch.id
        assert body["counts"] == {"queued": 2, "processing": 0, "completed": 0, "failed": 0, "total": 2}
        assert body["progress"] == 0

    async def test_progress_of_foreign_batch(self, client, orchestrator, project):
        batch = await orchestrator.create_batch(project.id, "user-1", make_assets(1))
        response = await client.get(f"/batches/{batch.id}", headers={"X-User-Id": "intruder"})
        assert response.status_code == 403

    async def test_progress_of_unknown_batch(self, client):
        response = await client.get("/batches/missing", headers=HEADERS)
        assert response.status_code == 404

    async def test_reenqueue_with_force(self, client, orchestrator, worker, job_queue, project):
        batch = await orchestrator.create_batch(project.id, "user-1", make_assets(2))
        await orchestrator.enqueue_batch(batch.id)
        for payload in list(job_queue.payloads):
            await worker.process_job(payload)

        response = await client.post(f"/batches/{batch.id}/enqueue", headers=HEADERS)
        assert response.json()["jobs"] == []

        response = await client.post(f"/batches/{batch.id}/enqueue", params={"force": "true"}, headers=HEADERS)
        assert len(response.json()["jobs"]) == 2

    async def test_stream_of_finished_batch(self, client, orchestrator, worker, job_queue, project):
        batch = await orchestrator.create_batch(project.id, "user-1", make_assets(1))
        await orchestrator.enqueue_batch(batch.id)
        await worker.process_job(job_queue.payloads[0])

        response = await client.get(f"/batches/{batch.id}/stream", headers=HEADERS)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith("event: progress\n")
        assert "event: complete\n" in response.text


class TestPhotoEndpoints:
    async def test_enqueue_photo(self, client, orchestrator, job_queue, project):
        batch = await orchestrator.create_batch(project.id, "user-1", make_assets(1))
        photo_id = batch.photos[0].id

        first = await client.post("/photos/enqueue", headers=HEADERS, json={"photo_id": photo_id, "room_type": "salon"})
        second = await client.post("/photos/enqueue", headers=HEADERS, json={"photo_id": photo_id})

        assert first.status_code == 200
        assert first.json()["status"] == "enqueued"
        assert first.json()["photoId"] == photo_id
        assert second.json()["status"] == "already_processing"
        assert second.json()["jobId"] == first.json()["jobId"]
        assert len(job_queue.payloads) == 1

    async def test_enqueue_unknown_photo(self, client):
        response = await client.post("/photos/enqueue", headers=HEADERS, json={"photo_id": "missing"})
        assert response.status_code == 404


class TestServiceEndpoints:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json() == {"status": "healthy"}

    async def test_metrics(self, client, orchestrator, project):
        batch = await orchestrator.create_batch(project.id, "user-1", make_assets(1))
        await orchestrator.enqueue_batch(batch.id)

        body = (await client.get("/metrics")).json()

        assert body["jobs"]["waiting"] == 1
        assert set(body["pipeline"]) >= {"cache_hits", "cache_misses", "cache_hit_ratio", "pubsub_events"}
