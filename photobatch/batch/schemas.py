"""
Batch Schemas

Pydantic models exchanged with callers, cached in Redis and published
on the event bus. JSON uses camelCase aliases.
"""
import hashlib
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from photobatch.db.models import BatchStatus, JobState, PhotoStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AssetDescriptor(CamelModel):
    """One uploaded asset to include in a batch."""
    filename: str = Field(min_length=1)
    file_path: str = Field(min_length=1)
    url: str = Field(min_length=1)
    room_type: str | None = None

    def checksum(self) -> str:
        """Simple checksum used to spot duplicate uploads."""
        return hashlib.md5(f"{self.filename}:{self.url}".encode("utf-8")).hexdigest()


class PhotoRef(BaseModel):
    """What the inference collaborator and the worker need to know about a photo."""
    id: str
    batch_id: str | None = None
    project_id: str
    filename: str
    file_path: str
    url: str
    room_type: str | None = None
    status: PhotoStatus


class JobPayload(BaseModel):
    """Body of one queued unit of work."""
    job_id: str
    photo_id: str
    user_id: str
    room_type: str | None = None
    batch_id: str | None = None
    force: bool = False

    def task_kwargs(self) -> dict:
        return self.model_dump(exclude={"job_id"})


class JobHandle(CamelModel):
    job_id: str
    photo_id: str
    state: JobState = JobState.WAITING


class EnqueueResult(CamelModel):
    status: Literal["enqueued", "already_processing"]
    photo_id: str
    job_id: str | None = None


class BatchCounts(CamelModel):
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class PhotoSummary(CamelModel):
    id: str
    filename: str
    status: PhotoStatus
    room_type: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class RoomSummary(CamelModel):
    room_type: str
    items_count: int = 0
    volume_m3: float = Field(default=0.0, alias="volume_m3")


class InventorySummary(CamelModel):
    total_items: int = 0
    total_volume: float = 0.0
    rooms: list[RoomSummary] = Field(default_factory=list)


class BatchProgress(CamelModel):
    """Computed projection of a batch; cached and published, never persisted."""
    batch_id: str
    status: BatchStatus
    progress: int = Field(ge=0, le=100)
    counts: BatchCounts
    photos: list[PhotoSummary] = Field(default_factory=list)
    inventory_summary: InventorySummary | None = None


class BatchEvent(BaseModel):
    """One discrete event of a live batch stream."""
    event: Literal["progress", "complete", "error", "ping", "timeout"]
    data: dict[str, Any]

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"
