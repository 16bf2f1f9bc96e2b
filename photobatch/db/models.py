"""
Database Models

SQLAlchemy models for projects, photo batches, photos and tracked jobs.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchStatus(str, PyEnum):
    """Aggregate batch status, derived from the four counters."""
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class PhotoStatus(str, PyEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    ERROR = "ERROR"


class JobState(str, PyEnum):
    """Queue-native job state, mirrored in the jobs table."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Project(Base):
    """A moving project owning photos and batches."""
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)

    batches = relationship("Batch", back_populates="project")


class Batch(Base):
    """A group of photos submitted together for analysis."""
    __tablename__ = "batches"

    id = Column(String, primary_key=True, default=_uuid)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=BatchStatus.QUEUED.value)
    count_queued = Column(Integer, nullable=False, default=0)
    count_processing = Column(Integer, nullable=False, default=0)
    count_completed = Column(Integer, nullable=False, default=0)
    count_failed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project = relationship("Project", back_populates="batches")
    photos = relationship("Photo", back_populates="batch", order_by="Photo.created_at")

    @property
    def total(self) -> int:
        return self.count_queued + self.count_processing + self.count_completed + self.count_failed


class Photo(Base):
    """A single uploaded photo and its analysis outcome."""
    __tablename__ = "photos"

    id = Column(String, primary_key=True, default=_uuid)
    batch_id = Column(String, ForeignKey("batches.id"), nullable=True, index=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    filename = Column(String, nullable=False)
    file_path = Column(String, nullable=False)
    url = Column(String, nullable=False)
    checksum = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=PhotoStatus.PENDING.value)
    room_type = Column(String, nullable=True)
    analysis = Column(JSON, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    # Queue task currently allowed to process this photo; set by compare-and-swap
    active_job_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    batch = relationship("Batch", back_populates="photos")


class Job(Base):
    """Tracked copy of one queue envelope (one processing attempt of a photo)."""
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    photo_id = Column(String, ForeignKey("photos.id"), nullable=False, index=True)
    batch_id = Column(String, ForeignKey("batches.id"), nullable=True, index=True)
    user_id = Column(String, nullable=False)
    room_type = Column(String, nullable=True)
    force = Column(Boolean, nullable=False, default=False)
    state = Column(String, nullable=False, default=JobState.WAITING.value)
    attempts = Column(Integer, nullable=False, default=0)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
