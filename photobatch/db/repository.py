"""
Batch Repository

Transactional reads and writes against the durable store.

Every photo transition is a compare-and-swap on the photo row, and the
matching batch counter change is applied as a relative delta inside the
same transaction, so concurrent workers never lose updates.
"""
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from photobatch.batch.schemas import AssetDescriptor, PhotoRef
from photobatch.batch.status import COUNTER_FOR_STATUS, TERMINAL_PHOTO_STATUSES, derive_batch_status
from photobatch.db.models import Batch, BatchStatus, Job, JobState, Photo, PhotoStatus, Project, utcnow
from photobatch.errors import AnalysisError, NotFoundError, UnauthorizedError

logger = logging.getLogger(__name__)


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    ALREADY_PROCESSING = "already_processing"
    SKIPPED = "skipped"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    RESUMED = "resumed"                # redelivery of the job that already owns the photo
    DUPLICATE = "duplicate"            # another job owns the photo
    ALREADY_TERMINAL = "already_terminal"
    NOT_FOUND = "not_found"


@dataclass
class Reservation:
    status: ReservationStatus
    photo_id: str
    job_id: str | None
    batch_id: str | None
    previous_status: PhotoStatus


@dataclass
class Claim:
    outcome: ClaimOutcome
    photo: PhotoRef | None = None


def _photo_ref(photo: Photo) -> PhotoRef:
    return PhotoRef(
        id=photo.id,
        batch_id=photo.batch_id,
        project_id=photo.project_id,
        filename=photo.filename,
        file_path=photo.file_path,
        url=photo.url,
        room_type=photo.room_type,
        status=PhotoStatus(photo.status),
    )


class BatchRepository:
    """Data access for projects, batches, photos and tracked jobs."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    # ------------------------------------------------------------------
    # Projects and batches
    # ------------------------------------------------------------------

    async def create_project(self, user_id: str, name: str = "", project_id: str | None = None) -> Project:
        async with self._sessionmaker() as session, session.begin():
            project = Project(id=project_id or str(uuid.uuid4()), user_id=user_id, name=name)
            session.add(project)
        return project

    async def create_batch(self, project_id: str, user_id: str, assets: Iterable[AssetDescriptor]) -> Batch:
        """Create a batch and its photos in a single transaction."""
        assets = list(assets)
        async with self._sessionmaker() as session, session.begin():
            project = await session.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            if project.user_id != user_id:
                raise UnauthorizedError(f"Project {project_id} does not belong to user {user_id}")

            batch_id = str(uuid.uuid4())
            photos = [
                Photo(
                    id=str(uuid.uuid4()),
                    batch_id=batch_id,
                    project_id=project_id,
                    filename=asset.filename,
                    file_path=asset.file_path,
                    url=asset.url,
                    room_type=asset.room_type,
                    status=PhotoStatus.PENDING.value,
                    checksum=asset.checksum(),
                )
                for asset in assets
            ]
            batch = Batch(
                id=batch_id,
                project_id=project_id,
                user_id=user_id,
                status=BatchStatus.QUEUED.value,
                count_queued=len(photos),
                count_processing=0,
                count_completed=0,
                count_failed=0,
                photos=photos,
            )
            session.add(batch)
        return batch

    async def get_batch(self, batch_id: str) -> Batch:
        async with self._sessionmaker() as session:
            batch = await session.get(Batch, batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    async def get_batch_with_photos(self, batch_id: str) -> Batch:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(Batch).options(selectinload(Batch.photos)).where(Batch.id == batch_id)
            )
            batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    async def get_photo(self, photo_id: str) -> Photo | None:
        async with self._sessionmaker() as session:
            return await session.get(Photo, photo_id)

    # ------------------------------------------------------------------
    # Enqueue side
    # ------------------------------------------------------------------

    async def reserve_photo(
        self,
        photo_id: str,
        job_id: str,
        user_id: str,
        room_type: str | None = None,
        *,
        reset_terminal: bool = False,
    ) -> Reservation:
        """
        Make job_id the only job allowed to process the photo.

        A photo that is PROCESSING, or already has an active job, is reported
        as already processing. DONE/ERROR photos are reset to PENDING only
        when reset_terminal is set, otherwise they are skipped.
        """
        async with self._sessionmaker() as session, session.begin():
            photo = await session.get(Photo, photo_id, with_for_update=True)
            if photo is None:
                raise NotFoundError(f"Photo {photo_id} not found")

            observed = PhotoStatus(photo.status)
            batch_id = photo.batch_id

            if observed == PhotoStatus.PROCESSING or photo.active_job_id is not None:
                return Reservation(ReservationStatus.ALREADY_PROCESSING, photo_id, photo.active_job_id, batch_id, observed)
            if observed in TERMINAL_PHOTO_STATUSES and not reset_terminal:
                return Reservation(ReservationStatus.SKIPPED, photo_id, None, batch_id, observed)

            values: dict[str, Any] = {"status": PhotoStatus.PENDING.value, "active_job_id": job_id}
            if observed in TERMINAL_PHOTO_STATUSES:
                values.update(error_code=None, error_message=None, processed_at=None)
            if room_type:
                values["room_type"] = room_type

            swapped = await self._swap_photo(session, photo_id, observed, values, owner=None)
            if not swapped:
                return Reservation(ReservationStatus.ALREADY_PROCESSING, photo_id, None, batch_id, observed)

            await self._move_counter(session, batch_id, observed, PhotoStatus.PENDING)
            session.add(Job(
                id=job_id,
                photo_id=photo_id,
                batch_id=batch_id,
                user_id=user_id,
                room_type=room_type or photo.room_type,
                force=observed in TERMINAL_PHOTO_STATUSES,
                state=JobState.WAITING.value,
            ))

        return Reservation(ReservationStatus.RESERVED, photo_id, job_id, batch_id, observed)

    async def release_reservation(self, photo_id: str, job_id: str, error_message: str) -> None:
        """Undo a reservation whose job never reached the queue."""
        async with self._sessionmaker() as session, session.begin():
            await session.execute(
                update(Photo)
                .where(Photo.id == photo_id, Photo.active_job_id == job_id)
                .values(active_job_id=None)
                .execution_options(synchronize_session=False)
            )
            await self._update_job(
                session, job_id,
                state=JobState.FAILED.value,
                error_code="ENQUEUE_FAILED",
                error_message=error_message[:500],
                finished_at=utcnow(),
            )

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def claim_photo(self, photo_id: str, job_id: str, *, force: bool = False) -> Claim:
        """Move the photo to PROCESSING on behalf of job_id, if it may."""
        async with self._sessionmaker() as session, session.begin():
            photo = await session.get(Photo, photo_id, with_for_update=True)
            if photo is None:
                return Claim(ClaimOutcome.NOT_FOUND)

            ref = _photo_ref(photo)
            observed = ref.status

            if observed == PhotoStatus.PROCESSING:
                if photo.active_job_id != job_id:
                    return Claim(ClaimOutcome.DUPLICATE, ref)
                await self._mark_job_active(session, job_id)
                return Claim(ClaimOutcome.RESUMED, ref)

            if observed in TERMINAL_PHOTO_STATUSES and not force:
                return Claim(ClaimOutcome.ALREADY_TERMINAL, ref)

            values = {"status": PhotoStatus.PROCESSING.value, "active_job_id": job_id}
            if not await self._swap_photo(session, photo_id, observed, values, owner=job_id):
                return Claim(ClaimOutcome.DUPLICATE, ref)

            await self._move_counter(session, ref.batch_id, observed, PhotoStatus.PROCESSING)
            await self._mark_job_active(session, job_id)

        return Claim(ClaimOutcome.CLAIMED, ref.model_copy(update={"status": PhotoStatus.PROCESSING}))

    async def finish_photo(
        self,
        photo_id: str,
        job_id: str,
        *,
        analysis: dict | None = None,
        room_type: str | None = None,
        error: AnalysisError | None = None,
        from_statuses: tuple[PhotoStatus, ...] = (PhotoStatus.PROCESSING,),
    ) -> bool:
        """
        Record the outcome of job_id: DONE with its analysis, or ERROR.

        Returns False when the job no longer owns the photo.
        """
        async with self._sessionmaker() as session, session.begin():
            photo = await session.get(Photo, photo_id, with_for_update=True)
            if photo is None:
                return False

            observed = PhotoStatus(photo.status)
            if photo.active_job_id != job_id or observed not in from_statuses:
                logger.warning(
                    f"Job {job_id} no longer owns photo {photo_id} "
                    f"(status={observed.value}, active_job={photo.active_job_id})"
                )
                return False

            now = utcnow()
            if error is None:
                target = PhotoStatus.DONE
                values = {
                    "status": target.value,
                    "analysis": analysis,
                    "room_type": room_type or photo.room_type,
                    "error_code": None,
                    "error_message": None,
                    "processed_at": now,
                    "active_job_id": None,
                }
            else:
                target = PhotoStatus.ERROR
                values = {
                    "status": target.value,
                    "error_code": error.code.value,
                    "error_message": error.message[:500],
                    "processed_at": now,
                    "active_job_id": None,
                }

            if not await self._swap_photo(session, photo_id, observed, values, owner=job_id, strict_owner=True):
                return False

            await self._move_counter(session, photo.batch_id, observed, target)
            await self._update_job(
                session, job_id,
                state=(JobState.COMPLETED if error is None else JobState.FAILED).value,
                error_code=error.code.value if error else None,
                error_message=error.message[:500] if error else None,
                finished_at=now,
            )
        return True

    async def finish_job(self, job_id: str, state: JobState, note: str | None = None) -> None:
        """Close a tracked job that did not change its photo."""
        async with self._sessionmaker() as session, session.begin():
            await self._update_job(session, job_id, state=state.value, error_message=note, finished_at=utcnow())

    async def reconcile_batch_counts(self, batch_id: str) -> bool:
        """
        Recount the batch's photos by status under a row lock and repair the
        counters and status if they drifted. Returns True when a fix was written.
        """
        async with self._sessionmaker() as session, session.begin():
            batch = await session.get(Batch, batch_id, with_for_update=True)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")

            rows = await session.execute(
                select(Photo.status, func.count()).where(Photo.batch_id == batch_id).group_by(Photo.status)
            )
            by_status = {status: count for status, count in rows.all()}
            counters = {column: by_status.get(status.value, 0) for status, column in COUNTER_FOR_STATUS.items()}
            status = derive_batch_status(
                counters["count_queued"], counters["count_processing"],
                counters["count_completed"], counters["count_failed"],
            )

            drifted = any(getattr(batch, column) != value for column, value in counters.items())
            if not drifted and batch.status == status.value:
                return False

            logger.warning(f"Reconciled batch {batch_id} counters: {counters} status={status.value}")
            for column, value in counters.items():
                setattr(batch, column, value)
            batch.status = status.value
        return True

    async def count_jobs_by_state(self) -> dict[str, int]:
        async with self._sessionmaker() as session:
            rows = await session.execute(select(Job.state, func.count()).group_by(Job.state))
            counts = {state.value: 0 for state in JobState}
            counts.update({state: count for state, count in rows.all()})
        return counts

    # ------------------------------------------------------------------
    # Helpers (run inside the caller's transaction)
    # ------------------------------------------------------------------

    async def _swap_photo(
        self,
        session: AsyncSession,
        photo_id: str,
        expected: PhotoStatus,
        values: dict,
        owner: str | None,
        strict_owner: bool = False,
    ) -> bool:
        """Conditional update: succeeds only if status and ownership are unchanged."""
        stmt = update(Photo).where(Photo.id == photo_id, Photo.status == expected.value)
        if strict_owner:
            stmt = stmt.where(Photo.active_job_id == owner)
        elif owner is None:
            stmt = stmt.where(Photo.active_job_id.is_(None))
        else:
            stmt = stmt.where(or_(Photo.active_job_id.is_(None), Photo.active_job_id == owner))

        result = await session.execute(
            stmt.values(updated_at=utcnow(), **values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _move_counter(
        self,
        session: AsyncSession,
        batch_id: str | None,
        old: PhotoStatus,
        new: PhotoStatus,
    ) -> None:
        """Move one photo from one batch counter to another and refresh the status."""
        if batch_id is None or old == new:
            return

        old_column = getattr(Batch, COUNTER_FOR_STATUS[old])
        new_column = getattr(Batch, COUNTER_FOR_STATUS[new])
        await session.execute(
            update(Batch)
            .where(Batch.id == batch_id)
            .values({old_column: old_column - 1, new_column: new_column + 1, Batch.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )

        row = (await session.execute(
            select(
                Batch.status, Batch.count_queued, Batch.count_processing,
                Batch.count_completed, Batch.count_failed,
            ).where(Batch.id == batch_id)
        )).one()
        status = derive_batch_status(row.count_queued, row.count_processing, row.count_completed, row.count_failed)
        if status.value != row.status:
            await session.execute(
                update(Batch)
                .where(Batch.id == batch_id)
                .values(status=status.value)
                .execution_options(synchronize_session=False)
            )
            logger.info(f"Batch {batch_id} status {row.status} -> {status.value}")

    async def _mark_job_active(self, session: AsyncSession, job_id: str) -> None:
        await self._update_job(
            session, job_id,
            state=JobState.ACTIVE.value,
            attempts=Job.attempts + 1,
            started_at=utcnow(),
        )

    async def _update_job(self, session: AsyncSession, job_id: str, **values) -> None:
        # Jobs dispatched outside the orchestrator have no tracked row; the update is then a no-op
        await session.execute(
            update(Job).where(Job.id == job_id).values(**values).execution_options(synchronize_session=False)
        )
