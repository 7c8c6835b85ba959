"""GenerationJob repository.

Provides data access methods for GenerationJob entities, including the
conditional (compare-and-set) writes that keep status transitions and credit
markers idempotent under duplicate or concurrent events.
"""

from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genjobs.core.timezone import utc_now
from genjobs.models.job import GenerationJob, JobStatus


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Status and credit-marker writes are conditional updates: the WHERE clause
    carries the expected current value and the returned row count tells the
    caller whether its write won.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new generation job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by internal UUID, bypassing any stale identity-map copy.

        Status and credit markers are read together in this single query.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_generation(self, generation_id: UUID, user_id: UUID) -> GenerationJob | None:
        """Retrieve job by its (generation_id, user_id) identity.

        Args:
            generation_id: Client-facing generation identifier
            user_id: Owning user

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.generation_id == generation_id,  # type: ignore[arg-type]
                GenerationJob.user_id == user_id,  # type: ignore[arg-type]
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_pending_for_processing(self, limit: int = 10) -> list[GenerationJob]:
        """Retrieve pending jobs with row-level locking.

        Uses FOR UPDATE SKIP LOCKED so concurrent workers receive
        non-overlapping sets of jobs. Oldest jobs first (FIFO).

        Args:
            limit: Maximum number of jobs to retrieve (default: 10)

        Returns:
            List of jobs locked for this worker
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.status == JobStatus.PENDING)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def get_stale_processing(self, older_than: datetime, limit: int = 100) -> list[GenerationJob]:
        """Retrieve jobs stuck in processing since before `older_than`.

        Args:
            older_than: Cut-off on updated_at
            limit: Maximum number of jobs to return (default: 100)

        Returns:
            List of stale jobs, oldest first
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.PROCESSING,  # type: ignore[arg-type]
                GenerationJob.updated_at < older_than,  # type: ignore[arg-type]
            )
            .order_by(GenerationJob.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_awaiting_refund(self, limit: int = 100) -> list[GenerationJob]:
        """Retrieve failed jobs whose reservation was never refunded.

        Args:
            limit: Maximum number of jobs to return (default: 100)

        Returns:
            List of jobs, oldest first
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.FAILED,  # type: ignore[arg-type]
                GenerationJob.credits_reserved.is_(True),  # type: ignore[union-attr]
                GenerationJob.credits_refunded.is_(False),  # type: ignore[union-attr]
                GenerationJob.credits_deducted.is_(False),  # type: ignore[union-attr]
            )
            .order_by(GenerationJob.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def compare_and_set_status(
        self,
        job_id: UUID,
        expected: JobStatus | Iterable[JobStatus],
        new_status: JobStatus,
        **values: Any,
    ) -> bool:
        """Move a job to `new_status` only if its current status is `expected`.

        Args:
            job_id: Job's unique identifier
            expected: Status (or statuses) the row must currently have
            new_status: Status to write
            **values: Additional columns written in the same statement

        Returns:
            True if this call performed the transition, False if the row was
            not in an expected status (another writer got there first)
        """
        expected_statuses = [expected] if isinstance(expected, JobStatus) else list(expected)
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.status.in_(expected_statuses),  # type: ignore[attr-defined]
            )
            .values(status=new_status, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim_reservation(self, job_id: UUID) -> bool:
        """Set credits_reserved false→true. Returns False if already set."""
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.credits_reserved.is_(False),  # type: ignore[union-attr]
            )
            .values(credits_reserved=True, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim_confirmation(self, job_id: UUID) -> bool:
        """Set credits_deducted false→true on a reserved, unrefunded job.

        Returns:
            True if this call flipped the marker
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.credits_reserved.is_(True),  # type: ignore[union-attr]
                GenerationJob.credits_deducted.is_(False),  # type: ignore[union-attr]
                GenerationJob.credits_refunded.is_(False),  # type: ignore[union-attr]
            )
            .values(credits_deducted=True, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim_refund(self, job_id: UUID) -> bool:
        """Set credits_refunded false→true on a reserved, unconfirmed job.

        Returns:
            True if this call flipped the marker
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.credits_reserved.is_(True),  # type: ignore[union-attr]
                GenerationJob.credits_deducted.is_(False),  # type: ignore[union-attr]
                GenerationJob.credits_refunded.is_(False),  # type: ignore[union-attr]
            )
            .values(credits_refunded=True, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def record_balance_snapshot(self, job_id: UUID, before: int, after: int) -> None:
        """Store the diagnostic balance snapshot taken at reservation time."""
        await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .values(credits_before=before, credits_after=after)
            .execution_options(synchronize_session=False)
        )

    async def update_progress(self, job_id: UUID, **values: Any) -> None:
        """Write non-status progress columns (enhanced prompt, attempt counters)."""
        await self.session.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .values(updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )

    async def touch_processing(self, job_id: UUID) -> bool:
        """Refresh updated_at on a job that is still processing.

        Returns:
            False if the job has left processing
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.status == JobStatus.PROCESSING,  # type: ignore[arg-type]
            )
            .values(updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
