"""CreditLedgerEntry repository.

Provides data access methods for ledger audit rows.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genjobs.models.ledger_entry import CreditLedgerEntry, LedgerOperation


class CreditLedgerEntryRepository:
    """Repository for CreditLedgerEntry entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        """Persist a ledger entry.

        The (job_id, operation) unique constraint rejects a second entry of the
        same kind for a job.
        """
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get(self, job_id: UUID, operation: LedgerOperation) -> CreditLedgerEntry | None:
        """Retrieve the entry of one operation kind for a job.

        Args:
            job_id: Job's unique identifier
            operation: Ledger operation kind

        Returns:
            CreditLedgerEntry if found, None otherwise
        """
        result = await self.session.execute(
            select(CreditLedgerEntry).where(
                CreditLedgerEntry.job_id == job_id,  # type: ignore[arg-type]
                CreditLedgerEntry.operation == operation,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_for_job(self, job_id: UUID) -> list[CreditLedgerEntry]:
        """Retrieve all entries for a job, oldest first."""
        result = await self.session.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.job_id == job_id)  # type: ignore[arg-type]
            .order_by(CreditLedgerEntry.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())
