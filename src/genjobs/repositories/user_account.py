"""UserAccount repository.

Provides balance reads and the compare-and-swap balance write used by the
credit ledger.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genjobs.core.timezone import utc_now
from genjobs.models.user_account import UserAccount


class UserAccountRepository:
    """Repository for UserAccount entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, account: UserAccount) -> UserAccount:
        """Persist new user account to database.

        Args:
            account: UserAccount entity to persist

        Returns:
            Persisted account with generated ID
        """
        self.session.add(account)
        await self.session.flush()
        return account

    async def get_by_id(self, user_id: UUID) -> UserAccount | None:
        """Retrieve account by UUID.

        Args:
            user_id: Account's unique identifier

        Returns:
            UserAccount if found, None otherwise
        """
        result = await self.session.execute(
            select(UserAccount)
            .where(UserAccount.id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: UUID) -> int | None:
        """Read the current committed balance straight from the database.

        Args:
            user_id: Account's unique identifier

        Returns:
            Credit balance, or None if the account does not exist
        """
        result = await self.session.execute(
            select(UserAccount.credit_balance).where(UserAccount.id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def compare_and_set_balance(self, user_id: UUID, expected: int, new_balance: int) -> bool:
        """Write `new_balance` only if the stored balance still equals `expected`.

        Query:
            UPDATE user_accounts
            SET credit_balance = :new_balance
            WHERE id = :user_id AND credit_balance = :expected

        Args:
            user_id: Account's unique identifier
            expected: Balance observed by the caller
            new_balance: Balance to write (must be >= 0)

        Returns:
            True if the swap was applied, False if the balance moved meanwhile

        Raises:
            ValueError: If new_balance is negative
        """
        if new_balance < 0:
            raise ValueError("credit balance cannot become negative")

        result = await self.session.execute(
            update(UserAccount)
            .where(
                UserAccount.id == user_id,  # type: ignore[arg-type]
                UserAccount.credit_balance == expected,  # type: ignore[arg-type]
            )
            .values(credit_balance=new_balance, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
