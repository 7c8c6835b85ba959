"""UserAccount entity - credit balance owner."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from genjobs.core.timezone import utc_now


class UserAccount(SQLModel, table=True):
    """UserAccount holds the credit balance debited and credited by the ledger."""

    __tablename__ = "user_accounts"  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_user_accounts_balance_non_negative"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    credit_balance: int = Field(default=0, ge=0)
    push_token: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
