"""CreditLedgerEntry entity - audit row per applied ledger operation."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from genjobs.core.timezone import utc_now


class LedgerOperation(str, Enum):
    """Kinds of credit operations recorded against a job."""

    RESERVE = "reserve"
    REFUND = "refund"
    CONFIRM = "confirm"


class CreditLedgerEntry(SQLModel, table=True):
    """CreditLedgerEntry records one applied operation; (job_id, operation) is unique."""

    __tablename__ = "credit_ledger_entries"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("job_id", "operation", name="uq_ledger_job_operation"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(foreign_key="generation_jobs.id", index=True)
    user_id: UUID = Field(foreign_key="user_accounts.id", index=True)
    operation: LedgerOperation
    amount: int = Field(ge=0)
    balance_before: int
    balance_after: int
    created_at: datetime = Field(default_factory=utc_now)
