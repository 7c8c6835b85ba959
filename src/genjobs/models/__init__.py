"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genjobs.models.job import (
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
    QualityTier,
    ensure_transition,
)
from genjobs.models.ledger_entry import CreditLedgerEntry, LedgerOperation
from genjobs.models.user_account import UserAccount

__all__ = [
    "UserAccount",
    "GenerationJob",
    "JobStatus",
    "QualityTier",
    "InvalidStateTransition",
    "ensure_transition",
    "CreditLedgerEntry",
    "LedgerOperation",
]
