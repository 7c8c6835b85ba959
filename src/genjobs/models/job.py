"""GenerationJob entity - user-initiated generation request with lifecycle status."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from genjobs.core.timezone import utc_now


class JobStatus(str, Enum):
    """Generation job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class QualityTier(str, Enum):
    """Quality tier selected at creation; determines the job's cost."""

    STANDARD = "standard"
    PREMIUM = "premium"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


TERMINAL_STATES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.REFUNDED})

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.FAILED: {JobStatus.REFUNDED},
    JobStatus.COMPLETED: set(),
    JobStatus.REFUNDED: set(),
}


def allowed_next_statuses(status: JobStatus) -> list[JobStatus]:
    """Return deterministically ordered allowed successors for a status."""
    return sorted(_ALLOWED_TRANSITIONS.get(status, set()), key=lambda s: s.value)


def ensure_transition(old_status: JobStatus, new_status: JobStatus) -> None:
    """Validate a transition according to the job lifecycle.

    Raises:
        InvalidStateTransition: If old_status is terminal or new_status is not
            an allowed successor
    """
    if old_status in TERMINAL_STATES:
        raise InvalidStateTransition(
            f"Cannot move to {new_status.value} from terminal state {old_status.value}."
        )
    if new_status not in _ALLOWED_TRANSITIONS.get(old_status, set()):
        allowed = ", ".join(s.value for s in allowed_next_statuses(old_status))
        raise InvalidStateTransition(
            f"Cannot move to {new_status.value} from {old_status.value}. "
            f"Allowed next statuses: {allowed}."
        )


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one generation request and its credit accounting."""

    __tablename__ = "generation_jobs"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("generation_id", "user_id", name="uq_generation_user"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    generation_id: UUID = Field(default_factory=uuid4, index=True)
    user_id: UUID = Field(foreign_key="user_accounts.id", index=True)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)

    original_prompt: str = Field(sa_column=Column(Text, nullable=False))
    enhanced_prompt: Optional[str] = Field(default=None, sa_column=Column(Text))
    input_image_refs: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    result_image_ref: Optional[str] = Field(default=None)
    aspect_ratio: str = Field(default="9:16", max_length=10)

    # Cost is fixed at creation from the quality tier
    quality_tier: QualityTier = Field(default=QualityTier.STANDARD)
    cost_in_credits: int = Field(ge=0)

    # Idempotency markers for ledger operations
    credits_reserved: bool = Field(default=False, index=True)
    credits_deducted: bool = Field(default=False, index=True)
    credits_refunded: bool = Field(default=False, index=True)
    credits_before: Optional[int] = Field(default=None)
    credits_after: Optional[int] = Field(default=None)

    synthesis_attempts: int = Field(default=0, ge=0)
    processing_time_ms: Optional[int] = Field(default=None)
    error_message: Optional[str] = Field(default=None, max_length=1000)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def awaiting_refund(self) -> bool:
        """Failed after a reservation that has not been given back yet."""
        return (
            self.status == JobStatus.FAILED
            and self.credits_reserved
            and not self.credits_refunded
            and not self.credits_deducted
        )
