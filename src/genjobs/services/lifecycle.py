"""Generation job state machine.

Owns every status write for a job and the ledger call that belongs to it:

    create_job   -> pending                       (no ledger action)
    begin        -> pending -> processing         (reserve, same transaction)
    complete     -> processing -> completed       (confirm, same transaction; notify after commit)
    fail         -> pending|processing -> failed  (then refund -> refunded in a second transaction)

Status writes are conditional updates on the expected current status, so when
the same event is delivered twice, or two events race, exactly one writer wins
and only that writer triggers ledger side effects and notifications. Losers and
replays on terminal jobs are logged and return the current job unchanged.

A crash between the failed write and the refund leaves a failed job with an
outstanding reservation; `fail` on such a job and `recover_stale_jobs` both
finish the refund.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from genjobs.core.config import Settings
from genjobs.core.timezone import utc_now
from genjobs.models.job import (
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
    QualityTier,
    ensure_transition,
)
from genjobs.services.exceptions import AccountNotFound, InsufficientFunds
from genjobs.services.external.prompt_validator import validate_prompt
from genjobs.services.ledger import CreditLedger, LedgerOutcome
from genjobs.services.notifications import Notifier

logger = structlog.get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000
INSUFFICIENT_CREDITS_MESSAGE = "Insufficient credits"


@dataclass
class RecoveryReport:
    """Result of a stale-job recovery sweep."""

    stale_failed: list[UUID] = field(default_factory=list)  # processing jobs timed out
    refunds_completed: list[UUID] = field(default_factory=list)  # interrupted refunds finished
    errors: list[str] = field(default_factory=list)


class JobStateMachine:
    """Job transitions with their ledger side effects."""

    def __init__(
        self,
        uow_factory: Callable,
        ledger: CreditLedger,
        settings: Settings,
        notifier: Optional[Notifier] = None,
    ):
        """Initialize state machine.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            ledger: Credit ledger used for reserve/confirm/refund
            settings: Application settings (tier costs, stale timeout)
            notifier: Optional completion notifier
        """
        self.uow_factory = uow_factory
        self.ledger = ledger
        self.settings = settings
        self.notifier = notifier

    def cost_for_tier(self, quality_tier: QualityTier) -> int:
        if quality_tier == QualityTier.PREMIUM:
            return self.settings.premium_tier_cost
        return self.settings.standard_tier_cost

    async def create_job(
        self,
        user_id: UUID,
        prompt: str,
        input_image_refs: Sequence[str],
        quality_tier: QualityTier = QualityTier.STANDARD,
        generation_id: Optional[UUID] = None,
        aspect_ratio: str = "9:16",
    ) -> GenerationJob:
        """Record a new pending job. No credits move yet.

        A repeated (generation_id, user_id) returns the existing job.

        Raises:
            ValueError: If the prompt is invalid or no input image is given
            AccountNotFound: If the user has no account
        """
        prompt = validate_prompt(prompt)
        if not input_image_refs:
            raise ValueError("At least one input image is required")

        if generation_id is not None:
            existing = await self._get_by_generation(generation_id, user_id)
            if existing is not None:
                logger.info("job.create.replayed", job_id=str(existing.id))
                return existing

        job = GenerationJob(
            user_id=user_id,
            original_prompt=prompt,
            input_image_refs=list(input_image_refs),
            quality_tier=quality_tier,
            cost_in_credits=self.cost_for_tier(quality_tier),
            aspect_ratio=aspect_ratio,
        )
        if generation_id is not None:
            job.generation_id = generation_id

        try:
            async with await self.uow_factory() as uow:
                if await uow.accounts.get_by_id(user_id) is None:
                    raise AccountNotFound(f"User account {user_id} not found")
                await uow.jobs.add(job)
        except IntegrityError:
            # Concurrent create with the same generation id
            existing = await self._get_by_generation(job.generation_id, user_id)
            if existing is None:
                raise
            logger.info("job.create.replayed", job_id=str(existing.id))
            return existing

        logger.info(
            "job.created",
            job_id=str(job.id),
            user_id=str(user_id),
            quality_tier=quality_tier.value,
            cost=job.cost_in_credits,
        )
        return job

    async def begin(self, job: GenerationJob) -> GenerationJob:
        """Reserve the job's cost and move it to processing, atomically.

        On InsufficientFunds the job is rejected (pending -> failed, nothing to
        refund) and the error propagates; no external work may start.

        Raises:
            InsufficientFunds: If the user cannot afford the job
            InvalidStateTransition: If the job is not pending
        """
        try:
            async with await self.uow_factory() as uow:
                current = await self._require(uow, job.id)
                ensure_transition(current.status, JobStatus.PROCESSING)

                result = await self.ledger.reserve(
                    uow, current.user_id, current.id, current.cost_in_credits
                )
                if not await uow.jobs.compare_and_set_status(
                    current.id, JobStatus.PENDING, JobStatus.PROCESSING
                ):
                    raise InvalidStateTransition(
                        f"Job {current.id} left pending before it could start"
                    )
                current = await self._require(uow, job.id)
        except InsufficientFunds as e:
            await self._reject(job.id, e)
            raise

        logger.info(
            "job.started",
            job_id=str(current.id),
            reserve_outcome=result.outcome.value,
            balance_after=result.balance_after,
        )
        return current

    async def complete(
        self,
        job: GenerationJob,
        result_ref: str,
        enhanced_prompt: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
    ) -> GenerationJob:
        """Mark the job completed and confirm its reservation.

        Only the caller whose conditional status write wins confirms and
        notifies; replays and late completions are no-ops.
        """
        won = False
        async with await self.uow_factory() as uow:
            current = await self._require(uow, job.id)

            if current.status != JobStatus.PROCESSING:
                if current.status == JobStatus.PENDING:
                    ensure_transition(current.status, JobStatus.COMPLETED)
                logger.warning(
                    "job.complete.replayed",
                    job_id=str(current.id),
                    status=current.status.value,
                )
                return current

            values = {
                "result_image_ref": result_ref,
                "completed_at": utc_now(),
                "error_message": None,
            }
            if enhanced_prompt is not None:
                values["enhanced_prompt"] = enhanced_prompt
            if processing_time_ms is not None:
                values["processing_time_ms"] = processing_time_ms

            won = await uow.jobs.compare_and_set_status(
                current.id, JobStatus.PROCESSING, JobStatus.COMPLETED, **values
            )
            if won:
                confirmation = await self.ledger.confirm(uow, current.user_id, current.id)
                if confirmation.outcome == LedgerOutcome.ALREADY_REFUNDED:
                    raise InvalidStateTransition(
                        f"Job {current.id} was refunded and cannot complete"
                    )
            current = await self._require(uow, job.id)

        if not won:
            logger.warning(
                "job.complete.replayed",
                job_id=str(current.id),
                status=current.status.value,
            )
            return current

        logger.info(
            "job.completed",
            job_id=str(current.id),
            processing_time_ms=current.processing_time_ms,
        )
        if self.notifier is not None:
            try:
                await self.notifier.notify_completed(current)
            except Exception as e:
                # Job is already committed as completed
                logger.error(
                    "notification.unexpected_error",
                    job_id=str(current.id),
                    error_type=type(e).__name__,
                    error=str(e),
                )
        return current

    async def fail(self, job: GenerationJob, message: str) -> GenerationJob:
        """Mark the job failed and refund its reservation if one exists.

        Returns:
            The job as stored afterwards: refunded when a reservation was given
            back, failed when there was nothing to refund
        """
        message = (message or "Generation failed")[:MAX_ERROR_MESSAGE_LENGTH]

        async with await self.uow_factory() as uow:
            current = await self._require(uow, job.id)

            if current.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                if await uow.jobs.compare_and_set_status(
                    current.id,
                    (JobStatus.PENDING, JobStatus.PROCESSING),
                    JobStatus.FAILED,
                    error_message=message,
                ):
                    logger.warning(
                        "job.failed",
                        job_id=str(current.id),
                        error_message=message,
                    )
                current = await self._require(uow, job.id)
            elif current.status != JobStatus.FAILED:
                logger.warning(
                    "job.fail.replayed",
                    job_id=str(current.id),
                    status=current.status.value,
                )
                return current

        if current.awaiting_refund:
            return await self._refund(current)
        return current

    async def record_progress(self, job: GenerationJob, **values) -> None:
        """Persist diagnostic columns (enhanced prompt, synthesis attempts) mid-run."""
        async with await self.uow_factory() as uow:
            await uow.jobs.update_progress(job.id, **values)

    async def heartbeat(self, job: GenerationJob) -> None:
        """Mark a processing job as alive so the stale sweep leaves it alone."""
        async with await self.uow_factory() as uow:
            await uow.jobs.touch_processing(job.id)

    async def recover_stale_jobs(
        self,
        timeout_minutes: Optional[int] = None,
        dry_run: bool = False,
        limit: int = 100,
    ) -> RecoveryReport:
        """Fail jobs stuck in processing and finish interrupted refunds.

        Args:
            timeout_minutes: Processing age after which a job is failed
                (default: settings.stale_job_timeout_minutes)
            dry_run: Report what would be recovered without writing
            limit: Maximum jobs of each kind handled per sweep
        """
        timeout = timeout_minutes
        if timeout is None:
            timeout = self.settings.stale_job_timeout_minutes
        cutoff = utc_now() - timedelta(minutes=timeout)

        async with await self.uow_factory() as uow:
            stale = await uow.jobs.get_stale_processing(cutoff, limit=limit)
            awaiting = await uow.jobs.get_awaiting_refund(limit=limit)

        report = RecoveryReport()
        if dry_run:
            report.stale_failed = [j.id for j in stale]
            report.refunds_completed = [j.id for j in awaiting]
            return report

        for job in stale:
            try:
                await self.fail(job, f"Processing timed out after {timeout} minutes")
                report.stale_failed.append(job.id)
            except Exception as e:
                logger.error("job.recovery.failed", job_id=str(job.id), error=str(e))
                report.errors.append(f"{job.id}: {e}")

        for job in awaiting:
            try:
                await self._refund(job)
                report.refunds_completed.append(job.id)
            except Exception as e:
                logger.error("job.recovery.failed", job_id=str(job.id), error=str(e))
                report.errors.append(f"{job.id}: {e}")

        logger.info(
            "job.recovery.finished",
            stale_failed=len(report.stale_failed),
            refunds_completed=len(report.refunds_completed),
            errors=len(report.errors),
        )
        return report

    async def _refund(self, job: GenerationJob) -> GenerationJob:
        async with await self.uow_factory() as uow:
            result = await self.ledger.refund(uow, job.user_id, job.id, job.cost_in_credits)
            if result.outcome in (LedgerOutcome.APPLIED, LedgerOutcome.ALREADY_REFUNDED):
                await uow.jobs.compare_and_set_status(job.id, JobStatus.FAILED, JobStatus.REFUNDED)
            current = await self._require(uow, job.id)

        logger.info(
            "job.refunded",
            job_id=str(current.id),
            refund_outcome=result.outcome.value,
            balance_after=result.balance_after,
        )
        return current

    async def _reject(self, job_id: UUID, error: InsufficientFunds) -> None:
        async with await self.uow_factory() as uow:
            await uow.jobs.compare_and_set_status(
                job_id,
                JobStatus.PENDING,
                JobStatus.FAILED,
                error_message=INSUFFICIENT_CREDITS_MESSAGE,
            )
        logger.warning(
            "job.rejected",
            job_id=str(job_id),
            balance=error.balance,
            required=error.required,
        )

    async def _get_by_generation(self, generation_id: UUID, user_id: UUID) -> Optional[GenerationJob]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.get_by_generation(generation_id, user_id)

    async def _require(self, uow, job_id: UUID) -> GenerationJob:
        job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise ValueError(f"Job {job_id} not found")
        return job
