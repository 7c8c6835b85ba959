"""Credit ledger: reserve, refund and confirm, each idempotent per job.

Every operation runs inside the caller's UnitOfWork so that the credit markers
on the job row, the balance change and the audit entry commit (or roll back)
together with whatever status write the caller makes.

Idempotency rests on conditional updates of dedicated marker columns on the
job row (see GenerationJobRepository.claim_*). The caller whose conditional
update matches the row performs the operation; every later caller observes
the marker and gets a replay outcome instead of a second balance change.

Balance changes use compare-and-swap:

    SELECT credit_balance FROM user_accounts WHERE id = :user_id
    UPDATE user_accounts SET credit_balance = :new
        WHERE id = :user_id AND credit_balance = :observed

and re-read when another transaction moved the balance in between.
"""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

import structlog

from genjobs.models.ledger_entry import CreditLedgerEntry, LedgerOperation
from genjobs.services.exceptions import (
    AccountNotFound,
    InsufficientFunds,
    LedgerConflict,
    NoPriorReservation,
)
from genjobs.uow import UnitOfWork

logger = structlog.get_logger(__name__)


class LedgerOutcome(str, Enum):
    """Result of a ledger call: applied now, or a no-op replay."""

    APPLIED = "applied"
    ALREADY_RESERVED = "already_reserved"
    ALREADY_REFUNDED = "already_refunded"
    ALREADY_CONFIRMED = "already_confirmed"


@dataclass(slots=True)
class LedgerResult:
    operation: LedgerOperation
    outcome: LedgerOutcome
    balance_after: int | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == LedgerOutcome.APPLIED


class CreditLedger:
    """Credit ledger operations on user balances, keyed by job id."""

    def __init__(self, max_cas_attempts: int = 5):
        """Initialize ledger.

        Args:
            max_cas_attempts: Balance compare-and-swap attempts before giving up
                with LedgerConflict (default: 5)
        """
        self.max_cas_attempts = max_cas_attempts

    async def get_balance(self, uow: UnitOfWork, user_id: UUID) -> int:
        """Return the user's current credit balance.

        Raises:
            AccountNotFound: If the user has no account
        """
        balance = await uow.accounts.get_balance(user_id)
        if balance is None:
            raise AccountNotFound(f"User account {user_id} not found")
        return balance

    async def reserve(self, uow: UnitOfWork, user_id: UUID, job_id: UUID, amount: int) -> LedgerResult:
        """Deduct `amount` from the user's balance on behalf of a job.

        Args:
            uow: Open unit of work (transaction boundary)
            user_id: Balance owner
            job_id: Originating job (idempotency key)
            amount: Credits to deduct

        Returns:
            APPLIED with the new balance, or ALREADY_RESERVED with the balance
            recorded by the original reservation

        Raises:
            InsufficientFunds: If balance < amount (balance unchanged)
            AccountNotFound: If the user has no account
            LedgerConflict: If the balance swap kept losing to concurrent writers
            ValueError: If amount is negative or the job does not exist
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")

        if not await uow.jobs.claim_reservation(job_id):
            await self._require_job(uow, job_id)
            prior = await uow.ledger_entries.get(job_id, LedgerOperation.RESERVE)
            logger.warning(
                "ledger.reserve.replayed",
                job_id=str(job_id),
                user_id=str(user_id),
            )
            return LedgerResult(
                operation=LedgerOperation.RESERVE,
                outcome=LedgerOutcome.ALREADY_RESERVED,
                balance_after=prior.balance_after if prior else None,
            )

        before, after = await self._swap_balance(uow, user_id, -amount)
        await uow.jobs.record_balance_snapshot(job_id, before, after)
        await uow.ledger_entries.add(
            CreditLedgerEntry(
                job_id=job_id,
                user_id=user_id,
                operation=LedgerOperation.RESERVE,
                amount=amount,
                balance_before=before,
                balance_after=after,
            )
        )

        logger.info(
            "ledger.reserve.applied",
            job_id=str(job_id),
            user_id=str(user_id),
            amount=amount,
            balance_before=before,
            balance_after=after,
        )
        return LedgerResult(LedgerOperation.RESERVE, LedgerOutcome.APPLIED, after)

    async def refund(self, uow: UnitOfWork, user_id: UUID, job_id: UUID, amount: int) -> LedgerResult:
        """Give a job's reservation back to the user.

        Only valid once, and only while the reservation has not been confirmed.

        Returns:
            APPLIED with the new balance, ALREADY_REFUNDED on replay, or
            ALREADY_CONFIRMED if the job succeeded (a confirm is never reversed)

        Raises:
            NoPriorReservation: If the job never reserved credits
            AccountNotFound: If the user has no account
            LedgerConflict: If the balance swap kept losing to concurrent writers
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")

        if not await uow.jobs.claim_refund(job_id):
            job = await self._require_job(uow, job_id)
            if not job.credits_reserved:
                raise NoPriorReservation(f"Job {job_id} has no reservation to refund")

            if job.credits_deducted:
                logger.warning(
                    "ledger.refund.rejected_after_confirm",
                    job_id=str(job_id),
                    user_id=str(user_id),
                )
                return LedgerResult(LedgerOperation.REFUND, LedgerOutcome.ALREADY_CONFIRMED)

            prior = await uow.ledger_entries.get(job_id, LedgerOperation.REFUND)
            logger.warning("ledger.refund.replayed", job_id=str(job_id), user_id=str(user_id))
            return LedgerResult(
                operation=LedgerOperation.REFUND,
                outcome=LedgerOutcome.ALREADY_REFUNDED,
                balance_after=prior.balance_after if prior else None,
            )

        before, after = await self._swap_balance(uow, user_id, amount)
        await uow.ledger_entries.add(
            CreditLedgerEntry(
                job_id=job_id,
                user_id=user_id,
                operation=LedgerOperation.REFUND,
                amount=amount,
                balance_before=before,
                balance_after=after,
            )
        )

        logger.info(
            "ledger.refund.applied",
            job_id=str(job_id),
            user_id=str(user_id),
            amount=amount,
            balance_after=after,
        )
        return LedgerResult(LedgerOperation.REFUND, LedgerOutcome.APPLIED, after)

    async def confirm(self, uow: UnitOfWork, user_id: UUID, job_id: UUID) -> LedgerResult:
        """Finalize a successful job's reservation. The balance is not touched.

        Flips the job's credits_deducted marker so a second completion event
        for the same job is a no-op.

        Returns:
            APPLIED, ALREADY_CONFIRMED on replay, or ALREADY_REFUNDED if the
            reservation was given back before the completion arrived

        Raises:
            NoPriorReservation: If the job never reserved credits
        """
        if not await uow.jobs.claim_confirmation(job_id):
            job = await self._require_job(uow, job_id)
            if not job.credits_reserved:
                raise NoPriorReservation(f"Job {job_id} has no reservation to confirm")

            outcome = (
                LedgerOutcome.ALREADY_REFUNDED
                if job.credits_refunded
                else LedgerOutcome.ALREADY_CONFIRMED
            )
            logger.warning(
                "ledger.confirm.replayed",
                job_id=str(job_id),
                user_id=str(user_id),
                outcome=outcome.value,
            )
            return LedgerResult(LedgerOperation.CONFIRM, outcome)

        job = await self._require_job(uow, job_id)
        balance = await self.get_balance(uow, user_id)
        await uow.ledger_entries.add(
            CreditLedgerEntry(
                job_id=job_id,
                user_id=user_id,
                operation=LedgerOperation.CONFIRM,
                amount=job.cost_in_credits,
                balance_before=balance,
                balance_after=balance,
            )
        )

        logger.info(
            "ledger.confirm.applied",
            job_id=str(job_id),
            user_id=str(user_id),
            amount=job.cost_in_credits,
        )
        return LedgerResult(LedgerOperation.CONFIRM, LedgerOutcome.APPLIED, balance)

    async def _swap_balance(self, uow: UnitOfWork, user_id: UUID, delta: int) -> tuple[int, int]:
        """Apply `delta` to the balance with compare-and-swap.

        Returns:
            (balance_before, balance_after)
        """
        for attempt in range(1, self.max_cas_attempts + 1):
            observed = await self.get_balance(uow, user_id)
            new_balance = observed + delta
            if new_balance < 0:
                raise InsufficientFunds(user_id, balance=observed, required=-delta)

            if await uow.accounts.compare_and_set_balance(user_id, observed, new_balance):
                return observed, new_balance

            logger.info(
                "ledger.balance.swap_conflict",
                user_id=str(user_id),
                observed=observed,
                attempt=attempt,
            )

        raise LedgerConflict(
            f"Balance of user {user_id} changed concurrently {self.max_cas_attempts} times"
        )

    async def _require_job(self, uow: UnitOfWork, job_id: UUID):
        job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise ValueError(f"Job {job_id} not found")
        return job
