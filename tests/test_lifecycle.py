"""Job state machine tests.

Tests focus on transitions and their side effects:
- begin reserves credits or rejects the job
- complete confirms and notifies exactly once, however often it is delivered
- fail refunds exactly once and ends in refunded
- replays on terminal jobs change nothing
- recovery fails stale jobs and finishes interrupted refunds
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from genjobs.core.timezone import utc_now
from genjobs.models.job import InvalidStateTransition, JobStatus, QualityTier
from genjobs.models.ledger_entry import LedgerOperation
from genjobs.services.exceptions import AccountNotFound, InsufficientFunds
from genjobs.services.ledger import CreditLedger
from genjobs.services.lifecycle import INSUFFICIENT_CREDITS_MESSAGE, JobStateMachine


class RecordingNotifier:
    def __init__(self):
        self.notified = []

    async def notify_completed(self, job):
        self.notified.append(job.id)
        return True


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def state_machine(uow_factory, settings, notifier):
    return JobStateMachine(uow_factory, CreditLedger(), settings, notifier=notifier)


@pytest.mark.asyncio
async def test_create_job_fixes_cost_from_tier(state_machine, create_account, balance_of):
    account = await create_account(balance=100)

    standard = await state_machine.create_job(
        account.id, "  Make it snow  ", ["https://images.test/a.jpg"]
    )
    premium = await state_machine.create_job(
        account.id, "Make it rain", ["https://images.test/a.jpg"], quality_tier=QualityTier.PREMIUM
    )

    assert standard.status == JobStatus.PENDING
    assert standard.original_prompt == "Make it snow"
    assert standard.cost_in_credits == 10
    assert premium.cost_in_credits == 35
    # Creating a job moves no credits
    assert await balance_of(account.id) == 100


@pytest.mark.asyncio
async def test_create_job_with_repeated_generation_id_returns_existing(state_machine, create_account):
    account = await create_account()
    generation_id = uuid4()

    first = await state_machine.create_job(
        account.id, "Add a hat", ["https://images.test/a.jpg"], generation_id=generation_id
    )
    second = await state_machine.create_job(
        account.id, "Add a hat", ["https://images.test/a.jpg"], generation_id=generation_id
    )

    assert second.id == first.id


@pytest.mark.asyncio
async def test_create_job_validation(state_machine, create_account):
    account = await create_account()

    with pytest.raises(ValueError, match="empty"):
        await state_machine.create_job(account.id, "", ["https://images.test/a.jpg"])
    with pytest.raises(ValueError, match="input image"):
        await state_machine.create_job(account.id, "Add a hat", [])
    with pytest.raises(AccountNotFound):
        await state_machine.create_job(uuid4(), "Add a hat", ["https://images.test/a.jpg"])


@pytest.mark.asyncio
async def test_begin_reserves_and_starts_processing(
    state_machine, create_account, create_job, balance_of
):
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)

    started = await state_machine.begin(job)

    assert started.status == JobStatus.PROCESSING
    assert started.credits_reserved is True
    assert await balance_of(account.id) == 0


@pytest.mark.asyncio
async def test_begin_with_insufficient_funds_rejects_job(
    state_machine, create_account, create_job, balance_of, reload_job
):
    """Balance 5, cost 10: the job never starts and nothing needs refunding."""
    account = await create_account(balance=5)
    job = await create_job(account.id, cost=10)

    with pytest.raises(InsufficientFunds):
        await state_machine.begin(job)

    stored = await reload_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_message == INSUFFICIENT_CREDITS_MESSAGE
    assert stored.credits_reserved is False
    assert await balance_of(account.id) == 5


@pytest.mark.asyncio
async def test_begin_twice_is_rejected(state_machine, create_account, create_job, balance_of):
    account = await create_account(balance=30)
    job = await create_job(account.id, cost=10)

    await state_machine.begin(job)
    with pytest.raises(InvalidStateTransition):
        await state_machine.begin(job)

    assert await balance_of(account.id) == 20


@pytest.mark.asyncio
async def test_complete_confirms_and_notifies_once(
    state_machine, notifier, uow_factory, create_account, create_job, balance_of, reload_job
):
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await state_machine.begin(job)

    for _ in range(3):
        await state_machine.complete(job, "https://cdn.test/results/r.png", enhanced_prompt="A hat")

    stored = await reload_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result_image_ref == "https://cdn.test/results/r.png"
    assert stored.enhanced_prompt == "A hat"
    assert stored.completed_at is not None
    assert stored.credits_deducted is True
    assert notifier.notified == [job.id]
    assert await balance_of(account.id) == 0

    async with await uow_factory() as uow:
        entries = await uow.ledger_entries.list_for_job(job.id)
    assert sorted(e.operation for e in entries) == sorted(
        [LedgerOperation.RESERVE, LedgerOperation.CONFIRM]
    )


@pytest.mark.asyncio
async def test_concurrent_completions_notify_once(
    state_machine, notifier, create_account, create_job, reload_job
):
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await state_machine.begin(job)

    await asyncio.gather(
        state_machine.complete(job, "https://cdn.test/results/a.png"),
        state_machine.complete(job, "https://cdn.test/results/b.png"),
    )

    assert notifier.notified == [job.id]
    assert (await reload_job(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_complete_pending_job_is_invalid(state_machine, create_account, create_job):
    account = await create_account()
    job = await create_job(account.id)

    with pytest.raises(InvalidStateTransition):
        await state_machine.complete(job, "https://cdn.test/results/r.png")


@pytest.mark.asyncio
async def test_fail_refunds_once(
    state_machine, notifier, create_account, create_job, balance_of, reload_job
):
    """Balance 10, cost 10: reserve -> 0, fail -> refunded, balance 10."""
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await state_machine.begin(job)
    assert await balance_of(account.id) == 0

    result = await state_machine.fail(job, "Synthesis failed")
    replay = await state_machine.fail(job, "Synthesis failed again")

    assert result.status == JobStatus.REFUNDED
    assert replay.status == JobStatus.REFUNDED
    stored = await reload_job(job.id)
    assert stored.error_message == "Synthesis failed"
    assert stored.credits_refunded is True
    assert stored.credits_deducted is False
    assert await balance_of(account.id) == 10
    assert notifier.notified == []


@pytest.mark.asyncio
async def test_fail_after_complete_changes_nothing(
    state_machine, create_account, create_job, balance_of, reload_job
):
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await state_machine.begin(job)
    await state_machine.complete(job, "https://cdn.test/results/r.png")

    result = await state_machine.fail(job, "late failure")

    assert result.status == JobStatus.COMPLETED
    assert (await reload_job(job.id)).error_message is None
    assert await balance_of(account.id) == 0


@pytest.mark.asyncio
async def test_complete_after_fail_changes_nothing(
    state_machine, notifier, create_account, create_job, balance_of
):
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await state_machine.begin(job)
    await state_machine.fail(job, "boom")

    result = await state_machine.complete(job, "https://cdn.test/results/r.png")

    assert result.status == JobStatus.REFUNDED
    assert result.result_image_ref is None
    assert notifier.notified == []
    assert await balance_of(account.id) == 10


@pytest.mark.asyncio
async def test_fail_pending_job_without_reservation(state_machine, create_account, create_job):
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)

    result = await state_machine.fail(job, "Invalid input")

    assert result.status == JobStatus.FAILED
    assert result.credits_refunded is False


@pytest.mark.asyncio
async def test_fail_finishes_interrupted_refund(
    state_machine, uow_factory, create_account, create_job, balance_of
):
    """A crash between 'failed' and the refund is repaired by the next fail call."""
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await state_machine.begin(job)
    async with await uow_factory() as uow:
        await uow.jobs.compare_and_set_status(
            job.id, JobStatus.PROCESSING, JobStatus.FAILED, error_message="crashed"
        )

    result = await state_machine.fail(job, "retry")

    assert result.status == JobStatus.REFUNDED
    assert await balance_of(account.id) == 10


@pytest.mark.asyncio
async def test_recover_stale_jobs(
    state_machine, uow_factory, create_account, create_job, balance_of, reload_job
):
    account = await create_account(balance=30)

    stale = await create_job(account.id, cost=10)
    await state_machine.begin(stale)
    interrupted = await create_job(account.id, cost=10)
    await state_machine.begin(interrupted)
    fresh = await create_job(account.id, cost=10)
    await state_machine.begin(fresh)
    assert await balance_of(account.id) == 0

    async with await uow_factory() as uow:
        await uow.jobs.compare_and_set_status(
            interrupted.id, JobStatus.PROCESSING, JobStatus.FAILED, error_message="crashed"
        )
    # Age the stale job past the timeout
    async with await uow_factory() as uow:
        stored = await uow.jobs.get_by_id(stale.id)
        stored.updated_at = utc_now() - timedelta(minutes=20)

    dry = await state_machine.recover_stale_jobs(dry_run=True)
    assert dry.stale_failed == [stale.id]
    assert dry.refunds_completed == [interrupted.id]
    assert await balance_of(account.id) == 0

    report = await state_machine.recover_stale_jobs()

    assert report.stale_failed == [stale.id]
    assert report.refunds_completed == [interrupted.id]
    assert report.errors == []
    assert (await reload_job(stale.id)).status == JobStatus.REFUNDED
    assert (await reload_job(interrupted.id)).status == JobStatus.REFUNDED
    assert (await reload_job(fresh.id)).status == JobStatus.PROCESSING
    assert await balance_of(account.id) == 20


@pytest.mark.asyncio
async def test_heartbeat_keeps_processing_job_out_of_the_sweep(
    state_machine, uow_factory, create_account, create_job, reload_job
):
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await state_machine.begin(job)
    async with await uow_factory() as uow:
        stored = await uow.jobs.get_by_id(job.id)
        stored.updated_at = utc_now() - timedelta(minutes=20)

    await state_machine.heartbeat(job)
    report = await state_machine.recover_stale_jobs()

    assert report.stale_failed == []
    assert (await reload_job(job.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_explicit_zero_timeout_is_not_replaced_by_default(
    state_machine, create_account, create_job, reload_job
):
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await state_machine.begin(job)

    report = await state_machine.recover_stale_jobs(timeout_minutes=0)

    assert report.stale_failed == [job.id]
    assert (await reload_job(job.id)).status == JobStatus.REFUNDED


@pytest.mark.asyncio
async def test_notifier_error_does_not_escape_complete(
    uow_factory, settings, create_account, create_job, balance_of
):
    class BrokenNotifier:
        async def notify_completed(self, job):
            raise AttributeError("'list' object has no attribute 'get'")

    machine = JobStateMachine(uow_factory, CreditLedger(), settings, notifier=BrokenNotifier())
    account = await create_account(balance=10)
    job = await create_job(account.id, cost=10)
    await machine.begin(job)

    result = await machine.complete(job, "https://cdn.test/results/r.png")

    assert result.status == JobStatus.COMPLETED
    assert result.credits_deducted is True
    assert await balance_of(account.id) == 0
