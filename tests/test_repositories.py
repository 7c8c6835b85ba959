"""Repository layer tests.

Tests focus on the conditional writes the ledger and state machine rely on:
- Credit markers flip false -> true at most once
- Balance compare-and-swap only applies against the observed value
- Recovery queries find stale and half-refunded jobs

Simple CRUD operations are not tested (trust SQLAlchemy).

Note: FOR UPDATE SKIP LOCKED is a no-op on SQLite; worker coordination is
exercised against PostgreSQL in deployment.
"""

from datetime import timedelta

import pytest

from genjobs.core.timezone import utc_now
from genjobs.models.job import JobStatus


@pytest.mark.asyncio
async def test_reservation_marker_is_claimed_once(uow_factory, create_account, create_job):
    account = await create_account()
    job = await create_job(account.id)

    async with await uow_factory() as uow:
        assert await uow.jobs.claim_reservation(job.id) is True
    async with await uow_factory() as uow:
        assert await uow.jobs.claim_reservation(job.id) is False


@pytest.mark.asyncio
async def test_confirmation_and_refund_markers_exclude_each_other(
    uow_factory, create_account, create_job, reload_job
):
    account = await create_account()
    job = await create_job(account.id)

    async with await uow_factory() as uow:
        # Neither marker can be claimed before a reservation
        assert await uow.jobs.claim_confirmation(job.id) is False
        assert await uow.jobs.claim_refund(job.id) is False
        assert await uow.jobs.claim_reservation(job.id) is True

    async with await uow_factory() as uow:
        assert await uow.jobs.claim_confirmation(job.id) is True
    async with await uow_factory() as uow:
        assert await uow.jobs.claim_refund(job.id) is False
        assert await uow.jobs.claim_confirmation(job.id) is False

    stored = await reload_job(job.id)
    assert stored.credits_deducted is True
    assert stored.credits_refunded is False


@pytest.mark.asyncio
async def test_compare_and_set_balance(uow_factory, create_account, balance_of):
    account = await create_account(balance=25)

    async with await uow_factory() as uow:
        assert await uow.accounts.compare_and_set_balance(account.id, 24, 10) is False
        assert await uow.accounts.compare_and_set_balance(account.id, 25, 15) is True

    assert await balance_of(account.id) == 15


@pytest.mark.asyncio
async def test_compare_and_set_balance_rejects_negative(uow_factory, create_account):
    account = await create_account(balance=5)

    async with await uow_factory() as uow:
        with pytest.raises(ValueError, match="negative"):
            await uow.accounts.compare_and_set_balance(account.id, 5, -5)


@pytest.mark.asyncio
async def test_get_by_generation(uow_factory, create_account, create_job):
    account = await create_account()
    other = await create_account()
    job = await create_job(account.id)

    async with await uow_factory() as uow:
        found = await uow.jobs.get_by_generation(job.generation_id, account.id)
        missing = await uow.jobs.get_by_generation(job.generation_id, other.id)

    assert found is not None and found.id == job.id
    assert missing is None


@pytest.mark.asyncio
async def test_pending_jobs_returned_oldest_first(uow_factory, create_account, create_job):
    account = await create_account()
    now = utc_now()
    newer = await create_job(account.id, created_at=now)
    older = await create_job(account.id, created_at=now - timedelta(minutes=5))
    await create_job(account.id, status=JobStatus.PROCESSING)

    async with await uow_factory() as uow:
        jobs = await uow.jobs.get_pending_for_processing(limit=10)

    assert [j.id for j in jobs] == [older.id, newer.id]


@pytest.mark.asyncio
async def test_recovery_queries(uow_factory, create_account, create_job):
    account = await create_account()
    long_ago = utc_now() - timedelta(minutes=30)

    stale = await create_job(account.id, status=JobStatus.PROCESSING, updated_at=long_ago)
    await create_job(account.id, status=JobStatus.PROCESSING)
    half_refunded = await create_job(account.id, status=JobStatus.FAILED, credits_reserved=True)
    await create_job(account.id, status=JobStatus.FAILED)
    await create_job(
        account.id, status=JobStatus.REFUNDED, credits_reserved=True, credits_refunded=True
    )

    async with await uow_factory() as uow:
        stale_jobs = await uow.jobs.get_stale_processing(utc_now() - timedelta(minutes=15))
        awaiting = await uow.jobs.get_awaiting_refund()

    assert [j.id for j in stale_jobs] == [stale.id]
    assert [j.id for j in awaiting] == [half_refunded.id]
