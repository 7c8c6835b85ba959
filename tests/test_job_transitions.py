"""State transition tests for the GenerationJob lifecycle.

Tests focus on the transition table and the conditional status write:
- Valid transitions between states
- Invalid transitions are rejected with clear error messages
- Terminal states accept no further transition
- Only one of several racing status writes wins
"""

import pytest

from genjobs.models.job import (
    TERMINAL_STATES,
    InvalidStateTransition,
    JobStatus,
    allowed_next_statuses,
    ensure_transition,
)


@pytest.mark.parametrize(
    "old_status,new_status",
    [
        (JobStatus.PENDING, JobStatus.PROCESSING),
        (JobStatus.PENDING, JobStatus.FAILED),
        (JobStatus.PROCESSING, JobStatus.COMPLETED),
        (JobStatus.PROCESSING, JobStatus.FAILED),
        (JobStatus.FAILED, JobStatus.REFUNDED),
    ],
)
def test_valid_state_transitions(old_status, new_status):
    ensure_transition(old_status, new_status)


@pytest.mark.parametrize(
    "old_status,new_status",
    [
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.PENDING, JobStatus.REFUNDED),
        (JobStatus.PROCESSING, JobStatus.PENDING),
        (JobStatus.PROCESSING, JobStatus.REFUNDED),
        (JobStatus.FAILED, JobStatus.COMPLETED),
    ],
)
def test_invalid_state_transition_raises_exception(old_status, new_status):
    with pytest.raises(InvalidStateTransition, match="Allowed next statuses"):
        ensure_transition(old_status, new_status)


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
def test_terminal_states_reject_every_transition(terminal):
    assert allowed_next_statuses(terminal) == []
    for new_status in JobStatus:
        with pytest.raises(InvalidStateTransition, match="terminal state"):
            ensure_transition(terminal, new_status)


def test_allowed_next_statuses_are_ordered():
    assert allowed_next_statuses(JobStatus.PENDING) == [JobStatus.FAILED, JobStatus.PROCESSING]
    assert allowed_next_statuses(JobStatus.FAILED) == [JobStatus.REFUNDED]


@pytest.mark.asyncio
async def test_only_first_conditional_status_write_wins(
    uow_factory, create_account, create_job, reload_job
):
    account = await create_account()
    job = await create_job(account.id, status=JobStatus.PROCESSING)

    async with await uow_factory() as uow:
        first = await uow.jobs.compare_and_set_status(
            job.id, JobStatus.PROCESSING, JobStatus.COMPLETED, result_image_ref="https://cdn.test/r.png"
        )
    async with await uow_factory() as uow:
        second = await uow.jobs.compare_and_set_status(
            job.id, JobStatus.PROCESSING, JobStatus.COMPLETED, result_image_ref="https://cdn.test/other.png"
        )

    assert first is True
    assert second is False
    stored = await reload_job(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result_image_ref == "https://cdn.test/r.png"


@pytest.mark.asyncio
async def test_conditional_status_write_accepts_several_expected(
    uow_factory, create_account, create_job, reload_job
):
    account = await create_account()
    job = await create_job(account.id, status=JobStatus.PENDING)

    async with await uow_factory() as uow:
        moved = await uow.jobs.compare_and_set_status(
            job.id,
            (JobStatus.PENDING, JobStatus.PROCESSING),
            JobStatus.FAILED,
            error_message="boom",
        )

    assert moved is True
    stored = await reload_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_message == "boom"
