"""Completion notifier tests (Expo push served by httpx.MockTransport)."""

import json

import httpx
import pytest

from genjobs.services.notifications import Notifier


def notifier_for(uow_factory, handler) -> Notifier:
    return Notifier(
        uow_factory,
        push_url="https://push.test/send",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_sends_push_to_job_owner(uow_factory, create_account, create_job):
    account = await create_account(push_token="ExponentPushToken[abc]")
    job = await create_job(account.id, result_image_ref="https://cdn.test/results/r.png")
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"status": "ok", "id": "ticket"}})

    assert await notifier_for(uow_factory, handler).notify_completed(job) is True

    assert len(sent) == 1
    assert sent[0]["to"] == "ExponentPushToken[abc]"
    assert sent[0]["data"]["generationId"] == str(job.generation_id)
    assert sent[0]["data"]["resultImageUrl"] == "https://cdn.test/results/r.png"


@pytest.mark.asyncio
async def test_user_without_push_token_is_skipped(uow_factory, create_account, create_job):
    account = await create_account(push_token=None)
    job = await create_job(account.id)
    sent = []

    def handler(request):
        sent.append(request)
        return httpx.Response(200, json={})

    assert await notifier_for(uow_factory, handler).notify_completed(job) is False
    assert sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="down"),
        httpx.Response(200, json={"data": {"status": "error", "message": "DeviceNotRegistered"}}),
    ],
)
async def test_delivery_failures_are_not_raised(uow_factory, create_account, create_job, response):
    account = await create_account(push_token="ExponentPushToken[abc]")
    job = await create_job(account.id)

    assert await notifier_for(uow_factory, lambda request: response).notify_completed(job) is False


@pytest.mark.asyncio
async def test_network_error_is_not_raised(uow_factory, create_account, create_job):
    account = await create_account(push_token="ExponentPushToken[abc]")
    job = await create_job(account.id)

    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    assert await notifier_for(uow_factory, handler).notify_completed(job) is False


@pytest.mark.asyncio
async def test_list_response_is_handled(uow_factory, create_account, create_job):
    account = await create_account(push_token="ExponentPushToken[abc]")
    job = await create_job(account.id)

    def handler(request):
        return httpx.Response(200, json=[{"status": "ok", "id": "ticket"}])

    assert await notifier_for(uow_factory, handler).notify_completed(job) is True
