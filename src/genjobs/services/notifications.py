"""Completion notifications via the Expo push service.

Delivery is fire-and-forget: failures are logged and never reach the caller,
so a broken push channel cannot undo or delay a completed job.
"""

from typing import Callable, Optional

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from genjobs.models.job import GenerationJob

logger = structlog.get_logger(__name__)


class Notifier:
    """Sends a push message to the owner of a completed job."""

    def __init__(
        self,
        uow_factory: Callable,
        push_url: str = "https://exp.host/--/api/v2/push/send",
        title: str = "Your process is complete!",
        body: str = "Your image is ready. You can view the results.",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.uow_factory = uow_factory
        self.push_url = push_url
        self.title = title
        self.body = body
        self.timeout = timeout
        self.transport = transport

    async def notify_completed(self, job: GenerationJob) -> bool:
        """Push a completion message for `job`.

        Returns:
            True if the push service accepted the message, False if the user
            has no push token or delivery failed
        """
        try:
            async with await self.uow_factory() as uow:
                account = await uow.accounts.get_by_id(job.user_id)
        except SQLAlchemyError as e:
            logger.warning("notification.lookup_failed", job_id=str(job.id), error=str(e))
            return False

        if account is None or not account.push_token:
            logger.info("notification.skipped_no_token", job_id=str(job.id))
            return False

        message = {
            "to": account.push_token,
            "sound": "default",
            "title": self.title,
            "body": self.body,
            "data": {
                "type": "generation_complete",
                "generationId": str(job.generation_id),
                "resultImageUrl": job.result_image_ref,
            },
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.push_url,
                    json=message,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
            ticket = payload.get("data") if isinstance(payload, dict) else None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "notification.failed",
                job_id=str(job.id),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        if isinstance(ticket, dict) and ticket.get("status") == "error":
            logger.warning(
                "notification.rejected",
                job_id=str(job.id),
                error=ticket.get("message"),
            )
            return False

        logger.info("notification.sent", job_id=str(job.id))
        return True
