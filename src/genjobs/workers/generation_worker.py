"""Generation worker: drives pending jobs through the image pipeline.

Polls for jobs with status='pending' and runs each one through:

    begin (reserve credits, pending -> processing)
    prepare inputs (fetch, compress oversized images to a temporary artifact)
    prompt enhancement (Replicate, retried by ExternalCallClient)
    image synthesis (fal.ai, retried by ExternalCallClient)
    result upload (fetch the vendor URL, store permanently)
    complete (confirm credits, notify)

There is no whole-pipeline retry. Each stage retries on its own; once a stage
gives up the job is failed right away, which refunds its reservation.
Temporary artifacts are released on every path.

Each job uses its own units of work (transaction isolation), so one job's
failure never rolls back another job's writes in the same batch.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from genjobs.core.config import Settings
from genjobs.models.job import GenerationJob
from genjobs.services.exceptions import InsufficientFunds
from genjobs.services.external import ExternalCallClient, ImageSynthesizer, PromptEnhancer
from genjobs.services.images import ImagePipeline, ObjectStorage, detect_content_type
from genjobs.services.ledger import CreditLedger
from genjobs.services.lifecycle import JobStateMachine
from genjobs.services.notifications import Notifier
from genjobs.uow import create_uow_factory

logger = structlog.get_logger(__name__)


@dataclass
class GenerationServices:
    """Collaborators a job needs, built once per worker."""

    state_machine: JobStateMachine
    pipeline: ImagePipeline
    enhancer: PromptEnhancer
    synthesizer: ImageSynthesizer
    settings: Settings
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_settings(cls, session_factory: Callable, settings: Settings) -> "GenerationServices":
        uow_factory = create_uow_factory(session_factory)
        notifier = Notifier(
            uow_factory,
            push_url=settings.expo_push_url,
            title=settings.notification_title,
            body=settings.notification_body,
        )
        state_machine = JobStateMachine(
            uow_factory,
            CreditLedger(max_cas_attempts=settings.ledger_cas_max_attempts),
            settings,
            notifier=notifier,
        )
        pipeline = ImagePipeline(
            ObjectStorage.from_settings(settings),
            fetch_timeout=settings.image_fetch_timeout_seconds,
            min_dimension=settings.image_min_dimension,
        )
        return cls(
            state_machine=state_machine,
            pipeline=pipeline,
            enhancer=PromptEnhancer(settings.replicate_api_token, model=settings.prompt_model),
            synthesizer=ImageSynthesizer(
                settings.fal_api_key,
                endpoint=settings.synthesis_endpoint,
                timeout=settings.synthesis_timeout_seconds,
            ),
            settings=settings,
        )

    def call_client(self, timeout: Optional[float] = None) -> ExternalCallClient:
        """Fresh retrying client; one per stage so attempt counts stay per job."""
        return ExternalCallClient(
            max_attempts=self.settings.external_max_attempts,
            base_delay=self.settings.external_base_delay_seconds,
            max_delay=self.settings.external_max_delay_seconds,
            timeout=timeout,
            sleep=self.sleep,
        )


async def process_job(job: GenerationJob, services: GenerationServices) -> GenerationJob:
    """Run one job from pending to completed or refunded.

    Args:
        job: Pending job (may be detached from any session)
        services: Worker collaborators

    Returns:
        The job as stored at the end of processing

    Raises:
        InsufficientFunds: If the user cannot afford the job; it has been
            rejected and no external call was made
    """
    start_time = time.monotonic()
    state_machine = services.state_machine
    pipeline = services.pipeline
    settings = services.settings

    job = await state_machine.begin(job)
    log = logger.bind(job_id=str(job.id), quality_tier=job.quality_tier.value)
    log.info("job.processing.started", input_images=len(job.input_image_refs))

    def alive(call):
        """Wrap one attempt so it refreshes the job's heartbeat first."""

        async def _attempt():
            await state_machine.heartbeat(job)
            return await call()

        return _attempt

    temp_uris: list[str] = []
    try:
        # Stage 1: inputs under the size limit of the downstream services
        transfer = services.call_client()
        input_urls = []
        for uri in job.input_image_refs:
            prepared, temp_uri = await transfer.invoke(
                alive(lambda uri=uri: pipeline.prepare_input(uri, settings.image_max_bytes)),
                operation="image.prepare_input",
            )
            if temp_uri is not None:
                temp_uris.append(temp_uri)
            input_urls.append(prepared)

        # Stage 2: prompt enhancement
        prompt_calls = services.call_client(timeout=settings.prompt_timeout_seconds)
        instruction = settings.prompt_enhancement_template.format(prompt=job.original_prompt)
        enhanced_prompt = await prompt_calls.invoke(
            alive(lambda: services.enhancer.enhance(instruction, input_urls)),
            operation="prompt.enhance",
        )
        log.info("job.prompt.enhanced", prompt_length=len(enhanced_prompt))

        # Stage 3: synthesis (the HTTP client enforces its own timeout)
        synthesis_calls = services.call_client()
        try:
            synthesized_url = await synthesis_calls.invoke(
                alive(
                    lambda: services.synthesizer.synthesize(
                        enhanced_prompt,
                        input_urls,
                        aspect_ratio=job.aspect_ratio,
                        quality_tier=job.quality_tier,
                    )
                ),
                operation="image.synthesize",
            )
        finally:
            await state_machine.record_progress(
                job,
                enhanced_prompt=enhanced_prompt,
                synthesis_attempts=synthesis_calls.last_attempts,
            )

        # Stage 4: keep a durable copy of the result
        result_bytes = await transfer.invoke(
            alive(lambda: pipeline.fetch(synthesized_url)),
            operation="image.fetch_result",
        )
        result_ref = await pipeline.store(result_bytes, detect_content_type(result_bytes))

    except Exception as e:
        failed = await state_machine.fail(job, str(e) or type(e).__name__)
        log.error(
            "job.processing.failed",
            error_type=type(e).__name__,
            error_message=str(e),
            final_status=failed.status.value,
        )
        return failed

    finally:
        if temp_uris:
            await pipeline.release(temp_uris)

    processing_time_ms = int((time.monotonic() - start_time) * 1000)
    completed = await state_machine.complete(
        job,
        result_ref,
        enhanced_prompt=enhanced_prompt,
        processing_time_ms=processing_time_ms,
    )
    log.info(
        "job.processing.succeeded",
        result_image_ref=result_ref,
        duration_ms=processing_time_ms,
    )
    return completed


async def process_batch(session_factory: Callable, services: GenerationServices) -> int:
    """Lock a batch of pending jobs and process them concurrently.

    Uses a temporary session to lock jobs via FOR UPDATE SKIP LOCKED, then
    each job runs with its own units of work.

    Returns:
        Number of jobs picked up
    """
    uow_factory = create_uow_factory(session_factory)
    async with await uow_factory() as uow:
        jobs = await uow.jobs.get_pending_for_processing(limit=services.settings.worker_batch_size)

    if not jobs:
        return 0

    results = await asyncio.gather(
        *(process_job(job, services) for job in jobs),
        return_exceptions=True,
    )

    for job, result in zip(jobs, results):
        if isinstance(result, InsufficientFunds):
            logger.info(
                "job.processing.rejected",
                job_id=str(job.id),
                balance=result.balance,
                required=result.required,
            )
        elif isinstance(result, Exception):
            logger.error(
                "job.processing.error",
                job_id=str(job.id),
                error=str(result),
                error_type=type(result).__name__,
            )

    return len(jobs)


async def run_generation_worker(
    session_factory: Callable,
    settings: Settings,
    services: Optional[GenerationServices] = None,
) -> None:
    """Main worker loop.

    Runs the stale-job recovery sweep once, then polls at
    POLL_INTERVAL_SECONDS until cancelled.

    Args:
        session_factory: Factory function that creates database sessions
        settings: Application settings (poll interval, batch size, API keys)
        services: Prebuilt collaborators (built from settings when omitted)
    """
    if services is None:
        services = GenerationServices.from_settings(session_factory, settings)

    # Startup recovery: jobs orphaned by a previous crash
    await services.state_machine.recover_stale_jobs()

    logger.info(
        "worker.started",
        poll_interval=settings.poll_interval_seconds,
        batch_size=settings.worker_batch_size,
    )

    try:
        while True:
            try:
                await process_batch(session_factory, services)
                await asyncio.sleep(settings.poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                # Back off before polling again
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped")
        raise
