"""Background workers for async processing tasks."""

from genjobs.workers.generation_worker import (
    GenerationServices,
    process_batch,
    process_job,
    run_generation_worker,
)

__all__ = [
    "GenerationServices",
    "process_batch",
    "process_job",
    "run_generation_worker",
]
