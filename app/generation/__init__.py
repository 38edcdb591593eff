"""Video generation jobs: orchestrators, task registry and submission."""

from app.generation.base import GenerationRequest, ReferenceImage, VideoGenerator
from app.generation.registry import GenerationResult, Job, JobStatus, TaskRegistry
from app.generation.service import GenerationService, SubmissionError

__all__ = [
    "GenerationRequest",
    "GenerationResult",
    "GenerationService",
    "Job",
    "JobStatus",
    "ReferenceImage",
    "SubmissionError",
    "TaskRegistry",
    "VideoGenerator",
]
