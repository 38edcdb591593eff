"""Pydantic schemas for the generation API."""

from pydantic import BaseModel, ConfigDict, Field

from app.generation.registry import Job, JobStatus


class SubmitResponse(BaseModel):
    """Returned as soon as a job is registered."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")


class VideoItem(BaseModel):
    url: str
    revised_prompt: str


class VideoResultResponse(BaseModel):
    """Final result, shaped like an image-generation API response."""

    created: int
    data: list[VideoItem]


class TaskStatusResponse(BaseModel):
    """
    Poll response. Exactly one of ``progress``, ``result`` or ``error`` is set,
    depending on ``status``.
    """

    status: JobStatus
    elapsed: int = Field(description="Seconds since submission")
    progress: str | None = None
    result: VideoResultResponse | None = None
    error: str | None = None

    @classmethod
    def from_job(cls, job: Job, now: float) -> "TaskStatusResponse":
        elapsed = job.elapsed_seconds(now)
        if job.status == JobStatus.DONE and job.result is not None:
            return cls(
                status=job.status,
                elapsed=elapsed,
                result=VideoResultResponse.model_validate(job.result.to_dict()),
            )
        if job.status == JobStatus.ERROR:
            return cls(status=job.status, elapsed=elapsed, error=job.error or "Unknown error")
        return cls(status=JobStatus.PROCESSING, elapsed=elapsed, progress=job.progress)
