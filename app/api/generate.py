"""Generation job endpoints: submit and poll."""

from typing import Annotated

from fastapi import APIRouter, File, Form, HTTPException, Request, UploadFile, status

from app.config import get_config, get_settings
from app.core.logging import get_logger
from app.core.rate_limit import limiter
from app.dependencies import Generation, Registry
from app.generation.base import ReferenceImage
from app.generation.service import SubmissionError
from app.schemas.generation import SubmitResponse, TaskStatusResponse

logger = get_logger(__name__)

router = APIRouter()


def _submit_rate_limit() -> str:
    return get_settings().submit_rate_limit


async def _read_files(files: list[UploadFile]) -> list[ReferenceImage]:
    uploads = get_config().uploads
    if len(files) > uploads.max_files:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {uploads.max_files} reference images are allowed",
        )

    images = []
    for upload in files:
        # One byte past the limit is enough to reject without buffering huge files
        data = await upload.read(uploads.max_file_size_bytes + 1)
        if len(data) > uploads.max_file_size_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Image files must be smaller than {uploads.max_file_size_mb}MB",
            )
        images.append(
            ReferenceImage(
                data=data,
                filename=upload.filename or "",
                content_type=upload.content_type or "",
            )
        )
    return images


@router.post("/generate-video", response_model=SubmitResponse)
@limiter.limit(_submit_rate_limit)
async def generate_video(
    request: Request,
    service: Generation,
    prompt: Annotated[str, Form()] = "",
    platform: Annotated[str | None, Form()] = None,
    model: Annotated[str | None, Form()] = None,
    ratio: Annotated[str | None, Form()] = None,
    duration: Annotated[str | None, Form()] = None,
    session_id: Annotated[str | None, Form(alias="sessionId")] = None,
    files: Annotated[list[UploadFile] | None, File()] = None,
) -> SubmitResponse:
    """
    Submit a generation job.

    Returns the task id immediately; poll ``/api/task/{task_id}`` for the outcome.
    """
    images = await _read_files(files or [])
    try:
        generation_request = service.prepare(
            prompt=prompt,
            platform=platform,
            session_input=session_id,
            model=model,
            ratio=ratio,
            duration=duration,
            images=images,
        )
    except SubmissionError as e:
        logger.bind(status_code=e.status_code).info("generation_rejected", reason=e.detail)
        raise HTTPException(status_code=e.status_code, detail=e.detail) from e

    job = service.submit(generation_request)
    return SubmitResponse(task_id=job.id)


@router.get(
    "/task/{task_id}",
    response_model=TaskStatusResponse,
    response_model_exclude_none=True,
)
async def get_task(task_id: str, registry: Registry) -> TaskStatusResponse:
    """
    Poll a job.

    Finished jobs stay readable for a few minutes after the first poll that
    sees them finished.
    """
    job = registry.observe(task_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Task not found or expired",
        )
    return TaskStatusResponse.from_job(job, registry.now())
