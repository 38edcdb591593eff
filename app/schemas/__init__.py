from app.schemas.generation import (
    SubmitResponse,
    TaskStatusResponse,
    VideoItem,
    VideoResultResponse,
)

__all__ = [
    "SubmitResponse",
    "TaskStatusResponse",
    "VideoItem",
    "VideoResultResponse",
]
