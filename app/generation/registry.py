"""In-memory registry of generation jobs."""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.config import TasksConfig, get_config
from app.core.logging import get_logger

logger = get_logger(__name__)


class JobStatus(str, Enum):
    """Lifecycle of a generation job."""

    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class JobStateError(RuntimeError):
    """Raised when something tries to change a finished job."""


@dataclass
class VideoResult:
    url: str
    revised_prompt: str = ""


@dataclass
class GenerationResult:
    """Final payload of a successful job."""

    created: int
    data: list[VideoResult]

    @classmethod
    def single(cls, url: str, prompt: str, created: int | None = None) -> "GenerationResult":
        return cls(
            created=int(time.time()) if created is None else created,
            data=[VideoResult(url=url, revised_prompt=prompt)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "data": [
                {"url": item.url, "revised_prompt": item.revised_prompt} for item in self.data
            ],
        }


@dataclass
class Job:
    """
    One generation request from submission to terminal outcome.

    Only the owning orchestrator writes to a job. Once it is ``done`` or
    ``error`` every further mutation is refused.
    """

    id: str
    platform: str
    created_at: float
    status: JobStatus = JobStatus.PROCESSING
    progress: str = "Preparing..."
    result: GenerationResult | None = None
    error: str | None = None
    terminal_observed_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.DONE, JobStatus.ERROR)

    def set_progress(self, message: str) -> None:
        if self.is_terminal:
            return
        self.progress = message

    def complete(self, result: GenerationResult) -> None:
        if self.is_terminal:
            raise JobStateError(f"Job {self.id} is already {self.status.value}")
        self.result = result
        self.status = JobStatus.DONE

    def fail(self, message: str) -> None:
        if self.is_terminal:
            raise JobStateError(f"Job {self.id} is already {self.status.value}")
        self.error = message
        self.status = JobStatus.ERROR

    def elapsed_seconds(self, now: float) -> int:
        return max(0, int(now - self.created_at))


class TaskRegistry:
    """
    Owns every job and the background task running it.

    Finished jobs are evicted by ``sweep`` once older than ``max_age_seconds``,
    or ``terminal_retention_seconds`` after the first poll that saw them
    finished. Running jobs are never evicted; the generation timeout ends them.
    """

    def __init__(
        self,
        config: TasksConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or get_config().tasks
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._purge_handles: dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def now(self) -> float:
        return self._clock()

    def create(self, platform: str) -> Job:
        job = Job(id=f"task_{uuid.uuid4().hex[:16]}", platform=platform, created_at=self._clock())
        self._jobs[job.id] = job
        logger.bind(task_id=job.id).info("task_created", platform=platform)
        return job

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def observe(self, job_id: str) -> Job | None:
        """
        Look a job up for a status poll.

        The first poll that sees a finished job starts its retention window.
        """
        job = self._jobs.get(job_id)
        if job is None or not job.is_terminal or job.terminal_observed_at is not None:
            return job

        job.terminal_observed_at = self._clock()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync callers): the periodic sweep handles the purge
            return job
        self._purge_handles[job_id] = loop.call_later(
            self.config.terminal_retention_seconds, self.remove, job_id
        )
        return job

    def remove(self, job_id: str) -> None:
        handle = self._purge_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        if self._jobs.pop(job_id, None) is not None:
            logger.bind(task_id=job_id).debug("task_removed")

    def sweep(self, now: float | None = None) -> int:
        """Evict expired jobs. Returns how many were removed."""
        now = self._clock() if now is None else now
        expired = [
            job.id
            for job in self._jobs.values()
            if (job.is_terminal and now - job.created_at > self.config.max_age_seconds)
            or (
                job.terminal_observed_at is not None
                and now - job.terminal_observed_at >= self.config.terminal_retention_seconds
            )
        ]
        for job_id in expired:
            self.remove(job_id)
        if expired:
            logger.info("tasks_swept", removed=len(expired), remaining=len(self._jobs))
        return len(expired)

    def launch(self, job: Job, work: Awaitable[GenerationResult]) -> asyncio.Task[None]:
        """Run ``work`` in the background and record its outcome on ``job``."""
        task = asyncio.ensure_future(self._run(job, work))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: Job, work: Awaitable[GenerationResult]) -> None:
        log = logger.bind(task_id=job.id, platform=job.platform)
        try:
            result = await work
        except asyncio.CancelledError:
            job.fail("Generation was cancelled")
            raise
        except Exception as e:
            log.error("generation_failed", error=str(e), error_type=type(e).__name__)
            job.fail(str(e) or type(e).__name__)
            return

        job.complete(result)
        log.info(
            "generation_completed",
            elapsed_seconds=job.elapsed_seconds(self._clock()),
        )

    @property
    def running_count(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every launched job to finish. Used by the CLI and tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for handle in self._purge_handles.values():
            handle.cancel()
        self._purge_handles.clear()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
