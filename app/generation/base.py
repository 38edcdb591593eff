"""Abstract base class for platform video generators."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from app.config import PollingConfig, VendorCodesConfig, get_config, get_settings
from app.generation.registry import Job
from app.platforms.auth import AuthContext
from app.platforms.client import PlatformClient
from app.platforms.config import PlatformConfig
from app.platforms.errors import GenerationTimeoutError

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


@dataclass
class ReferenceImage:
    """An image attachment supplied with the request."""

    data: bytes
    filename: str = ""
    content_type: str = ""


@dataclass
class GenerationRequest:
    """Everything an orchestrator needs to run one job."""

    prompt: str
    platform: PlatformConfig
    auth: AuthContext
    model: str | None = None
    ratio: str | None = None
    duration: int | None = None
    images: list[ReferenceImage] = field(default_factory=list)

    @property
    def normalized_prompt(self) -> str:
        return (self.prompt or "").strip()


class VideoGenerator(ABC):
    """
    Drives one platform's generation flow for a single job.

    Subclasses report progress through ``job.set_progress`` and return the
    final playable URL, raising a ``PlatformError`` subclass on failure.
    Sleep and clock are injectable so the polling loops can be tested
    without waiting.
    """

    platform_key: str = "unknown"

    def __init__(
        self,
        client: PlatformClient,
        polling: PollingConfig | None = None,
        codes: VendorCodesConfig | None = None,
        timeout_seconds: float | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        config = get_config()
        self.client = client
        self.polling = polling or config.polling
        self.codes = codes or config.vendor_codes
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else get_settings().video_generation_timeout_seconds
        )
        self._sleep = sleep
        self._clock = clock

    @abstractmethod
    async def generate(self, job: Job, request: GenerationRequest) -> str:
        """
        Run the flow to completion.

        Args:
            job: Job to report progress on
            request: Normalized request

        Returns:
            Final playable video URL
        """
        pass

    def elapsed_since(self, started: float) -> float:
        return self._clock() - started

    def check_deadline(self, started: float) -> None:
        elapsed = self.elapsed_since(started)
        if elapsed >= self.timeout_seconds:
            raise GenerationTimeoutError(elapsed, self.timeout_seconds)

    def waiting_message(self, started: float) -> str:
        elapsed = int(self.elapsed_since(started))
        if elapsed < 120:
            return "AI is generating the video, please wait..."
        return f"Generating video, waited {elapsed // 60} min..."
