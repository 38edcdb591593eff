"""
Job submission.

Validates a submission, normalizes its credential, registers a job and
hands it to the platform's generator as a background task.
"""

from collections.abc import Sequence

import httpx

from app.config import AppConfig, Settings, get_config, get_settings
from app.core.logging import get_logger, mask_secret
from app.generation.agent import AgentVideoGenerator
from app.generation.base import GenerationRequest, ReferenceImage, VideoGenerator
from app.generation.registry import GenerationResult, Job, TaskRegistry
from app.generation.seedance import SeedanceGenerator
from app.platforms.auth import fallback_credentials, resolve_auth_context
from app.platforms.browser import BrowserSessionPool
from app.platforms.client import PlatformClient
from app.platforms.config import PLATFORMS, PlatformKey, get_platform
from app.platforms.upload import ImageUploader

logger = get_logger(__name__)


class SubmissionError(Exception):
    """A submission was rejected before any job was created."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(detail)


def parse_duration(raw: str | int | None) -> int | None:
    """Positive whole seconds, or None to use the model default."""
    if raw is None or raw == "":
        return None
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


class GenerationService:
    """Entry point shared by the HTTP API and the CLI."""

    def __init__(
        self,
        registry: TaskRegistry,
        generators: dict[str, VideoGenerator],
        settings: Settings | None = None,
        config: AppConfig | None = None,
    ) -> None:
        self.registry = registry
        self.generators = generators
        self.settings = settings or get_settings()
        self.config = config or get_config()

    @classmethod
    def create(
        cls,
        registry: TaskRegistry,
        http_client: httpx.AsyncClient,
        browser_pool: BrowserSessionPool,
        settings: Settings | None = None,
        config: AppConfig | None = None,
    ) -> "GenerationService":
        """Wire the request client, uploader and both generators."""
        config = config or get_config()
        client = PlatformClient(
            http_client=http_client,
            browser_pool=browser_pool,
            codes=config.vendor_codes,
            web_id=browser_pool.web_id,
        )
        uploader = ImageUploader(client, http_client, codes=config.vendor_codes)
        shared = {"polling": config.polling, "codes": config.vendor_codes}
        generators: dict[str, VideoGenerator] = {
            PlatformKey.JIMENG.value: SeedanceGenerator(client, uploader, **shared),
            PlatformKey.XYQ.value: AgentVideoGenerator(client, **shared),
        }
        return cls(registry, generators, settings=settings, config=config)

    def prepare(
        self,
        *,
        prompt: str | None,
        platform: str | None = None,
        session_input: str | None = None,
        model: str | None = None,
        ratio: str | None = None,
        duration: str | int | None = None,
        images: Sequence[ReferenceImage] = (),
    ) -> GenerationRequest:
        """
        Validate a submission and normalize it into a request.

        Raises:
            SubmissionError: with the HTTP status the API should answer with
        """
        uploads = self.config.uploads
        if len(images) > uploads.max_files:
            raise SubmissionError(400, f"At most {uploads.max_files} reference images are allowed")
        for image in images:
            if len(image.data) > uploads.max_file_size_bytes:
                raise SubmissionError(
                    413, f"Image files must be smaller than {uploads.max_file_size_mb}MB"
                )

        platform_config = get_platform(platform)
        if platform_config is None:
            supported = " / ".join(PLATFORMS)
            raise SubmissionError(400, f"Unsupported platform, only {supported} are supported")

        auth = resolve_auth_context(
            platform_config,
            session_input,
            fallback_credentials(platform_config, self.settings),
        )
        if not auth.is_usable:
            raise SubmissionError(
                401, f"No {platform_config.name} session id configured, set one in settings"
            )

        if not (prompt or "").strip() and not images:
            raise SubmissionError(400, "Provide a prompt or at least one reference image")

        return GenerationRequest(
            prompt=prompt or "",
            platform=platform_config,
            auth=auth,
            model=model or None,
            ratio=ratio or None,
            duration=parse_duration(duration),
            images=list(images),
        )

    def submit(self, request: GenerationRequest) -> Job:
        """Register a job and start generating in the background."""
        job = self.registry.create(request.platform.key)
        logger.bind(task_id=job.id).info(
            "generation_submitted",
            platform=request.platform.key,
            model=request.model,
            ratio=request.ratio,
            images=len(request.images),
            session=mask_secret(request.auth.session_id),
        )
        self.registry.launch(job, self._run(job, request))
        return job

    async def _run(self, job: Job, request: GenerationRequest) -> GenerationResult:
        generator = self.generators[request.platform.key]
        url = await generator.generate(job, request)
        return GenerationResult.single(url, request.prompt)
