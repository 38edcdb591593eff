"""
Pytest configuration and fixtures for Clipgate tests.

Provides:
- A fake clock whose sleep advances time instantly
- Isolated settings, task registry and generation service per test
- Test client for API testing with dependencies overridden
"""

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.config import AppConfig, PollingConfig, Settings, TasksConfig, VendorCodesConfig
from app.dependencies import get_generation_service, get_http_client, get_task_registry
from app.generation.base import GenerationRequest, VideoGenerator
from app.generation.registry import Job, TaskRegistry
from app.generation.service import GenerationService
from app.main import app
from app.platforms.config import PlatformKey

VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42-video-bytes"


class FakeClock:
    """Monotonic clock driven by the code under test's own sleeps."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class StubGenerator(VideoGenerator):
    """Generator that returns a canned URL or raises a canned error."""

    def __init__(
        self,
        url: str = "https://cdn.example.com/video.mp4",
        error: Exception | None = None,
    ) -> None:
        super().__init__(
            client=None,  # type: ignore[arg-type]
            polling=PollingConfig({}),
            codes=VendorCodesConfig({}),
            timeout_seconds=60,
        )
        self.url = url
        self.error = error
        self.requests: list[GenerationRequest] = []

    async def generate(self, job: Job, request: GenerationRequest) -> str:
        self.requests.append(request)
        job.set_progress("Rendering...")
        if self.error is not None:
            raise self.error
        return self.url


def make_settings(**overrides) -> Settings:
    """Settings that ignore the developer's .env file."""
    return Settings(_env_file=None, **overrides)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings(default_session_id="", default_xyq_session_id="")


@pytest.fixture
def registry() -> TaskRegistry:
    return TaskRegistry(TasksConfig({}))


@pytest.fixture
def stub_generators() -> dict[str, StubGenerator]:
    return {
        PlatformKey.JIMENG.value: StubGenerator(),
        PlatformKey.XYQ.value: StubGenerator(url="https://cdn.example.com/agent.mp4"),
    }


@pytest.fixture
def generation_service(
    registry: TaskRegistry,
    stub_generators: dict[str, StubGenerator],
    test_settings: Settings,
) -> GenerationService:
    return GenerationService(
        registry,
        stub_generators,  # type: ignore[arg-type]
        settings=test_settings,
        config=AppConfig(),
    )


@pytest.fixture
def upstream_requests() -> list[httpx.Request]:
    """Requests seen by the fake upstream behind the video proxy."""
    return []


@pytest.fixture
def upstream_handler(upstream_requests: list[httpx.Request]):
    """Default upstream: serves a small MP4 payload for any URL."""

    def _handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        if request.url.path.endswith("/missing.mp4"):
            return httpx.Response(404, text="not found")
        return httpx.Response(
            200,
            stream=httpx.ByteStream(VIDEO_BYTES),
            headers={"content-type": "video/mp4", "content-length": str(len(VIDEO_BYTES))},
        )

    return _handler


@pytest_asyncio.fixture
async def client(
    registry: TaskRegistry,
    generation_service: GenerationService,
    upstream_handler,
) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with service dependencies overridden."""
    from app.core.rate_limit import limiter

    upstream_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream_handler))

    app.dependency_overrides[get_task_registry] = lambda: registry
    app.dependency_overrides[get_generation_service] = lambda: generation_service
    app.dependency_overrides[get_http_client] = lambda: upstream_client

    # Reset rate limiter storage before each test
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await registry.aclose()
    await upstream_client.aclose()
