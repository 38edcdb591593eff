from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from app.api.router import api_router
from app.config import get_config, get_settings
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.core.scheduler import start_scheduler, stop_scheduler
from app.generation.registry import TaskRegistry
from app.generation.service import GenerationService
from app.platforms.browser import BrowserSessionPool
from app.platforms.client import generate_web_id

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    config = get_config()

    http_client = httpx.AsyncClient(follow_redirects=True)
    browser_pool = BrowserSessionPool(config.browser, web_id=generate_web_id())
    registry = TaskRegistry(config.tasks)

    app.state.http_client = http_client
    app.state.browser_pool = browser_pool
    app.state.registry = registry
    app.state.generation_service = GenerationService.create(
        registry, http_client, browser_pool, settings=settings, config=config
    )

    await start_scheduler(registry)
    logger.info(
        "app_started",
        default_jimeng_credential=bool(settings.default_session_id),
        default_xyq_credential=bool(settings.default_xyq_session_id),
    )
    yield
    # Shutdown
    await stop_scheduler()
    await registry.aclose()
    await browser_pool.close()
    await http_client.aclose()
    logger.info("app_stopped")


app = FastAPI(
    title="Clipgate",
    description="Video generation bridge for the jimeng and xyq platforms",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for load balancers."""
    return {"status": "healthy"}
