"""Video proxy: streams generated videos past the CDN's cross-origin and referer checks."""

import httpx
from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from app.core.logging import get_logger
from app.dependencies import HttpClient
from app.platforms.config import DEFAULT_PLATFORM, PLATFORMS, USER_AGENT, get_platform

logger = get_logger(__name__)

router = APIRouter()

DEFAULT_CONTENT_TYPE = "video/mp4"


@router.get("/video-proxy")
async def video_proxy(
    http_client: HttpClient,
    url: str | None = Query(default=None, description="Upstream video URL"),
    platform: str | None = Query(default=None),
) -> StreamingResponse:
    """
    Stream an upstream video back verbatim.

    Content type and length are forwarded; an upstream error status is
    returned as-is.
    """
    if not url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing url parameter")
    if not url.startswith(("http://", "https://")):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid url parameter")

    platform_config = get_platform(platform) or PLATFORMS[DEFAULT_PLATFORM.value]
    logger.info("video_proxy_request", url=url[:100], platform=platform_config.key)

    upstream_request = http_client.build_request(
        "GET",
        url,
        headers={"User-Agent": USER_AGENT, "Referer": f"{platform_config.base_url}/"},
    )
    try:
        upstream = await http_client.send(upstream_request, stream=True)
    except httpx.HTTPError as e:
        logger.bind(error=str(e)).error("video_proxy_failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Video proxy failed",
        ) from e

    if upstream.status_code >= 400:
        await upstream.aclose()
        logger.warning("video_proxy_upstream_error", status_code=upstream.status_code)
        raise HTTPException(
            status_code=upstream.status_code,
            detail=f"Video fetch failed: {upstream.status_code}",
        )

    headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": "public, max-age=3600",
    }
    # Raw bytes are relayed, so length and encoding stay consistent with each other
    for name in ("Content-Length", "Content-Encoding"):
        value = upstream.headers.get(name)
        if value:
            headers[name] = value

    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=status.HTTP_200_OK,
        headers=headers,
        media_type=upstream.headers.get("content-type", DEFAULT_CONTENT_TYPE),
        background=BackgroundTask(upstream.aclose),
    )
