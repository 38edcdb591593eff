"""
Platform request client.

Every call to a platform API goes through ``PlatformClient``:

- ``request`` sends the call directly with httpx, retrying transport
  failures (timeouts, resets) up to three times with 1s/2s/3s pauses.
- ``request_via_browser`` sends it from inside an authenticated browser page
  for endpoints guarded by the vendor's anti-bot SDK.

Both return the response's ``data`` member after business status checks.
"""

import json
import random
from typing import Any

import httpx

from app.config import VendorCodesConfig, get_config
from app.core.logging import get_logger
from app.core.retry import RetryConfig, linear_backoff, retry_with_backoff
from app.platforms.auth import build_request_cookie
from app.platforms.browser import BrowserSessionPool, SessionKey, is_context_destroyed_error
from app.platforms.config import DEFAULT_ASSISTANT_ID, PLATFORM_CODE, USER_AGENT, PlatformConfig
from app.platforms.errors import PlatformError, TransportError
from app.platforms.responses import decode_response_body, unwrap_payload
from app.platforms.signing import sign_request

logger = get_logger(__name__)

REQUEST_TIMEOUT_SECONDS = 45.0

BROWSER_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-language": "zh-CN,zh;q=0.9",
    "Cache-control": "no-cache",
    "Pragma": "no-cache",
    "Priority": "u=1, i",
    "Sec-Ch-Ua": '"Google Chrome";v="132", "Chromium";v="132", "Not_A Brand";v="8"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
    "User-Agent": USER_AGENT,
}


def generate_web_id() -> str:
    """Random device id in the web client's format (19 digits)."""
    return str(random.randint(10**18, 10**19 - 1))


def default_transport_retry() -> RetryConfig:
    return RetryConfig(
        max_attempts=4,
        backoff=linear_backoff(1.0),
        retryable_exceptions=(TransportError,),
    )


class PlatformClient:
    """Signed API client for both platforms."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        browser_pool: BrowserSessionPool | None = None,
        codes: VendorCodesConfig | None = None,
        web_id: str | None = None,
        retry_config: RetryConfig | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self.browser_pool = browser_pool
        self.codes = codes or get_config().vendor_codes
        self.web_id = web_id or (browser_pool.web_id if browser_pool else None) or generate_web_id()
        self.retry_config = retry_config or default_transport_retry()
        self.timeout = timeout

    def default_params(self, path: str, platform: PlatformConfig) -> dict[str, str]:
        """Query parameters the web client adds to ``/mweb/`` calls."""
        if "/mweb/" not in path:
            return {}
        return {
            "aid": str(DEFAULT_ASSISTANT_ID),
            "device_platform": "web",
            "region": "cn",
            "webId": self.web_id,
            "da_version": "3.3.2",
            "web_component_open_flag": "1",
            "web_version": "7.5.0",
            "aigc_features": "app_lip_sync",
        }

    def build_url(
        self, path: str, platform: PlatformConfig, params: dict[str, Any] | None = None
    ) -> str:
        merged = {**self.default_params(path, platform)}
        for name, value in (params or {}).items():
            merged[name] = str(value)
        url = httpx.URL(f"{platform.base_url}{path}")
        if merged:
            url = url.copy_merge_params(merged)
        return str(url)

    def _signature_headers(self, path: str, platform: PlatformConfig) -> dict[str, str]:
        device_time, sign = sign_request(path, platform)
        headers = {
            "Appvr": platform.app_version,
            "Pf": PLATFORM_CODE,
            "Device-Time": str(device_time),
            "Sign": sign,
            "Sign-Ver": "1",
            "Appid": platform.app_id or str(DEFAULT_ASSISTANT_ID),
        }
        return headers

    async def request(
        self,
        method: str,
        path: str,
        session_id: str,
        platform: PlatformConfig,
        *,
        params: dict[str, Any] | None = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
        cookie_header: str = "",
    ) -> Any:
        """
        Send a signed API call directly.

        Args:
            method: HTTP method
            path: API path, e.g. ``/mweb/v1/get_history_by_ids``
            session_id: Normalized session token
            platform: Target platform
            params: Extra query parameters, override the defaults
            data: JSON body
            headers: Extra headers, override the defaults
            cookie_header: Caller supplied cookies, merged over the defaults

        Returns:
            The ``data`` member of a successful response (or the whole payload
            when the response carries no ``ret``)

        Raises:
            TransportError: network failure after all retries
            AuthenticationError: HTML challenge, never retried
            BusinessError: non-zero business status, never retried
        """
        url = self.build_url(path, platform, params)
        request_headers = {
            **BROWSER_HEADERS,
            "Origin": platform.base_url,
            "Referer": platform.generate_page_url,
            "Lan": "zh-Hans",
            "Loc": "cn",
            "App-Sdk-Version": "48.0.0",
            "Cookie": build_request_cookie(session_id, platform, self.web_id, cookie_header),
            **self._signature_headers(path, platform),
            **(headers or {}),
        }
        content: bytes | None = None
        if data is not None:
            request_headers.setdefault("Content-Type", "application/json")
            content = json.dumps(data, ensure_ascii=False).encode("utf-8")

        async def _send() -> Any:
            return await self._send_once(method, url, path, platform, request_headers, content)

        payload = await retry_with_backoff(
            _send,
            config=self.retry_config,
            operation_name=f"{platform.key}:{path}",
        )
        return unwrap_payload(platform, payload, self.codes)

    async def _send_once(
        self,
        method: str,
        url: str,
        path: str,
        platform: PlatformConfig,
        headers: dict[str, str],
        content: bytes | None,
    ) -> Any:
        logger.debug("platform_request", platform=platform.key, method=method, path=path)
        try:
            response = await self._http.request(
                method.upper(),
                url,
                headers=headers,
                content=content,
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            raise TransportError(f"{platform.name} request {path} failed: {e!r}") from e

        return decode_response_body(
            platform,
            response.status_code,
            response.headers.get("content-type"),
            response.text,
        )

    async def request_via_browser(
        self,
        method: str,
        path: str,
        session_id: str,
        platform: PlatformConfig,
        *,
        params: dict[str, Any] | None = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
        cookie_header: str = "",
    ) -> Any:
        """
        Send a signed API call from inside the session's browser page.

        The page navigating mid-evaluation destroys the JS context; the session
        is refreshed and the call repeated once in that case.
        """
        if self.browser_pool is None:
            raise PlatformError("Browser proxy requested but no browser pool is configured")

        url = self.build_url(path, platform, params)
        request_headers = {
            "Accept": "application/json, text/plain, */*",
            "Accept-language": "zh-CN,zh;q=0.9",
            **{k: v for k, v in self._signature_headers(path, platform).items() if k != "Appid"},
            **(headers or {}),
        }
        body: str | None = None
        if data is not None:
            request_headers["Content-Type"] = "application/json"
            body = json.dumps(data, ensure_ascii=False)

        key = SessionKey(platform.key, session_id, cookie_header)
        try:
            payload = await self.browser_pool.fetch(
                key, platform, url, method=method.upper(), headers=request_headers, body=body
            )
        except Exception as e:
            if not is_context_destroyed_error(e):
                raise
            logger.bind(session=str(key)).warning("browser_context_destroyed, refreshing session")
            await self.browser_pool.refresh_session(key, platform)
            payload = await self.browser_pool.fetch(
                key, platform, url, method=method.upper(), headers=request_headers, body=body
            )

        return unwrap_payload(platform, payload, self.codes)

    async def refresh_browser_session(
        self, session_id: str, platform: PlatformConfig, cookie_header: str = ""
    ) -> None:
        """Recreate the browser session behind ``request_via_browser`` calls."""
        if self.browser_pool is None:
            raise PlatformError("Browser proxy requested but no browser pool is configured")
        await self.browser_pool.refresh_session(
            SessionKey(platform.key, session_id, cookie_header), platform
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
