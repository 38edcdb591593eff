"""
Browser session pool.

Some endpoints reject plain HTTP clients: the vendor's anti-bot SDK patches
``window.fetch`` in the page and signs requests there. For those calls we
keep one real Chromium context per (platform, credential), seeded with the
auth cookies and parked on the platform's generation page, and issue the
request with ``fetch()`` from inside that page.

Handles:
- Lazy creation and 10 minute idle eviction of sessions
- Per-session FIFO serialization of in-page evaluations
- Recovery from a crashed or disconnected browser (one relaunch per operation)
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from app.config import BrowserConfig, get_config
from app.core.logging import get_logger, mask_secret
from app.platforms.auth import build_browser_cookies
from app.platforms.config import USER_AGENT, PlatformConfig
from app.platforms.errors import BrowserFetchError
from app.platforms.responses import decode_response_body

logger = get_logger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
]

TARGET_CLOSED_PATTERNS = (
    "has been closed",
    "target closed",
    "browser has been closed",
    "context or browser has been closed",
)

# Resolves once the vendor SDK has wrapped window.fetch
SDK_READY_SCRIPT = """
() => Boolean(
    (window.bdms && window.bdms.init) ||
    window.byted_acrawler ||
    window.fetch.toString().indexOf('native code') === -1
)
"""

FETCH_SCRIPT = """
async ({ url, method, headers, body }) => {
    const resp = await fetch(url, {
        method,
        headers,
        body: body || undefined,
        credentials: 'include',
    });
    const text = await resp.text();
    return {
        ok: resp.ok,
        status: resp.status,
        contentType: resp.headers.get('content-type') || '',
        body: text,
    };
}
"""

BrowserLauncher = Callable[[], Awaitable[Browser]]


def is_target_closed_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(pattern in message for pattern in TARGET_CLOSED_PATTERNS)


def is_context_destroyed_error(error: BaseException) -> bool:
    """The page navigated away while an evaluation was running."""
    return "execution context was destroyed" in str(error).lower()


@dataclass(frozen=True)
class SessionKey:
    """Identity of a browser session: one simulated browser user."""

    platform_key: str
    session_id: str
    cookie_header: str = ""

    def __str__(self) -> str:
        return f"{self.platform_key}:{mask_secret(self.session_id)}"


@dataclass
class BrowserSession:
    """A live, authenticated page owned by the pool."""

    key: SessionKey
    platform: PlatformConfig
    context: BrowserContext
    page: Page
    last_used: float = field(default_factory=time.monotonic)
    idle_timer: asyncio.TimerHandle | None = None


class BrowserSessionPool:
    """Pool of authenticated browser pages sharing one Chromium process."""

    def __init__(
        self,
        config: BrowserConfig | None = None,
        launcher: BrowserLauncher | None = None,
        web_id: str | None = None,
    ) -> None:
        """
        Args:
            config: Browser settings (defaults to config.yml)
            launcher: Coroutine factory returning a connected browser;
                defaults to launching Playwright's Chromium
            web_id: Device id placed in the default cookie set
        """
        self.config = config or get_config().browser
        self.web_id = web_id
        self._launcher = launcher or self._launch_chromium
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._browser_lock = asyncio.Lock()
        self._sessions: dict[SessionKey, BrowserSession] = {}
        self._locks: dict[SessionKey, asyncio.Lock] = {}
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Browser lifecycle
    # ------------------------------------------------------------------

    async def _launch_chromium(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=LAUNCH_ARGS,
        )

    async def _ensure_browser(self) -> Browser:
        async with self._browser_lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            self._browser = None

            logger.info("browser_launching")
            browser = await self._launcher()
            browser.on("disconnected", self._on_disconnected)
            self._browser = browser
            logger.info("browser_launched")
            return browser

    def _on_disconnected(self, browser: Browser) -> None:
        if browser is not self._browser:
            return
        logger.warning("browser_disconnected, dropping cached sessions")
        self._browser = None
        self._reset_all_sessions()

    def _reset_all_sessions(self) -> None:
        for session in self._sessions.values():
            if session.idle_timer:
                session.idle_timer.cancel()
        self._sessions.clear()

    async def recreate_browser(self, reason: str) -> None:
        """Drop the browser handle and every cached session; the next call relaunches."""
        logger.warning("browser_recreating", reason=reason)
        old_browser = self._browser
        self._browser = None
        self._reset_all_sessions()
        if old_browser is not None:
            try:
                await old_browser.close()
            except Exception as e:
                logger.debug("browser_close_failed", error=str(e))

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get_session(
        self, key: SessionKey, platform: PlatformConfig, allow_recreate: bool = True
    ) -> BrowserSession:
        """
        Return the cached session for ``key`` or create it.

        A closed browser is relaunched once while creating the session, unless
        the caller already relaunched it and passes ``allow_recreate=False``.
        """
        existing = self._sessions.get(key)
        if existing is not None:
            if existing.page.is_closed():
                self._sessions.pop(key, None)
            else:
                self._touch(existing)
                return existing

        for attempt in range(2):
            try:
                return await self._create_session(key, platform)
            except Exception as e:
                if allow_recreate and attempt == 0 and is_target_closed_error(e):
                    await self.recreate_browser(f"get_session failed: {e}")
                    continue
                raise

        raise BrowserFetchError("Browser session initialisation failed")

    async def _create_session(self, key: SessionKey, platform: PlatformConfig) -> BrowserSession:
        browser = await self._ensure_browser()
        context = await browser.new_context(user_agent=USER_AGENT)
        try:
            await context.add_cookies(
                build_browser_cookies(key.session_id, platform, self.web_id, key.cookie_header)
            )
            await context.route("**/*", self._filter_route)

            page = await context.new_page()
            logger.bind(session=str(key)).info("browser_navigating", url=platform.generate_page_url)
            await page.goto(
                platform.generate_page_url,
                wait_until="domcontentloaded",
                timeout=self.config.navigation_timeout_ms,
            )
            await self._wait_for_sdk(page, key)
        except Exception:
            await self._close_context(context)
            raise

        session = BrowserSession(key=key, platform=platform, context=context, page=page)
        self._sessions[key] = session
        self._touch(session)
        logger.bind(session=str(key)).info("browser_session_created")
        return session

    async def _wait_for_sdk(self, page: Page, key: SessionKey) -> None:
        # The SDK sometimes initialises lazily; a timeout here is not fatal
        try:
            await page.wait_for_function(SDK_READY_SCRIPT, timeout=self.config.sdk_ready_timeout_ms)
            logger.bind(session=str(key)).debug("browser_sdk_ready")
        except PlaywrightTimeoutError:
            logger.bind(session=str(key)).warning("browser_sdk_wait_timeout, continuing")

    async def _filter_route(self, route: Route) -> None:
        if route.request.resource_type in self.config.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    def _touch(self, session: BrowserSession) -> None:
        session.last_used = time.monotonic()
        if session.idle_timer:
            session.idle_timer.cancel()
        loop = asyncio.get_running_loop()
        session.idle_timer = loop.call_later(
            self.config.idle_timeout_seconds, self._schedule_idle_close, session.key
        )

    def _schedule_idle_close(self, key: SessionKey) -> None:
        task = asyncio.ensure_future(self._close_if_idle(key))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_if_idle(self, key: SessionKey) -> None:
        async with self._lock_for(key):
            session = self._sessions.get(key)
            if session is None:
                return
            if time.monotonic() - session.last_used < self.config.idle_timeout_seconds:
                return
            logger.bind(session=str(key)).info("browser_session_idle")
            await self._close_session_unlocked(key)

    async def _close_context(self, context: BrowserContext) -> None:
        try:
            await context.close()
        except Exception as e:
            logger.debug("browser_context_close_failed", error=str(e))

    async def _close_session_unlocked(self, key: SessionKey) -> None:
        session = self._sessions.pop(key, None)
        if session is None:
            return
        if session.idle_timer:
            session.idle_timer.cancel()
        await self._close_context(session.context)
        logger.bind(session=str(key)).info("browser_session_closed")

    async def close_session(self, key: SessionKey) -> None:
        async with self._lock_for(key):
            await self._close_session_unlocked(key)

    async def refresh_session(self, key: SessionKey, platform: PlatformConfig) -> BrowserSession:
        """Force-close and recreate the session, e.g. after a security check response."""
        async with self._lock_for(key):
            logger.bind(session=str(key)).info("browser_session_refreshing")
            await self._close_session_unlocked(key)
            return await self.get_session(key, platform)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def fetch(
        self,
        key: SessionKey,
        platform: PlatformConfig,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> Any:
        """
        Issue ``fetch()`` from inside the authenticated page.

        Returns:
            Parsed JSON body; business status is left to the caller

        Raises:
            AuthenticationError: the page got an HTML challenge back
            MalformedResponseError: non-JSON body
            BrowserFetchError: the in-page fetch itself failed
        """
        async with self._lock_for(key):
            for attempt in range(2):
                session = await self.get_session(key, platform, allow_recreate=attempt == 0)
                logger.bind(session=str(key)).debug(
                    "browser_proxy_request", method=method, url=url[:80]
                )
                try:
                    raw = await session.page.evaluate(
                        FETCH_SCRIPT,
                        {"url": url, "method": method, "headers": headers or {}, "body": body},
                    )
                except Exception as e:
                    if "failed to fetch" in str(e).lower():
                        raise BrowserFetchError(
                            f"{platform.name} request failed, usually because the session expired "
                            f"or a security check was triggered. Log in again at "
                            f"{platform.base_url}, complete the verification and retry"
                        ) from e
                    if attempt == 0 and is_target_closed_error(e):
                        await self.recreate_browser(f"fetch failed: {e}")
                        continue
                    raise

                self._touch(session)
                return decode_response_body(
                    platform,
                    int(raw.get("status", 0)),
                    raw.get("contentType", ""),
                    raw.get("body", ""),
                )

        raise BrowserFetchError("Browser proxy request failed")

    async def close(self) -> None:
        """Close every session, the browser and Playwright."""
        for key in list(self._sessions):
            await self.close_session(key)

        for task in list(self._background):
            task.cancel()

        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug("browser_close_failed", error=str(e))
            self._browser = None
            logger.info("browser_closed")

        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
