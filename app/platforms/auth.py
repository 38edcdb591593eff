"""
Credential normalization.

Users paste whatever they copied from their browser: a bare session token,
a single ``name=value`` pair, ``name:value``, or the full ``Cookie`` request
header. Everything here is pure and never raises; an empty token means "no
usable credential".
"""

import re
from dataclasses import dataclass
from typing import Any

from app.platforms.config import DEFAULT_PLATFORM, PLATFORMS, PlatformConfig, PlatformKey

_FRAGMENT_SPLIT = re.compile(r"[\n;]+")
_COLON_PAIR = re.compile(r"^[a-zA-Z0-9_]+:(.+)$")
_PAIR_START = re.compile(r"^[^=\s]+\s*=\s*[^=\s]")


@dataclass(frozen=True)
class AuthContext:
    """A normalized credential: the session token plus the cookies that parsed."""

    session_id: str
    cookie_header: str = ""

    @property
    def is_usable(self) -> bool:
        return bool(self.session_id)


def parse_cookie_string(raw: Any) -> dict[str, str]:
    """
    Parse a cookie header (or a newline separated cookie dump) into a dict.

    Each fragment is split on its first ``=``, or on its first ``:`` when it
    has no ``=``. Fragments with an empty name or value are skipped.
    """
    cookies: dict[str, str] = {}
    if not isinstance(raw, str):
        return cookies

    for raw_fragment in _FRAGMENT_SPLIT.split(raw):
        fragment = raw_fragment.strip()
        if not fragment:
            continue

        separator = "="
        index = fragment.find("=")
        if index <= 0:
            separator = ":"
            index = fragment.find(":")
        if index <= 0:
            continue

        key = fragment[:index].strip()
        value = fragment[index + len(separator) :].strip()
        if key and value:
            cookies[key] = value

    return cookies


def build_cookie_header(cookies: dict[str, str]) -> str:
    return "; ".join(f"{name}={value}" for name, value in cookies.items())


def normalize_session_input(platform_key: str, raw: Any) -> str:
    """
    Extract the session token for a platform from user input.

    Args:
        platform_key: Platform whose cookie priority list applies
        raw: Whatever the user pasted

    Returns:
        The session token, or "" when nothing usable was found
    """
    if not isinstance(raw, str):
        return ""

    trimmed = raw.strip()
    if not trimmed:
        return ""

    # Bare token
    if "=" not in trimmed:
        return trimmed

    # "sessionid_pippitcn_web:xxxx" copied from the devtools cookie panel
    colon_match = _COLON_PAIR.match(trimmed)
    single_fragment = ";" not in trimmed and "\n" not in trimmed
    if colon_match and single_fragment:
        return colon_match.group(1).strip()

    # Base64 padding such as "abc==" is a token, not a cookie pair
    if single_fragment and not _PAIR_START.match(trimmed):
        return trimmed

    cookies = parse_cookie_string(trimmed)
    platform = PLATFORMS.get(platform_key) or PLATFORMS[DEFAULT_PLATFORM.value]
    for cookie_name in platform.session_cookie_keys:
        token = cookies.get(cookie_name)
        if token:
            return token

    if len(cookies) == 1:
        return next(iter(cookies.values()))

    return ""


def resolve_auth_context(
    platform: PlatformConfig,
    raw: str | None,
    fallbacks: list[str] | None = None,
) -> AuthContext:
    """
    Normalize a per-request credential, falling back to configured defaults.

    The cookie header carries every pair that parsed from the request input,
    regardless of which one became the token. Fallback credentials never
    contribute a cookie header.
    """
    token = normalize_session_input(platform.key, raw)
    if token:
        # A token returned as-is was not a cookie blob
        cookies = {} if token == (raw or "").strip() else parse_cookie_string(raw)
        return AuthContext(session_id=token, cookie_header=build_cookie_header(cookies))

    for fallback in fallbacks or []:
        token = normalize_session_input(platform.key, fallback)
        if token:
            return AuthContext(session_id=token)

    return AuthContext(session_id="")


def fallback_credentials(platform: PlatformConfig, settings: Any) -> list[str]:
    """Configured fallback credentials for a platform, in priority order."""
    if platform.key == PlatformKey.XYQ.value:
        return [settings.default_xyq_session_id, settings.default_session_id]
    return [settings.default_session_id]


def default_cookie_pairs(
    session_id: str, platform: PlatformConfig, web_id: str | None = None
) -> list[tuple[str, str]]:
    """The cookie set the web client would send for a bare session token."""
    pairs: list[tuple[str, str]] = []
    if platform.web_id_cookie and web_id:
        pairs.append((platform.web_id_cookie, web_id))
    pairs.extend(platform.static_cookies)
    pairs.extend((alias, session_id) for alias in platform.session_cookie_aliases)
    return pairs


def build_request_cookie(
    session_id: str,
    platform: PlatformConfig,
    web_id: str | None = None,
    cookie_header: str = "",
) -> str:
    """
    Build the ``Cookie`` header for a direct API call.

    Caller supplied cookies win; defaults only fill names the caller did not
    send, so a partial paste still carries every field the API checks.
    """
    defaults = default_cookie_pairs(session_id, platform, web_id)
    cookies = parse_cookie_string(cookie_header) if cookie_header else {}
    if not cookies:
        return build_cookie_header(dict(defaults))

    for name, value in defaults:
        cookies.setdefault(name, value)
    return build_cookie_header(cookies)


def build_browser_cookies(
    session_id: str,
    platform: PlatformConfig,
    web_id: str | None = None,
    cookie_header: str = "",
) -> list[dict[str, str]]:
    """Cookies to inject into a Playwright browser context."""

    def _domain(name: str) -> str:
        if (
            platform.subdomain_cookie_marker
            and platform.subdomain_cookie_domain
            and platform.subdomain_cookie_marker in name
        ):
            return platform.subdomain_cookie_domain
        return platform.cookie_domain

    supplied = parse_cookie_string(cookie_header)
    if supplied:
        pairs = list(supplied.items())
    else:
        pairs = default_cookie_pairs(session_id, platform, web_id)
    return [
        {"name": name, "value": str(value), "domain": _domain(name), "path": "/"}
        for name, value in pairs
    ]
