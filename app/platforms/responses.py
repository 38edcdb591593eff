"""Response classification shared by the direct client and the browser pool."""

import json
import re
from typing import Any

from app.config import VendorCodesConfig
from app.platforms.config import PlatformConfig
from app.platforms.errors import (
    AuthenticationError,
    BusinessError,
    InsufficientBalanceError,
    LoginRequiredError,
    MalformedResponseError,
    SecurityCheckError,
)

_WHITESPACE = re.compile(r"\s+")


def preview_body(text: str | None, max_length: int = 120) -> str:
    """Single-line, length-capped preview of a response body for error messages."""
    return _WHITESPACE.sub(" ", str(text or "")).strip()[:max_length]


def looks_like_html(content_type: str | None, text: str | None) -> bool:
    if "text/html" in (content_type or "").lower():
        return True
    head = str(text or "")[:200].lower()
    return "<!doctype html" in head or "<html" in head


def decode_response_body(
    platform: PlatformConfig,
    status_code: int,
    content_type: str | None,
    text: str,
) -> Any:
    """
    Parse a response body as JSON.

    Raises:
        AuthenticationError: body is an HTML page (login wall or anti-bot challenge)
        MalformedResponseError: any other non-JSON body
    """
    try:
        return json.loads(text)
    except ValueError:
        pass

    if looks_like_html(content_type, text):
        raise AuthenticationError(platform)
    raise MalformedResponseError(
        f"{platform.name} returned a non-JSON response (HTTP {status_code}): {preview_body(text)}"
    )


def business_status(payload: Any) -> str | None:
    """The numeric ``ret`` field as a string, or None when the payload has none."""
    if not isinstance(payload, dict) or "ret" not in payload:
        return None
    ret = payload["ret"]
    try:
        float(ret)
    except (TypeError, ValueError):
        return None
    return str(ret)


def raise_for_business_status(
    platform: PlatformConfig, payload: dict[str, Any], codes: VendorCodesConfig
) -> None:
    """Raise the classified error for a non-zero ``ret``. Never retried."""
    ret = business_status(payload)
    if ret is None or ret == codes.success_ret:
        return

    message = str(payload.get("errmsg") or ret)
    if ret == codes.login_required_ret and "login" in message.lower():
        raise LoginRequiredError(
            f"{platform.name} login check failed: log in at {platform.base_url} and complete "
            f"the verification, then paste the full Cookie header in settings (it should "
            f"contain at least sessionid/sid_tt/uid_tt)",
            code=ret,
        )
    if ret == codes.insufficient_balance_ret:
        raise InsufficientBalanceError(
            f"{platform.name} has insufficient credits, claim more on the {platform.name} site",
            code=ret,
        )
    if ret == codes.security_check_ret:
        raise SecurityCheckError(
            f"{platform.name} API error (ret={ret}): security check triggered. Confirm it on "
            f"the {platform.name} site, then update the `{platform.session_cookie_field}` "
            f"cookie and retry",
            code=ret,
        )
    raise BusinessError(f"{platform.name} API error (ret={ret}): {message}", code=ret)


def unwrap_payload(platform: PlatformConfig, payload: Any, codes: VendorCodesConfig) -> Any:
    """Return ``data`` for a successful business response, the payload itself without ``ret``."""
    if business_status(payload) is None:
        return payload
    raise_for_business_status(platform, payload, codes)
    return payload.get("data")
