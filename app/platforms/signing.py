"""Request signing for the platform API and the ImageX object store.

Two schemes:

- ``short_sign``: the web client's MD5 signature sent as ``Sign`` together
  with ``Device-Time``.
- ``aws_sigv4``: AWS4-HMAC-SHA256 as verified by the ImageX store. Only the
  ``x-amz-*`` headers are signed (no ``host``), which is why botocore's
  signer cannot be used here.
"""

import hashlib
import hmac
import time
import urllib.parse
import zlib
from datetime import UTC, datetime

from app.platforms.config import PLATFORM_CODE, PlatformConfig

IMAGEX_REGION = "cn-north-1"
IMAGEX_SERVICE = "imagex"
SIGV4_ALGORITHM = "AWS4-HMAC-SHA256"
EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


def short_sign(path: str, app_version: str, clock_seconds: int) -> str:
    """Signature over the last 7 characters of the path, app version and time."""
    normalized_path = path or "/"
    template = f"9e2c|{normalized_path[-7:]}|{PLATFORM_CODE}|{app_version}|{clock_seconds}||11ac"
    return hashlib.md5(template.encode("utf-8")).hexdigest()


def sign_request(
    path: str, platform: PlatformConfig, clock_seconds: int | None = None
) -> tuple[int, str]:
    """Return ``(device_time, sign)`` for a platform API path."""
    device_time = int(time.time()) if clock_seconds is None else clock_seconds
    return device_time, short_sign(path, platform.app_version, device_time)


def amz_timestamp(now: datetime | None = None) -> str:
    """ISO8601 basic format used by ``x-amz-date``."""
    now = now or datetime.now(UTC)
    return now.strftime("%Y%m%dT%H%M%SZ")


def crc32_hex(data: bytes) -> str:
    return format(zlib.crc32(data) & 0xFFFFFFFF, "08x")


def sha256_hex(payload: str | bytes) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _canonical_query(query: str) -> str:
    pairs = urllib.parse.parse_qsl(query, keep_blank_values=True)
    pairs.sort()
    return "&".join(
        f"{urllib.parse.quote(k, safe='-_.~')}={urllib.parse.quote(v, safe='-_.~')}"
        for k, v in pairs
    )


def aws_sigv4(
    method: str,
    url: str,
    signed_headers: dict[str, str],
    access_key: str,
    secret_key: str,
    session_token: str | None = None,
    payload: str = "",
    region: str = IMAGEX_REGION,
    service: str = IMAGEX_SERVICE,
) -> str:
    """
    Build the ``Authorization`` header value for an ImageX call.

    Args:
        method: HTTP method
        url: Full request URL including the query string
        signed_headers: Must contain ``x-amz-date``; other entries are ignored
        access_key: Temporary access key id from the upload ticket
        secret_key: Temporary secret from the upload ticket
        session_token: Temporary session token, signed when present
        payload: Request body; only hashed for POST requests

    Returns:
        ``AWS4-HMAC-SHA256 Credential=..., SignedHeaders=..., Signature=...``
    """
    method = method.upper()
    parsed = urllib.parse.urlsplit(url)
    path = parsed.path or "/"

    timestamp = signed_headers["x-amz-date"]
    date = timestamp[:8]

    headers_to_sign = {"x-amz-date": timestamp}
    if session_token:
        headers_to_sign["x-amz-security-token"] = session_token

    payload_hash = EMPTY_PAYLOAD_HASH
    if method == "POST" and payload:
        payload_hash = sha256_hex(payload)
        headers_to_sign["x-amz-content-sha256"] = payload_hash

    names = sorted(headers_to_sign)
    signed_header_list = ";".join(names)
    canonical_headers = "".join(f"{name}:{headers_to_sign[name].strip()}\n" for name in names)

    canonical_request = "\n".join(
        [
            method,
            path,
            _canonical_query(parsed.query),
            canonical_headers,
            signed_header_list,
            payload_hash,
        ]
    )

    credential_scope = f"{date}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join(
        [SIGV4_ALGORITHM, timestamp, credential_scope, sha256_hex(canonical_request)]
    )

    k_date = _hmac(f"AWS4{secret_key}".encode(), date)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    k_signing = _hmac(k_service, "aws4_request")
    signature = hmac.new(k_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    return (
        f"{SIGV4_ALGORITHM} Credential={access_key}/{credential_scope}, "
        f"SignedHeaders={signed_header_list}, Signature={signature}"
    )
