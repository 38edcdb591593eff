"""
Reference image upload through the ImageX object store.

Four steps per image, never overlapping:

1. ``get_upload_token``: temporary store credentials (the ticket)
2. ``ApplyImageUpload``: SigV4-signed, yields the store host and object key
3. Raw bytes to ``https://{host}/upload/v1/{store_uri}`` with the per-object auth
4. ``CommitImageUpload``: SigV4-signed, must report the "uploaded" status

Tickets are single-use, so a failed commit is final; callers start over
from step 1.
"""

import json
import random
import string
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import VendorCodesConfig, get_config
from app.core.logging import get_logger
from app.core.retry import RetryConfig, retry_with_backoff
from app.platforms.client import PlatformClient, default_transport_retry
from app.platforms.config import USER_AGENT, PlatformConfig
from app.platforms.errors import TransportError, UploadError
from app.platforms.extract import get_path
from app.platforms.signing import amz_timestamp, aws_sigv4, crc32_hex, sha256_hex

logger = get_logger(__name__)

IMAGEX_ENDPOINT = "https://imagex.bytedanceapi.com/"
IMAGEX_API_VERSION = "2018-08-01"
DEFAULT_SERVICE_ID = "tb4s082cfz"
UPLOAD_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True)
class UploadTicket:
    """Temporary object store credentials for exactly one upload."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    service_id: str = DEFAULT_SERVICE_ID

    @classmethod
    def from_response(cls, data: Any) -> "UploadTicket":
        if not isinstance(data, dict):
            raise UploadError("Failed to obtain an upload token: empty response")
        access_key_id = data.get("access_key_id")
        secret_access_key = data.get("secret_access_key")
        session_token = data.get("session_token")
        if not access_key_id or not secret_access_key or not session_token:
            raise UploadError("Failed to obtain an upload token: credentials missing")
        return cls(
            access_key_id=str(access_key_id),
            secret_access_key=str(secret_access_key),
            session_token=str(session_token),
            service_id=str(data.get("service_id") or DEFAULT_SERVICE_ID),
        )


@dataclass(frozen=True)
class MaterialReference:
    """An uploaded image as referenced from a generation draft."""

    image_uri: str
    width: int = 0
    height: int = 0

    def to_material(self) -> dict[str, Any]:
        return {
            "type": "",
            "id": "",
            "material_type": "image",
            "image_info": {
                "type": "image",
                "id": "",
                "source_from": "upload",
                "platform_type": 1,
                "name": "",
                "image_uri": self.image_uri,
                "width": self.width,
                "height": self.height,
                "format": "",
                "uri": self.image_uri,
            },
        }


@dataclass(frozen=True)
class _UploadAddress:
    store_uri: str
    store_auth: str
    host: str
    session_key: str


def _random_suffix(length: int = 10) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


class ImageUploader:
    """Runs the four-step upload for one image at a time."""

    def __init__(
        self,
        client: PlatformClient,
        http_client: httpx.AsyncClient,
        codes: VendorCodesConfig | None = None,
        retry_config: RetryConfig | None = None,
        endpoint: str = IMAGEX_ENDPOINT,
    ) -> None:
        self.client = client
        self._http = http_client
        self.codes = codes or get_config().vendor_codes
        self.retry_config = retry_config or default_transport_retry()
        self.endpoint = endpoint

    async def upload(
        self,
        data: bytes,
        session_id: str,
        platform: PlatformConfig,
        cookie_header: str = "",
    ) -> str:
        """
        Upload one image and return its store URI.

        Raises:
            UploadError: any step failed or the commit reported a bad status
            TransportError: the network failed past the retry budget
        """
        logger.info("upload_started", platform=platform.key, size_bytes=len(data))

        ticket = await self.fetch_ticket(session_id, platform, cookie_header)
        logger.debug("upload_ticket_received", service_id=ticket.service_id)

        checksum = crc32_hex(data)
        address = await retry_with_backoff(
            lambda: self._apply(ticket, len(data), platform),
            config=self.retry_config,
            operation_name="imagex:apply",
        )
        logger.debug("upload_address_assigned", host=address.host)

        await retry_with_backoff(
            lambda: self._put_bytes(address, data, checksum, platform),
            config=self.retry_config,
            operation_name="imagex:upload",
        )

        image_uri = await self._commit(ticket, address, platform)
        logger.info("upload_completed", image_uri=image_uri)
        return image_uri

    async def upload_all(
        self,
        images: list[bytes],
        session_id: str,
        platform: PlatformConfig,
        cookie_header: str = "",
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[str]:
        """
        Upload images strictly one after another, in order.

        ``on_progress(index, total)`` is called with the 1-based index before
        each upload starts.
        """
        uris: list[str] = []
        total = len(images)
        for index, data in enumerate(images, start=1):
            if on_progress is not None:
                on_progress(index, total)
            uris.append(await self.upload(data, session_id, platform, cookie_header))
        return uris

    async def fetch_ticket(
        self, session_id: str, platform: PlatformConfig, cookie_header: str = ""
    ) -> UploadTicket:
        data = await self.client.request(
            "POST",
            "/mweb/v1/get_upload_token",
            session_id,
            platform,
            data={"scene": 2},
            cookie_header=cookie_header,
        )
        return UploadTicket.from_response(data)

    def _store_headers(self, platform: PlatformConfig) -> dict[str, str]:
        return {
            "accept": "*/*",
            "origin": platform.base_url,
            "referer": platform.generate_page_url,
            "user-agent": USER_AGENT,
        }

    async def _send(self, method: str, url: str, step: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, url, timeout=UPLOAD_TIMEOUT_SECONDS, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(f"Image upload {step} request failed: {e!r}") from e

    def _decode_store_response(self, response: httpx.Response, step: str) -> dict[str, Any]:
        if response.status_code >= 400:
            raise UploadError(f"Image upload {step} failed: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise UploadError(f"Image upload {step} returned a non-JSON response") from e
        error = get_path(payload, "ResponseMetadata.Error")
        if error:
            detail = json.dumps(error, ensure_ascii=False)
            raise UploadError(f"Image upload {step} failed: {detail}")
        return payload

    async def _apply(
        self, ticket: UploadTicket, file_size: int, platform: PlatformConfig
    ) -> _UploadAddress:
        url = str(
            httpx.URL(self.endpoint).copy_merge_params(
                {
                    "Action": "ApplyImageUpload",
                    "Version": IMAGEX_API_VERSION,
                    "ServiceId": ticket.service_id,
                    "FileSize": str(file_size),
                    "s": _random_suffix(),
                }
            )
        )
        timestamp = amz_timestamp()
        signed = {"x-amz-date": timestamp, "x-amz-security-token": ticket.session_token}
        authorization = aws_sigv4(
            "GET",
            url,
            signed,
            ticket.access_key_id,
            ticket.secret_access_key,
            ticket.session_token,
        )

        response = await self._send(
            "GET",
            url,
            "apply",
            headers={**self._store_headers(platform), **signed, "authorization": authorization},
        )
        payload = self._decode_store_response(response, "apply")

        upload_address = get_path(payload, "Result.UploadAddress") or {}
        store_infos = upload_address.get("StoreInfos") or []
        hosts = upload_address.get("UploadHosts") or []
        if not store_infos or not hosts:
            raise UploadError("Image upload apply returned no upload address")

        store_info = store_infos[0]
        return _UploadAddress(
            store_uri=str(store_info.get("StoreUri", "")),
            store_auth=str(store_info.get("Auth", "")),
            host=str(hosts[0]),
            session_key=str(upload_address.get("SessionKey", "")),
        )

    async def _put_bytes(
        self, address: _UploadAddress, data: bytes, checksum: str, platform: PlatformConfig
    ) -> None:
        response = await self._send(
            "POST",
            f"https://{address.host}/upload/v1/{address.store_uri}",
            "transfer",
            headers={
                **self._store_headers(platform),
                "Authorization": address.store_auth,
                "Content-CRC32": checksum,
                "Content-Disposition": 'attachment; filename="undefined"',
                "Content-Type": "application/octet-stream",
            },
            content=data,
        )
        if response.status_code >= 400:
            raise UploadError(f"Image upload transfer failed: HTTP {response.status_code}")

    async def _commit(
        self, ticket: UploadTicket, address: _UploadAddress, platform: PlatformConfig
    ) -> str:
        url = str(
            httpx.URL(self.endpoint).copy_merge_params(
                {
                    "Action": "CommitImageUpload",
                    "Version": IMAGEX_API_VERSION,
                    "ServiceId": ticket.service_id,
                }
            )
        )
        body = json.dumps({"SessionKey": address.session_key, "SuccessActionStatus": "200"})
        timestamp = amz_timestamp()
        signed = {
            "x-amz-date": timestamp,
            "x-amz-security-token": ticket.session_token,
            "x-amz-content-sha256": sha256_hex(body),
        }
        authorization = aws_sigv4(
            "POST",
            url,
            signed,
            ticket.access_key_id,
            ticket.secret_access_key,
            ticket.session_token,
            payload=body,
        )

        response = await self._send(
            "POST",
            url,
            "commit",
            headers={
                **self._store_headers(platform),
                **signed,
                "authorization": authorization,
                "content-type": "application/json",
            },
            content=body.encode("utf-8"),
        )
        payload = self._decode_store_response(response, "commit")

        results = get_path(payload, "Result.Results") or []
        if not results:
            raise UploadError("Image upload commit response has no results")
        status = results[0].get("UriStatus")
        if status != self.codes.upload_success_status:
            raise UploadError(f"Image upload commit reported UriStatus={status}")

        image_uri = get_path(payload, ("Result", "PluginResult", 0, "ImageUri"))
        image_uri = image_uri or results[0].get("Uri")
        if not image_uri:
            raise UploadError("Image upload commit response has no image URI")
        return str(image_uri)
