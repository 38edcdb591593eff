"""
Direct-model generation flow (Seedance models on jimeng).

uploading images -> submitting draft -> polling history -> resolving URL
"""

import json
import math
import random
import re
import time
import uuid
from typing import Any

from app.core.logging import get_logger
from app.generation.base import GenerationRequest, VideoGenerator
from app.generation.prompt import build_meta_list
from app.generation.registry import Job
from app.platforms.client import PlatformClient
from app.platforms.config import DEFAULT_ASSISTANT_ID, PlatformKey
from app.platforms.errors import (
    ContentFilteredError,
    GenerationFailedError,
    PlatformError,
    ResultResolutionError,
    SecurityCheckError,
    TransportError,
)
from app.platforms.extract import first_present, first_string, get_path
from app.platforms.upload import ImageUploader, MaterialReference

logger = get_logger(__name__)

DEFAULT_MODEL = "seedance-2.0"

MODEL_MAP = {
    "seedance-2.0": "dreamina_seedance_40_pro",
    "seedance-2.0-fast": "dreamina_seedance_40",
}

BENEFIT_TYPE_MAP = {
    "seedance-2.0": "dreamina_video_seedance_20_pro",
    "seedance-2.0-fast": "dreamina_seedance_20_fast",
}

DRAFT_VERSION = "3.3.9"

DEFAULT_RATIO = "4:3"
DEFAULT_DURATION_SECONDS = 4
DEFAULT_IMAGE_PROMPT = "Generate a video from the reference images"

VIDEO_RESOLUTION: dict[str, tuple[int, int]] = {
    "1:1": (720, 720),
    "4:3": (960, 720),
    "3:4": (720, 960),
    "16:9": (1280, 720),
    "9:16": (720, 1280),
    "21:9": (1680, 720),
}

GENERATE_PATH = "/mweb/v1/aigc_draft/generate"
HISTORY_PATH = "/mweb/v1/get_history_by_ids"
LOCAL_ITEM_PATH = "/mweb/v1/get_local_item_list"

HD_URL_PATTERNS = (
    re.compile(r"https://v[0-9]+-dreamnia\.jimeng\.com/[^\"\s\\]+"),
    re.compile(r"https://v[0-9]+-[^\"\\]*\.jimeng\.com/[^\"\s\\]+"),
    re.compile(r"https://v[0-9]+-[^\"\\/]+/[^\"\s\\]+"),
)

PREVIEW_URL_PATHS = (
    "video.transcoded_video.origin.video_url",
    "video.play_url",
    "video.download_url",
    "video.url",
)

HD_URL_PATHS = (
    "video.transcoded_video.origin.video_url",
    "video.download_url",
    "video.play_url",
    "video.url",
)


def resolve_dimensions(ratio: str | None) -> tuple[int, int]:
    return VIDEO_RESOLUTION.get(ratio or "", VIDEO_RESOLUTION[DEFAULT_RATIO])


def aspect_ratio(width: int, height: int) -> str:
    divisor = math.gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def _uid() -> str:
    return str(uuid.uuid4())


def _material_entry(material: MaterialReference) -> dict[str, Any]:
    entry = material.to_material()
    entry["id"] = _uid()
    entry["image_info"]["id"] = _uid()
    entry["image_info"]["aigc_image"] = {"type": "", "id": _uid()}
    return entry


def build_generate_body(
    prompt: str,
    model_key: str,
    width: int,
    height: int,
    duration_seconds: int,
    materials: list[MaterialReference],
    now_ms: int | None = None,
) -> dict[str, Any]:
    """Request body for ``aigc_draft/generate``, as the web client builds it."""
    model = MODEL_MAP[model_key]
    benefit_type = BENEFIT_TYPE_MAP[model_key]
    normalized_prompt = prompt.strip()
    has_images = bool(materials)
    submit_id = _uid()
    component_id = _uid()
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms

    metrics_extra = json.dumps(
        {
            "isDefaultSeed": 1,
            "originSubmitId": submit_id,
            "isRegenerate": False,
            "enterFrom": "click",
            "position": "page_bottom_box",
            "functionMode": "omni_reference",
            "sceneOptions": json.dumps(
                [
                    {
                        "type": "video",
                        "scene": "BasicVideoGenerateButton",
                        "modelReqKey": model,
                        "videoDuration": duration_seconds,
                        "reportParams": {
                            "enterSource": "generate",
                            "vipSource": "generate",
                            "extraVipFunctionKey": model,
                            "useVipFunctionDetailsReporterHoc": True,
                        },
                        "materialTypes": [1],
                    }
                ]
            ),
        }
    )

    video_input: dict[str, Any] = {
        "type": "",
        "id": _uid(),
        "min_version": DRAFT_VERSION,
        "prompt": normalized_prompt or (DEFAULT_IMAGE_PROMPT if has_images else ""),
        "video_mode": 2 if has_images else 1,
        "fps": 24,
        "duration_ms": duration_seconds * 1000,
        "idip_meta_list": [],
    }
    if has_images:
        video_input["unified_edit_input"] = {
            "type": "",
            "id": _uid(),
            "material_list": [_material_entry(m) for m in materials],
            "meta_list": build_meta_list(prompt, len(materials)),
        }

    gen_video = {
        "type": "",
        "id": _uid(),
        "text_to_video_params": {
            "type": "",
            "id": _uid(),
            "video_gen_inputs": [video_input],
            "video_aspect_ratio": aspect_ratio(width, height),
            "seed": random.randint(0, 999_999_999),
            "model_req_key": model,
            "priority": 0,
        },
        "video_task_extra": metrics_extra,
    }

    commerce_info = {
        "benefit_type": benefit_type,
        "resource_id": "generate_video",
        "resource_id_type": "str",
        "resource_sub_type": "aigc",
    }

    draft_content = {
        "type": "draft",
        "id": _uid(),
        "min_version": DRAFT_VERSION,
        "min_features": ["AIGC_Video_UnifiedEdit"],
        "is_from_tsn": True,
        "version": DRAFT_VERSION,
        "main_component_id": component_id,
        "component_list": [
            {
                "type": "video_base_component",
                "id": component_id,
                "min_version": "1.0.0",
                "aigc_mode": "workbench",
                "metadata": {
                    "type": "",
                    "id": _uid(),
                    "created_platform": 3,
                    "created_platform_version": "",
                    "created_time_in_ms": str(now_ms),
                    "created_did": "",
                },
                "generate_type": "gen_video",
                "abilities": {"type": "", "id": _uid(), "gen_video": gen_video},
                "process_type": 1,
            }
        ],
    }

    return {
        "extend": {
            "root_model": model,
            "m_video_commerce_info": commerce_info,
            "m_video_commerce_info_list": [dict(commerce_info)],
        },
        "submit_id": submit_id,
        "metrics_extra": metrics_extra,
        "draft_content": json.dumps(draft_content),
        "http_common_info": {"aid": DEFAULT_ASSISTANT_ID},
    }


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SeedanceGenerator(VideoGenerator):
    """Generates through the draft/history API with optional reference images."""

    platform_key = PlatformKey.JIMENG.value

    def __init__(self, client: PlatformClient, uploader: ImageUploader, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self.uploader = uploader

    async def generate(self, job: Job, request: GenerationRequest) -> str:
        started = self._clock()
        log = logger.bind(task_id=job.id, platform=request.platform.key)

        model_key = request.model if request.model in MODEL_MAP else DEFAULT_MODEL
        width, height = resolve_dimensions(request.ratio)
        duration = request.duration or DEFAULT_DURATION_SECONDS
        log.info(
            "seedance_generation_started",
            model=model_key,
            resolution=f"{width}x{height}",
            duration_seconds=duration,
            images=len(request.images),
        )

        materials = await self._upload_images(job, request, width, height)
        body = build_generate_body(request.prompt, model_key, width, height, duration, materials)

        history_id = await self._submit(job, request, body)
        log.info("seedance_submitted", history_id=history_id)

        item_list = await self._poll(job, request, history_id, started)
        return await self._resolve_url(job, request, item_list)

    async def _upload_images(
        self, job: Job, request: GenerationRequest, width: int, height: int
    ) -> list[MaterialReference]:
        if not request.images:
            job.set_progress("No reference images, using text-to-video mode...")
            return []

        image_uris = await self.uploader.upload_all(
            [image.data for image in request.images],
            request.auth.session_id,
            request.platform,
            request.auth.cookie_header,
            on_progress=lambda index, total: job.set_progress(
                f"Uploading image {index}/{total}..."
            ),
        )
        logger.bind(task_id=job.id).debug("reference_images_uploaded", count=len(image_uris))
        return [
            MaterialReference(image_uri=image_uri, width=width, height=height)
            for image_uri in image_uris
        ]

    async def _post_generate(self, request: GenerationRequest, body: dict[str, Any]) -> Any:
        return await self.client.request_via_browser(
            "POST",
            GENERATE_PATH,
            request.auth.session_id,
            request.platform,
            params={"da_version": DRAFT_VERSION},
            data=body,
            cookie_header=request.auth.cookie_header,
        )

    async def _submit(self, job: Job, request: GenerationRequest, body: dict[str, Any]) -> str:
        job.set_progress("Submitting the video generation request...")
        try:
            data = await self._post_generate(request, body)
        except SecurityCheckError:
            logger.bind(task_id=job.id).warning("security_check_triggered, refreshing session")
            job.set_progress("Security check detected, refreshing the session and retrying...")
            await self.client.refresh_browser_session(
                request.auth.session_id, request.platform, request.auth.cookie_header
            )
            await self._sleep(self.polling.refresh_pause_seconds)
            data = await self._post_generate(request, body)

        history_id = first_string(get_path(data, "aigc_data.history_record_id"))
        if not history_id:
            raise ResultResolutionError(
                "Generation was submitted but no history record id came back"
            )
        return history_id

    async def _poll(
        self, job: Job, request: GenerationRequest, history_id: str, started: float
    ) -> list[dict[str, Any]]:
        log = logger.bind(task_id=job.id, history_id=history_id)
        job.set_progress("Submitted, waiting for the AI to generate the video...")
        await self._sleep(self.polling.warmup_seconds)

        interval = self.polling.interval_seconds
        poll_count = 0
        while True:
            self.check_deadline(started)
            poll_count += 1

            try:
                data = await self.client.request(
                    "POST",
                    HISTORY_PATH,
                    request.auth.session_id,
                    request.platform,
                    data={"history_ids": [history_id]},
                    cookie_header=request.auth.cookie_header,
                )
            except TransportError as e:
                log.warning("history_poll_failed", poll=poll_count, error=str(e))
                await self._sleep(interval * poll_count)
                continue

            history = first_present(data, ("history_list", 0), (history_id,))
            if not isinstance(history, dict):
                wait = min(interval * poll_count, self.polling.missing_record_max_seconds)
                log.debug("history_record_missing", poll=poll_count, wait_seconds=wait)
                await self._sleep(wait)
                continue

            status = _as_int(history.get("status"))
            log.debug("history_polled", poll=poll_count, status=status)

            if status == self.codes.history_failed_status:
                fail_code = _as_int(history.get("fail_code"))
                if fail_code == self.codes.content_filtered_fail_code:
                    raise ContentFilteredError("Content was filtered, revise the prompt and retry")
                raise GenerationFailedError(
                    f"Video generation failed, error code: {history.get('fail_code')}"
                )

            if status == self.codes.history_running_status:
                job.set_progress(self.waiting_message(started))
                await self._sleep(interval * min(poll_count, self.polling.max_interval_steps))
                continue

            item_list = history.get("item_list") or []
            return [item for item in item_list if isinstance(item, dict)]

    async def _resolve_url(
        self, job: Job, request: GenerationRequest, item_list: list[dict[str, Any]]
    ) -> str:
        job.set_progress("Fetching the HD video...")
        item = item_list[0] if item_list else {}
        item_id = first_string(
            item.get("item_id"),
            item.get("id"),
            item.get("local_item_id"),
            get_path(item, "common_attr.id"),
        )

        if item_id:
            try:
                hd_url = await self._fetch_hd_url(request, item_id)
            except PlatformError as e:
                logger.bind(task_id=job.id).warning(
                    "hd_url_lookup_failed, using preview", error=str(e)
                )
                hd_url = None
            if hd_url:
                return hd_url

        preview_url = first_present(item, *PREVIEW_URL_PATHS)
        if not preview_url:
            raise ResultResolutionError("Could not resolve the generated video URL")
        logger.bind(task_id=job.id).info("video_url_resolved", source="preview")
        return str(preview_url)

    async def _fetch_hd_url(self, request: GenerationRequest, item_id: str) -> str | None:
        data = await self.client.request(
            "POST",
            LOCAL_ITEM_PATH,
            request.auth.session_id,
            request.platform,
            data={
                "item_id_list": [item_id],
                "pack_item_opt": {"scene": 1, "need_data_integrity": True},
                "is_for_video_download": True,
            },
            cookie_header=request.auth.cookie_header,
        )
        items = first_present(data, "item_list", "local_item_list") or []
        hd_item = items[0] if isinstance(items, list) and items else {}
        hd_url = first_present(hd_item, *HD_URL_PATHS)
        if hd_url:
            return str(hd_url)

        serialized = json.dumps(data, ensure_ascii=False)
        for pattern in HD_URL_PATTERNS:
            match = pattern.search(serialized)
            if match:
                return match.group(0)
        return None
