"""
Agent generation flow (xyq).

The platform has no direct model endpoint: a video is requested by posting a
chat message to its video agent and waiting for the run to produce an
artifact, which is then resolved to an asset and finally to a download URL.
Every call goes through the browser session.
"""

import json
import time
import uuid
from dataclasses import dataclass
from typing import Any

from app.core.logging import get_logger
from app.generation.base import GenerationRequest, VideoGenerator
from app.generation.registry import Job
from app.platforms.config import PlatformConfig, PlatformKey
from app.platforms.errors import (
    AuthenticationError,
    GenerationFailedError,
    LoginRequiredError,
    PlatformError,
    ResultResolutionError,
)
from app.platforms.extract import find_value_by_keys, first_present, first_string, get_path

logger = get_logger(__name__)

USER_INFO_PATH = "/api/biz/v1/user/info"
WORKSPACE_PATH = "/api/web/v1/workspace/get_user_workspace"
SUBMIT_RUN_PATH = "/api/biz/v1/agent/submit_run"
GET_THREAD_PATH = "/api/biz/v1/agent/get_thread"
GET_ARTIFACT_PATH = "/api/biz/v1/agent/get_run_artifact"
ASSET_DETAIL_PATH = "/api/biz/v1/asset/detail"

AGENT_NAME = "pippit_video_agent_v2_cn"

ARTIFACT_ID_KEYS = ("artifact_id", "artifactId")
ASSET_ID_KEYS = ("pippit_asset_id", "PippitAssetID", "pippitAssetId", "pippitAssetID")
VIDEO_URL_FIELDS = ("download_url", "origin_url", "preview_url")


@dataclass(frozen=True)
class AgentIdentity:
    """The account identity every agent call must carry."""

    consumer_uid: str
    workspace_id: str
    app_id: str
    space_id: str = ""

    def to_user_info(self) -> dict[str, str]:
        info = {
            "consumer_uid": self.consumer_uid,
            "workspace_id": self.workspace_id,
            "app_id": self.app_id,
        }
        if self.space_id:
            info["space_id"] = self.space_id
        return info


def _identity_field(user_info: Any, workspace_info: Any, name: str) -> str:
    return first_string(
        get_path(user_info, name),
        get_path(user_info, ("user_info", name)),
        get_path(user_info, ("user", name)),
        get_path(workspace_info, name),
        get_path(workspace_info, ("data", name)),
        get_path(workspace_info, ("workspace", name)),
    )


def merge_identity(user_info: Any, workspace_info: Any, app_id: str) -> AgentIdentity | None:
    """
    Merge the user/info and workspace lookups, first non-empty value wins.

    Returns None when the consumer uid or workspace id cannot be found.
    """
    consumer_uid = first_string(
        get_path(user_info, "consumer_uid"),
        get_path(user_info, ("user_info", "consumer_uid")),
        get_path(user_info, ("user", "consumer_uid")),
        get_path(workspace_info, "consumer_uid"),
        get_path(workspace_info, "uid"),
    )
    workspace_id = _identity_field(user_info, workspace_info, "workspace_id")
    if not consumer_uid or not workspace_id:
        return None
    return AgentIdentity(
        consumer_uid=consumer_uid,
        workspace_id=workspace_id,
        app_id=app_id,
        space_id=_identity_field(user_info, workspace_info, "space_id"),
    )


def build_run_message(
    prompt: str, ratio: str | None, thread_id: str, run_id: str
) -> dict[str, Any]:
    content: list[dict[str, Any]] = [{"type": "text", "sub_type": "text", "data": prompt}]
    if ratio and ratio.strip():
        content.append(
            {
                "type": "data",
                "sub_type": "biz/image_settings",
                "data": json.dumps({"ratio": ratio.strip()}),
            }
        )
    return {
        "message_id": "",
        "role": "user",
        "thread_id": thread_id,
        "run_id": run_id,
        "created_at": int(time.time() * 1000),
        "content": content,
    }


def _select_run(thread_data: Any, run_id: str) -> dict[str, Any] | None:
    runs = first_present(thread_data, "thread.run_list", "run_list", "thread.runs", "runs") or []
    runs = [run for run in runs if isinstance(run, dict)] if isinstance(runs, list) else []
    for run in runs:
        if first_string(run.get("run_id"), run.get("id")) == run_id:
            return run
    if runs:
        return runs[0]
    run = get_path(thread_data, "run")
    return run if isinstance(run, dict) else None


def _run_state(run: dict[str, Any] | None, thread_data: Any) -> str:
    for candidate in (
        get_path(run, "state"),
        get_path(run, "status"),
        get_path(run, "run_state"),
        get_path(thread_data, "state"),
    ):
        if candidate is not None:
            return str(candidate)
    return ""


def _artifact_id(run: dict[str, Any] | None, thread_data: Any) -> str | None:
    entries = first_present(run, "entry_list", "entryList", "entries") or []
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, dict):
            continue
        if str(entry.get("type")) == "2" or entry.get("artifact_id") or entry.get("artifactId"):
            artifact_id = first_string(entry.get("artifact_id"), entry.get("artifactId"))
            if artifact_id:
                return artifact_id
            break
    return find_value_by_keys(thread_data, ARTIFACT_ID_KEYS)


class AgentVideoGenerator(VideoGenerator):
    """Generates by driving the platform's video agent through a chat run."""

    platform_key = PlatformKey.XYQ.value

    async def generate(self, job: Job, request: GenerationRequest) -> str:
        started = self._clock()
        log = logger.bind(task_id=job.id, platform=request.platform.key)

        prompt = request.normalized_prompt
        if not prompt:
            raise GenerationFailedError(
                f"{request.platform.name} only supports text prompts, please enter a prompt"
            )
        if request.images:
            log.info("reference_images_ignored", count=len(request.images))

        job.set_progress(f"Fetching {request.platform.name} account info...")
        identity = await self._resolve_identity(job, request)

        job.set_progress(f"Submitting the {request.platform.name} generation run...")
        thread_id, run_id = await self._submit_run(request, identity, prompt)
        log.info("agent_run_submitted", thread_id=thread_id, run_id=run_id)

        job.set_progress("Submitted, waiting for the AI to generate the video...")
        artifact_id = await self._poll_thread(job, request, thread_id, run_id, started)

        job.set_progress("Resolving the generation result...")
        asset_id = await self._resolve_asset_id(request, identity, artifact_id)

        job.set_progress("Fetching the video download URL...")
        url = await self._resolve_video_url(request, asset_id)
        log.info("video_url_resolved", source="asset_detail")
        return url

    async def _call(
        self, request: GenerationRequest, method: str, path: str, data: Any = None
    ) -> Any:
        return await self.client.request_via_browser(
            method,
            path,
            request.auth.session_id,
            request.platform,
            data=data,
            headers={"Referer": request.platform.generate_page_url},
            cookie_header=request.auth.cookie_header,
        )

    async def _lookup(
        self, job: Job, request: GenerationRequest, method: str, path: str, data: Any = None
    ) -> Any:
        """Best-effort identity lookup; only a rejected login is fatal."""
        try:
            return await self._call(request, method, path, data)
        except (LoginRequiredError, AuthenticationError):
            raise
        except PlatformError as e:
            logger.bind(task_id=job.id).warning("identity_lookup_failed", path=path, error=str(e))
            return None

    async def _resolve_identity(self, job: Job, request: GenerationRequest) -> AgentIdentity:
        platform: PlatformConfig = request.platform
        user_info = await self._lookup(job, request, "GET", USER_INFO_PATH)
        workspace_info = await self._lookup(job, request, "POST", WORKSPACE_PATH, {})

        identity = merge_identity(user_info, workspace_info, platform.app_id or "")
        if identity is None:
            raise ResultResolutionError(
                f"Could not read the {platform.name} account identity (consumer_uid/workspace_id). "
                f"Make sure you are logged in at {platform.base_url} and have completed the "
                f"verification, then paste the latest cookie into settings and retry"
            )
        return identity

    async def _submit_run(
        self, request: GenerationRequest, identity: AgentIdentity, prompt: str
    ) -> tuple[str, str]:
        thread_id = str(uuid.uuid4())
        run_id = str(uuid.uuid4())
        result = await self._call(
            request,
            "POST",
            SUBMIT_RUN_PATH,
            {
                "message": build_run_message(prompt, request.ratio, thread_id, run_id),
                "user_info": identity.to_user_info(),
                "agent_name": AGENT_NAME,
                "entrance_from": "web",
                "request_id": str(uuid.uuid4()),
            },
        )
        actual_thread_id = first_string(
            get_path(result, "run.thread_id"),
            get_path(result, "thread_id"),
            get_path(result, "thread.thread_id"),
            thread_id,
        )
        actual_run_id = first_string(
            get_path(result, "run.run_id"), get_path(result, "run_id"), run_id
        )
        return actual_thread_id, actual_run_id

    async def _poll_thread(
        self, job: Job, request: GenerationRequest, thread_id: str, run_id: str, started: float
    ) -> str:
        log = logger.bind(task_id=job.id, run_id=run_id)
        poll_count = 0
        while True:
            self.check_deadline(started)
            await self._sleep(self.polling.agent_interval_seconds)
            poll_count += 1

            thread_data = await self._call(
                request,
                "POST",
                GET_THREAD_PATH,
                {"thread_id": thread_id, "scopes": ["run_list.entry_list"], "run_id": run_id},
            )
            run = _select_run(thread_data, run_id)
            state = _run_state(run, thread_data)
            log.debug("agent_thread_polled", poll=poll_count, state=state)

            if state == self.codes.agent_completed_state:
                artifact_id = _artifact_id(run, thread_data)
                if not artifact_id:
                    raise ResultResolutionError(
                        f"{request.platform.name} finished the run but returned no artifact id"
                    )
                return artifact_id

            if state == self.codes.agent_failed_state:
                reason = first_string(
                    get_path(run, "fail_reason"),
                    get_path(run, "error_message"),
                    get_path(run, "errmsg"),
                    get_path(thread_data, "errmsg"),
                ) or "unknown error"
                raise GenerationFailedError(f"{request.platform.name} generation failed: {reason}")

            job.set_progress(self.waiting_message(started))

    async def _resolve_asset_id(
        self, request: GenerationRequest, identity: AgentIdentity, artifact_id: str
    ) -> str:
        artifact = await self._call(
            request,
            "POST",
            GET_ARTIFACT_PATH,
            {"artifact_id": artifact_id, "user_id": identity.consumer_uid},
        )
        asset_id = find_value_by_keys(artifact, ASSET_ID_KEYS)
        if not asset_id:
            raise ResultResolutionError("Could not find the PippitAssetID of the generated video")
        return asset_id

    async def _resolve_video_url(self, request: GenerationRequest, asset_id: str) -> str:
        detail = await self._call(
            request,
            "POST",
            ASSET_DETAIL_PATH,
            {"PippitAssetID": asset_id, "Base": {"Client": "web"}},
        )
        video = first_present(detail, "Video", "video")
        url = first_present(video, *VIDEO_URL_FIELDS) or first_present(detail, *VIDEO_URL_FIELDS)
        if not url:
            raise ResultResolutionError(f"Could not get the video URL from {request.platform.name}")
        return str(url)
