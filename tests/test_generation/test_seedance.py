"""
Tests for the direct-model (Seedance) generation flow.

The platform client is replaced by ``ScriptedClient``, which answers each
API path from a per-path queue and records every call.
"""

import json

import pytest

from app.config import PollingConfig, TasksConfig, VendorCodesConfig
from app.generation.base import GenerationRequest, ReferenceImage
from app.generation.registry import GenerationResult, JobStatus, TaskRegistry
from app.generation.seedance import (
    GENERATE_PATH,
    HISTORY_PATH,
    LOCAL_ITEM_PATH,
    SeedanceGenerator,
    aspect_ratio,
    build_generate_body,
    resolve_dimensions,
)
from app.platforms.auth import AuthContext
from app.platforms.config import JIMENG
from app.platforms.errors import (
    AuthenticationError,
    ContentFilteredError,
    GenerationFailedError,
    GenerationTimeoutError,
    ResultResolutionError,
    SecurityCheckError,
    TransportError,
)
from app.platforms.upload import MaterialReference

pytestmark = pytest.mark.asyncio

PREVIEW_URL = "https://x/video.mp4"


class ScriptedClient:
    """Answers platform calls from per-path queues; the last answer repeats."""

    def __init__(self, **scripts):
        self.scripts = {path: list(answers) for path, answers in scripts.items()}
        self.calls: list[tuple[str, str, dict]] = []
        self.refreshes = 0

    def _answer(self, path):
        answers = self.scripts[path]
        answer = answers.pop(0) if len(answers) > 1 else answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def request(self, method, path, session_id, platform, **kwargs):
        self.calls.append(("direct", path, kwargs))
        return self._answer(path)

    async def request_via_browser(self, method, path, session_id, platform, **kwargs):
        self.calls.append(("browser", path, kwargs))
        return self._answer(path)

    async def refresh_browser_session(self, session_id, platform, cookie_header=""):
        self.refreshes += 1

    def count(self, path: str) -> int:
        return sum(1 for _, called, _ in self.calls if called == path)


class FakeUploader:
    def __init__(self):
        self.uploaded: list[bytes] = []
        self.progress: list[str | None] = []
        self.job = None

    async def upload(self, data, session_id, platform, cookie_header=""):
        self.uploaded.append(data)
        return f"tos-cn-i/image-{len(self.uploaded)}"

    async def upload_all(self, images, session_id, platform, cookie_header="", on_progress=None):
        uris = []
        for index, data in enumerate(images, start=1):
            if on_progress is not None:
                on_progress(index, len(images))
                self.progress.append(self.job.progress if self.job else None)
            uris.append(await self.upload(data, session_id, platform, cookie_header))
        return uris


def submitted(history_id: str = "h1") -> dict:
    return {"aigc_data": {"history_record_id": history_id}}


def history(status: int, **fields) -> dict:
    return {"history_list": [{"status": status, **fields}]}


def succeeded(item: dict | None = None) -> dict:
    item = item if item is not None else {"video": {"play_url": PREVIEW_URL}}
    return history(50, item_list=[item])


def make_generator(client, clock, timeout_seconds: float = 2700, uploader=None):
    return SeedanceGenerator(
        client,
        uploader or FakeUploader(),
        polling=PollingConfig({}),
        codes=VendorCodesConfig({}),
        timeout_seconds=timeout_seconds,
        sleep=clock.sleep,
        clock=clock,
    )


def make_request(prompt: str = "a cat surfing", images=(), **kwargs) -> GenerationRequest:
    return GenerationRequest(
        prompt=prompt,
        platform=JIMENG,
        auth=AuthContext(session_id="tok"),
        images=list(images),
        **kwargs,
    )


async def run_job(generator, request):
    registry = TaskRegistry(TasksConfig({}))
    job = registry.create(JIMENG.key)
    return job, await generator.generate(job, request)


class TestPolling:
    """Tests for the submit and poll loop."""

    async def test_three_running_polls_then_success(self, fake_clock):
        """Warm-up, then one growing interval per running poll, then the preview URL."""
        client = ScriptedClient(
            **{
                GENERATE_PATH: [submitted()],
                HISTORY_PATH: [history(20), history(20), history(20), succeeded()],
            }
        )

        _, url = await run_job(make_generator(client, fake_clock), make_request())

        assert url == PREVIEW_URL
        assert fake_clock.sleeps == [5.0, 2.0, 4.0, 6.0]
        assert fake_clock.now == 17.0
        assert client.count(HISTORY_PATH) == 4

    async def test_running_interval_is_capped(self, fake_clock):
        client = ScriptedClient(
            **{GENERATE_PATH: [submitted()], HISTORY_PATH: [history(20)] * 7 + [succeeded()]}
        )

        await run_job(make_generator(client, fake_clock), make_request())

        assert fake_clock.sleeps == [5.0, 2.0, 4.0, 6.0, 8.0, 10.0, 10.0, 10.0]

    async def test_submit_goes_through_browser(self, fake_clock):
        client = ScriptedClient(**{GENERATE_PATH: [submitted()], HISTORY_PATH: [succeeded()]})

        await run_job(make_generator(client, fake_clock), make_request())

        channel, path, kwargs = client.calls[0]
        assert (channel, path) == ("browser", GENERATE_PATH)
        assert kwargs["params"] == {"da_version": "3.3.9"}
        assert kwargs["data"]["extend"]["root_model"] == "dreamina_seedance_40_pro"
        assert client.calls[1][0] == "direct"
        assert client.calls[1][2]["data"] == {"history_ids": ["h1"]}

    async def test_missing_record_backs_off(self, fake_clock):
        client = ScriptedClient(
            **{GENERATE_PATH: [submitted()], HISTORY_PATH: [{}, {"history_list": []}, succeeded()]}
        )

        await run_job(make_generator(client, fake_clock), make_request())

        assert fake_clock.sleeps == [5.0, 2.0, 4.0]

    async def test_record_keyed_by_history_id(self, fake_clock):
        keyed = {"h1": {"status": 50, "item_list": [{"video": {"play_url": PREVIEW_URL}}]}}
        client = ScriptedClient(**{GENERATE_PATH: [submitted()], HISTORY_PATH: [keyed]})

        _, url = await run_job(make_generator(client, fake_clock), make_request())

        assert url == PREVIEW_URL

    async def test_transport_errors_while_polling_are_tolerated(self, fake_clock):
        client = ScriptedClient(
            **{
                GENERATE_PATH: [submitted()],
                HISTORY_PATH: [TransportError("reset"), succeeded()],
            }
        )

        _, url = await run_job(make_generator(client, fake_clock), make_request())

        assert url == PREVIEW_URL
        assert fake_clock.sleeps == [5.0, 2.0]

    async def test_missing_history_id(self, fake_clock):
        client = ScriptedClient(**{GENERATE_PATH: [{"aigc_data": {}}]})

        with pytest.raises(ResultResolutionError):
            await run_job(make_generator(client, fake_clock), make_request())

    async def test_progress_is_reported(self, fake_clock):
        client = ScriptedClient(
            **{GENERATE_PATH: [submitted()], HISTORY_PATH: [history(20), succeeded()]}
        )
        generator = make_generator(client, fake_clock)
        seen: list[str] = []
        registry = TaskRegistry(TasksConfig({}))
        job = registry.create(JIMENG.key)
        original = job.set_progress

        def record(message: str) -> None:
            seen.append(message)
            original(message)

        job.set_progress = record  # type: ignore[method-assign]
        await generator.generate(job, make_request())

        assert seen[0] == "No reference images, using text-to-video mode..."
        assert "AI is generating the video, please wait..." in seen
        assert seen[-1] == "Fetching the HD video..."


class TestFailures:
    """Tests for terminal failure paths."""

    async def test_content_filtered(self, fake_clock):
        client = ScriptedClient(
            **{GENERATE_PATH: [submitted()], HISTORY_PATH: [history(30, fail_code="2038")]}
        )

        with pytest.raises(ContentFilteredError):
            await run_job(make_generator(client, fake_clock), make_request())

    async def test_generic_failure_reports_code(self, fake_clock):
        client = ScriptedClient(
            **{GENERATE_PATH: [submitted()], HISTORY_PATH: [history(30, fail_code=1180)]}
        )

        with pytest.raises(GenerationFailedError, match="1180") as exc_info:
            await run_job(make_generator(client, fake_clock), make_request())

        assert not isinstance(exc_info.value, ContentFilteredError)

    async def test_wall_clock_timeout(self, fake_clock):
        client = ScriptedClient(**{GENERATE_PATH: [submitted()], HISTORY_PATH: [history(20)]})

        with pytest.raises(GenerationTimeoutError) as exc_info:
            await run_job(make_generator(client, fake_clock, timeout_seconds=60), make_request())

        assert exc_info.value.elapsed_seconds >= 60
        assert "timed out" in str(exc_info.value)

    async def test_security_check_refreshes_once(self, fake_clock):
        client = ScriptedClient(
            **{
                GENERATE_PATH: [SecurityCheckError("check", code="4010"), submitted()],
                HISTORY_PATH: [succeeded()],
            }
        )

        _, url = await run_job(make_generator(client, fake_clock), make_request())

        assert url == PREVIEW_URL
        assert client.refreshes == 1
        assert client.count(GENERATE_PATH) == 2
        assert fake_clock.sleeps[0] == 1.2

    async def test_security_check_twice_propagates(self, fake_clock):
        client = ScriptedClient(**{GENERATE_PATH: [SecurityCheckError("check", code="4010")]})

        with pytest.raises(SecurityCheckError):
            await run_job(make_generator(client, fake_clock), make_request())

        assert client.refreshes == 1
        assert client.count(GENERATE_PATH) == 2

    async def test_html_challenge_fails_job_without_retries(self, fake_clock):
        """An HTML challenge ends the job naming the session cookie, with one call only."""
        client = ScriptedClient(**{GENERATE_PATH: [AuthenticationError(JIMENG)]})
        generator = make_generator(client, fake_clock)
        registry = TaskRegistry(TasksConfig({}))
        job = registry.create(JIMENG.key)

        async def work():
            return GenerationResult.single(await generator.generate(job, make_request()), "")

        registry.launch(job, work())
        await registry.wait_idle()

        assert job.status == JobStatus.ERROR
        assert "`sessionid`" in job.error
        assert client.count(GENERATE_PATH) == 1
        assert client.refreshes == 0


class TestUrlResolution:
    """Tests for HD upgrade with preview fallback."""

    async def test_hd_url_preferred(self, fake_clock):
        origin = {"origin": {"video_url": "https://hd/v.mp4"}}
        hd = {"item_list": [{"video": {"transcoded_video": origin}}]}
        client = ScriptedClient(
            **{
                GENERATE_PATH: [submitted()],
                HISTORY_PATH: [succeeded({"item_id": "i1", "video": {"play_url": PREVIEW_URL}})],
                LOCAL_ITEM_PATH: [hd],
            }
        )

        _, url = await run_job(make_generator(client, fake_clock), make_request())

        assert url == "https://hd/v.mp4"
        lookup = [c for c in client.calls if c[1] == LOCAL_ITEM_PATH][0]
        assert lookup[2]["data"]["item_id_list"] == ["i1"]

    async def test_hd_url_found_by_pattern(self, fake_clock):
        hd_url = "https://v9-dreamnia.jimeng.com/obj/video.mp4?sig=1"
        client = ScriptedClient(
            **{
                GENERATE_PATH: [submitted()],
                HISTORY_PATH: [succeeded({"item_id": "i1", "video": {"play_url": PREVIEW_URL}})],
                LOCAL_ITEM_PATH: [{"blob": f"see {hd_url} here"}],
            }
        )

        _, url = await run_job(make_generator(client, fake_clock), make_request())

        assert url == hd_url

    async def test_hd_failure_falls_back_to_preview(self, fake_clock):
        client = ScriptedClient(
            **{
                GENERATE_PATH: [submitted()],
                HISTORY_PATH: [succeeded({"item_id": "i1", "video": {"play_url": PREVIEW_URL}})],
                LOCAL_ITEM_PATH: [TransportError("reset")],
            }
        )

        _, url = await run_job(make_generator(client, fake_clock), make_request())

        assert url == PREVIEW_URL

    async def test_no_url_at_all(self, fake_clock):
        client = ScriptedClient(
            **{GENERATE_PATH: [submitted()], HISTORY_PATH: [succeeded({"video": {}})]}
        )

        with pytest.raises(ResultResolutionError):
            await run_job(make_generator(client, fake_clock), make_request())


class TestReferenceImages:
    async def test_images_are_uploaded_and_referenced(self, fake_clock):
        uploader = FakeUploader()
        client = ScriptedClient(**{GENERATE_PATH: [submitted()], HISTORY_PATH: [succeeded()]})
        images = [ReferenceImage(b"one"), ReferenceImage(b"two")]

        job = TaskRegistry(TasksConfig({})).create(JIMENG.key)
        uploader.job = job

        await make_generator(client, fake_clock, uploader=uploader).generate(
            job, make_request("@1 hugs @2", images, ratio="16:9")
        )

        assert uploader.uploaded == [b"one", b"two"]
        assert uploader.progress == ["Uploading image 1/2...", "Uploading image 2/2..."]
        body = client.calls[0][2]["data"]
        draft = json.loads(body["draft_content"])
        params = draft["component_list"][0]["abilities"]["gen_video"]["text_to_video_params"]
        video_input = params["video_gen_inputs"][0]
        assert video_input["video_mode"] == 2
        assert params["video_aspect_ratio"] == "16:9"
        materials = video_input["unified_edit_input"]["material_list"]
        assert [m["image_info"]["image_uri"] for m in materials] == [
            "tos-cn-i/image-1",
            "tos-cn-i/image-2",
        ]
        assert materials[0]["image_info"]["width"] == 1280


class TestGenerateBody:
    async def test_text_to_video_body(self):
        body = build_generate_body("  a fox  ", "seedance-2.0-fast", 960, 720, 5, [], now_ms=1)

        draft = json.loads(body["draft_content"])
        component = draft["component_list"][0]
        params = component["abilities"]["gen_video"]["text_to_video_params"]
        video_input = params["video_gen_inputs"][0]
        assert body["extend"]["root_model"] == "dreamina_seedance_40"
        commerce_info = body["extend"]["m_video_commerce_info"]
        assert commerce_info["benefit_type"] == "dreamina_seedance_20_fast"
        assert video_input["prompt"] == "a fox"
        assert video_input["video_mode"] == 1
        assert video_input["duration_ms"] == 5000
        assert "unified_edit_input" not in video_input
        assert component["metadata"]["created_time_in_ms"] == "1"
        assert draft["main_component_id"] == component["id"]

    async def test_image_body_without_prompt_uses_default(self):
        body = build_generate_body("", "seedance-2.0", 720, 720, 4, [MaterialReference("u")])

        draft = json.loads(body["draft_content"])
        params = draft["component_list"][0]["abilities"]["gen_video"]["text_to_video_params"]
        assert params["video_gen_inputs"][0]["prompt"]
        assert params["video_aspect_ratio"] == "1:1"

    async def test_dimensions(self):
        assert resolve_dimensions("9:16") == (720, 1280)
        assert resolve_dimensions("7:5") == (960, 720)
        assert resolve_dimensions(None) == (960, 720)
        assert aspect_ratio(1680, 720) == "7:3"
