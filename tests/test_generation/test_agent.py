"""Tests for the agent (xyq) generation flow."""

import json

import pytest

from app.config import PollingConfig, TasksConfig, VendorCodesConfig
from app.generation.agent import (
    AGENT_NAME,
    ASSET_DETAIL_PATH,
    GET_ARTIFACT_PATH,
    GET_THREAD_PATH,
    SUBMIT_RUN_PATH,
    USER_INFO_PATH,
    WORKSPACE_PATH,
    AgentVideoGenerator,
    build_run_message,
    merge_identity,
)
from app.generation.base import GenerationRequest, ReferenceImage
from app.generation.registry import TaskRegistry
from app.platforms.auth import AuthContext
from app.platforms.config import XYQ
from app.platforms.errors import (
    BusinessError,
    GenerationFailedError,
    GenerationTimeoutError,
    LoginRequiredError,
    ResultResolutionError,
)

pytestmark = pytest.mark.asyncio

VIDEO_URL = "https://cdn.example.com/agent/video.mp4"


class ScriptedBrowserClient:
    """Answers browser-proxied calls from per-path queues; the last answer repeats."""

    def __init__(self, scripts: dict):
        self.scripts = {path: list(answers) for path, answers in scripts.items()}
        self.calls: list[tuple[str, str, dict]] = []

    async def request_via_browser(self, method, path, session_id, platform, **kwargs):
        self.calls.append((method, path, kwargs))
        answers = self.scripts[path]
        answer = answers.pop(0) if len(answers) > 1 else answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def bodies(self, path: str) -> list:
        return [kwargs.get("data") for _, called, kwargs in self.calls if called == path]


def running(run_id: str = "r1") -> dict:
    return {"thread": {"run_list": [{"run_id": run_id, "state": 1}]}}


def completed(run_id: str = "r1") -> dict:
    entries = [{"type": 1, "text": "thinking"}, {"type": 2, "artifact_id": "art-1"}]
    return {"thread": {"run_list": [{"run_id": run_id, "state": 3, "entry_list": entries}]}}


def default_scripts(**overrides) -> dict:
    scripts = {
        USER_INFO_PATH: [{"consumer_uid": "uid-1"}],
        WORKSPACE_PATH: [{"workspace": {"workspace_id": "ws-1", "space_id": "sp-1"}}],
        SUBMIT_RUN_PATH: [{"run": {"thread_id": "t1", "run_id": "r1"}}],
        GET_THREAD_PATH: [running(), completed()],
        GET_ARTIFACT_PATH: [{"artifact": {"content": json.dumps({"pippit_asset_id": "asset-9"})}}],
        ASSET_DETAIL_PATH: [{"Video": {"download_url": VIDEO_URL}}],
    }
    scripts.update(overrides)
    return scripts


def make_generator(client, clock, timeout_seconds: float = 2700) -> AgentVideoGenerator:
    return AgentVideoGenerator(
        client,
        polling=PollingConfig({}),
        codes=VendorCodesConfig({}),
        timeout_seconds=timeout_seconds,
        sleep=clock.sleep,
        clock=clock,
    )


def make_request(prompt: str = "a fox in the snow", **kwargs) -> GenerationRequest:
    return GenerationRequest(
        prompt=prompt,
        platform=XYQ,
        auth=AuthContext(session_id="tok", cookie_header="sessionid_pippitcn_web=tok"),
        **kwargs,
    )


async def generate(generator, request) -> str:
    job = TaskRegistry(TasksConfig({})).create(XYQ.key)
    return await generator.generate(job, request)


class TestAgentFlow:
    """Tests for the identity, run, poll and resolve sequence."""

    async def test_happy_path(self, fake_clock):
        client = ScriptedBrowserClient(default_scripts())

        url = await generate(make_generator(client, fake_clock), make_request(ratio="16:9"))

        assert url == VIDEO_URL
        assert fake_clock.sleeps == [2.0, 2.0]
        assert [path for _, path, _ in client.calls] == [
            USER_INFO_PATH,
            WORKSPACE_PATH,
            SUBMIT_RUN_PATH,
            GET_THREAD_PATH,
            GET_THREAD_PATH,
            GET_ARTIFACT_PATH,
            ASSET_DETAIL_PATH,
        ]

    async def test_submit_run_body(self, fake_clock):
        client = ScriptedBrowserClient(default_scripts())

        await generate(make_generator(client, fake_clock), make_request(ratio="16:9"))

        body = client.bodies(SUBMIT_RUN_PATH)[0]
        assert body["agent_name"] == AGENT_NAME
        assert body["user_info"] == {
            "consumer_uid": "uid-1",
            "workspace_id": "ws-1",
            "app_id": "795647",
            "space_id": "sp-1",
        }
        content = body["message"]["content"]
        assert content[0]["data"] == "a fox in the snow"
        assert json.loads(content[1]["data"]) == {"ratio": "16:9"}

    async def test_calls_carry_referer_and_cookies(self, fake_clock):
        client = ScriptedBrowserClient(default_scripts())

        await generate(make_generator(client, fake_clock), make_request())

        for _, _, kwargs in client.calls:
            assert kwargs["headers"]["Referer"] == XYQ.generate_page_url
            assert kwargs["cookie_header"] == "sessionid_pippitcn_web=tok"

    async def test_polls_use_returned_thread_ids(self, fake_clock):
        scripts = default_scripts(
            **{SUBMIT_RUN_PATH: [{"run": {"thread_id": "server-t", "run_id": "server-r"}}]},
            **{GET_THREAD_PATH: [completed("server-r")]},
        )
        client = ScriptedBrowserClient(scripts)

        await generate(make_generator(client, fake_clock), make_request())

        poll = client.bodies(GET_THREAD_PATH)[0]
        assert poll["thread_id"] == "server-t"
        assert poll["run_id"] == "server-r"
        assert client.bodies(GET_ARTIFACT_PATH)[0] == {"artifact_id": "art-1", "user_id": "uid-1"}

    async def test_images_are_ignored(self, fake_clock):
        client = ScriptedBrowserClient(default_scripts())

        url = await generate(
            make_generator(client, fake_clock), make_request(images=[ReferenceImage(b"x")])
        )

        assert url == VIDEO_URL


class TestIdentity:
    """Tests for identity resolution."""

    async def test_lookup_failure_is_tolerated_when_other_lookup_suffices(self, fake_clock):
        scripts = default_scripts(
            **{
                USER_INFO_PATH: [BusinessError("boom", code="1")],
                WORKSPACE_PATH: [{"consumer_uid": "uid-2", "workspace_id": "ws-2"}],
            }
        )
        client = ScriptedBrowserClient(scripts)

        await generate(make_generator(client, fake_clock), make_request())

        user_info = client.bodies(SUBMIT_RUN_PATH)[0]["user_info"]
        assert user_info["consumer_uid"] == "uid-2"
        assert user_info["workspace_id"] == "ws-2"

    async def test_missing_identity_is_fatal(self, fake_clock):
        client = ScriptedBrowserClient(default_scripts(**{WORKSPACE_PATH: [{}]}))

        with pytest.raises(ResultResolutionError, match="workspace_id"):
            await generate(make_generator(client, fake_clock), make_request())

        assert SUBMIT_RUN_PATH not in [path for _, path, _ in client.calls]

    async def test_login_required_propagates(self, fake_clock):
        scripts = default_scripts(**{USER_INFO_PATH: [LoginRequiredError("login", code="1015")]})
        client = ScriptedBrowserClient(scripts)

        with pytest.raises(LoginRequiredError):
            await generate(make_generator(client, fake_clock), make_request())

    async def test_merge_identity_first_non_empty_wins(self):
        identity = merge_identity(
            {"user_info": {"consumer_uid": "u1", "workspace_id": ""}},
            {"data": {"workspace_id": "w1"}},
            "795647",
        )

        assert identity.consumer_uid == "u1"
        assert identity.workspace_id == "w1"
        assert "space_id" not in identity.to_user_info()

    async def test_merge_identity_missing(self):
        assert merge_identity(None, None, "795647") is None


class TestAgentFailures:
    """Tests for terminal failure paths."""

    async def test_empty_prompt(self, fake_clock):
        client = ScriptedBrowserClient(default_scripts())

        with pytest.raises(GenerationFailedError, match="prompt"):
            await generate(make_generator(client, fake_clock), make_request(prompt="   "))

        assert client.calls == []

    async def test_failed_run_reports_reason(self, fake_clock):
        failed = {"thread": {"run_list": [{"run_id": "r1", "state": 4, "fail_reason": "quota"}]}}
        client = ScriptedBrowserClient(default_scripts(**{GET_THREAD_PATH: [failed]}))

        with pytest.raises(GenerationFailedError, match="quota"):
            await generate(make_generator(client, fake_clock), make_request())

    async def test_completed_without_artifact(self, fake_clock):
        done = {"thread": {"run_list": [{"run_id": "r1", "state": 3, "entry_list": []}]}}
        client = ScriptedBrowserClient(default_scripts(**{GET_THREAD_PATH: [done]}))

        with pytest.raises(ResultResolutionError):
            await generate(make_generator(client, fake_clock), make_request())

    async def test_artifact_without_asset_id(self, fake_clock):
        scripts = default_scripts(**{GET_ARTIFACT_PATH: [{"artifact": {"content": "{}"}}]})
        client = ScriptedBrowserClient(scripts)

        with pytest.raises(ResultResolutionError, match="PippitAssetID"):
            await generate(make_generator(client, fake_clock), make_request())

        assert ASSET_DETAIL_PATH not in [path for _, path, _ in client.calls]

    async def test_asset_without_url(self, fake_clock):
        scripts = default_scripts(**{ASSET_DETAIL_PATH: [{"Video": {}}]})
        client = ScriptedBrowserClient(scripts)

        with pytest.raises(ResultResolutionError):
            await generate(make_generator(client, fake_clock), make_request())

    async def test_timeout(self, fake_clock):
        client = ScriptedBrowserClient(default_scripts(**{GET_THREAD_PATH: [running()]}))

        with pytest.raises(GenerationTimeoutError):
            await generate(make_generator(client, fake_clock, timeout_seconds=10), make_request())

        assert fake_clock.sleeps == [2.0] * 5


class TestRunMessage:
    async def test_without_ratio(self):
        message = build_run_message("hello", None, "t", "r")

        assert message["thread_id"] == "t"
        assert message["run_id"] == "r"
        assert message["role"] == "user"
        assert message["content"] == [{"type": "text", "sub_type": "text", "data": "hello"}]
