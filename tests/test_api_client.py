import json
from urllib.parse import parse_qs

import httpx
import pytest

from gemini_web_mcp.api_client import (
    ChatSession,
    GeminiClient,
    build_generate_body,
    build_generate_headers,
)
from gemini_web_mcp.constants import IDENTITY_COOKIE, MODEL_HEADER_KEY, Model
from gemini_web_mcp.exceptions import (
    AuthenticationError,
    IndexOutOfRangeError,
    InvalidArgumentError,
    NoPriorResultError,
    NotInitializedError,
    TransportError,
)
from gemini_web_mcp.session import SessionState

from conftest import ACCESS_TOKEN, make_body, make_candidate, wrap_body


def sent_params(request: httpx.Request) -> list:
    """Decode the [[prompt], null, metadata] list from a generate request."""
    form = parse_qs(request.content.decode())
    envelope = json.loads(form["f.req"][0])
    return json.loads(envelope[1])


def generate_requests(backend) -> list[httpx.Request]:
    return [r for r in backend.requests if r.url.path.endswith("/StreamGenerate")]


@pytest.fixture
def client(cookies, transport, rotation_cache):
    return GeminiClient(cookies=cookies, transport=transport, rotation_cache=rotation_cache)


@pytest.fixture
async def ready_client(client):
    await client.init(auto_refresh=False)
    yield client
    await client.close()


class TestRequestEncoding:
    def test_fresh_conversation_body(self):
        body = build_generate_body("token", "Hello")

        assert body["at"] == "token"
        envelope = json.loads(body["f.req"])
        assert envelope[0] is None
        assert json.loads(envelope[1]) == [["Hello"], None, None]

    def test_continuation_body(self):
        body = build_generate_body("token", "Next", ["c_1", "r_1", "rc_1"])

        assert json.loads(json.loads(body["f.req"])[1]) == [["Next"], None, ["c_1", "r_1", "rc_1"]]

    @pytest.mark.parametrize("prompt", ["", "   \n"])
    def test_empty_prompt_rejected(self, prompt):
        with pytest.raises(InvalidArgumentError):
            build_generate_body("token", prompt)

    def test_headers_include_model_tag(self):
        headers = build_generate_headers(Model.G_2_5_PRO, {IDENTITY_COOKIE: "psid"})

        assert headers[MODEL_HEADER_KEY] == Model.G_2_5_PRO.header_value
        assert headers["Cookie"] == f"{IDENTITY_COOKIE}=psid"
        assert headers["X-Same-Domain"] == "1"

    def test_unspecified_model_sends_no_tag(self):
        assert MODEL_HEADER_KEY not in build_generate_headers(Model.UNSPECIFIED, {})


class TestModel:
    def test_from_name_is_case_insensitive(self):
        assert Model.from_name("Gemini-2.5-Flash") is Model.G_2_5_FLASH
        assert Model.from_name(Model.G_2_0_FLASH) is Model.G_2_0_FLASH

    def test_unknown_model(self):
        with pytest.raises(ValueError, match="gemini-2.5-pro"):
            Model.from_name("gpt-4")


class TestGenerateContent:
    @pytest.mark.asyncio
    async def test_requires_initialized_session(self, client, backend):
        with pytest.raises(NotInitializedError):
            await client.generate_content("Hello")

        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_empty_prompt_checked_first(self, client, backend):
        with pytest.raises(InvalidArgumentError):
            await client.generate_content("  ")

        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_generate(self, ready_client, backend):
        result = await ready_client.generate_content("Hello", model="gemini-2.5-flash")

        assert result.text == "hello"
        request = generate_requests(backend)[0]
        assert parse_qs(request.content.decode())["at"] == [ACCESS_TOKEN]
        assert sent_params(request) == [["Hello"], None, None]
        assert request.headers[MODEL_HEADER_KEY] == Model.G_2_5_FLASH.header_value

    @pytest.mark.asyncio
    async def test_unauthorized_marks_session_failed(self, ready_client, backend):
        backend.generate_status = 403

        with pytest.raises(AuthenticationError):
            await ready_client.generate_content("Hello")

        assert ready_client.session.state is SessionState.FAILED
        assert not ready_client.running
        with pytest.raises(NotInitializedError):
            await ready_client.generate_content("Hello again")

    @pytest.mark.asyncio
    async def test_server_error(self, ready_client, backend):
        backend.generate_status = 500

        with pytest.raises(TransportError) as exc_info:
            await ready_client.generate_content("Hello")

        assert exc_info.value.status_code == 500
        assert ready_client.running

    @pytest.mark.asyncio
    async def test_timeout(self, cookies, rotation_cache, backend):
        def handler(request):
            if request.url.path.endswith("/StreamGenerate"):
                raise httpx.ReadTimeout("slow", request=request)
            return backend(request)

        client = GeminiClient(
            cookies=cookies, transport=httpx.MockTransport(handler), rotation_cache=rotation_cache
        )
        await client.init(auto_refresh=False)

        with pytest.raises(TransportError, match="timed out"):
            await client.generate_content("Hello")
        await client.close()

    @pytest.mark.asyncio
    async def test_context_manager(self, client):
        async with client:
            assert client.running
            assert client.session.rotation_running

        assert not client.running
        assert not client.session.rotation_running


class TestChatSession:
    @pytest.mark.asyncio
    async def test_pointer_threads_turns(self, ready_client, backend):
        backend.generate_bodies = [
            wrap_body(make_body([make_candidate("rc_1", "first")], metadata=["c_1", "r_1"])),
            wrap_body(make_body([make_candidate("rc_2", "second")], metadata=["c_1", "r_2"])),
        ]
        chat = ready_client.start_chat(model=Model.G_2_5_PRO)

        await chat.send_message("one")
        assert chat.metadata == ["c_1", "r_1", "rc_1"]

        result = await chat.send_message("two")
        assert result.text == "second"
        assert chat.metadata == ["c_1", "r_2", "rc_2"]

        first, second = generate_requests(backend)
        assert sent_params(first)[2] == [None, None, None]
        assert sent_params(second)[2] == ["c_1", "r_1", "rc_1"]

    @pytest.mark.asyncio
    async def test_choose_candidate(self, ready_client, backend):
        backend.generate_bodies = [
            wrap_body(make_body([
                make_candidate("rc_a", "draft a"),
                make_candidate("rc_b", "draft b", {14: [["python", "print(1)"]]}),
            ])),
        ]
        chat = ready_client.start_chat()
        await chat.send_message("hi")
        last = chat.last_output

        chosen = chat.choose_candidate(1)

        assert chosen.text == "draft b"
        assert chosen.rcid == "rc_b"
        assert [(b.language, b.code) for b in chosen.code_blocks] == [("python", "print(1)")]
        assert chosen.metadata == last.metadata == ["c_1", "r_1"]
        assert chosen.candidates == last.candidates
        assert chat.metadata == ["c_1", "r_1", "rc_b"]
        assert chat.last_output is last
        assert last.chosen == 0
        assert last.text == "draft a"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("index", [2, -1])
    async def test_choose_candidate_out_of_range(self, ready_client, backend, index):
        backend.generate_bodies = [
            wrap_body(make_body([make_candidate("rc_a", "a"), make_candidate("rc_b", "b")])),
        ]
        chat = ready_client.start_chat()
        await chat.send_message("hi")

        with pytest.raises(IndexOutOfRangeError):
            chat.choose_candidate(index)

        assert chat.rcid == "rc_a"

    def test_choose_candidate_without_prior_result(self, client):
        with pytest.raises(NoPriorResultError):
            ChatSession(client).choose_candidate(0)

    def test_metadata_update(self, client):
        chat = ChatSession(client, metadata=["c", "r", "rc"])

        chat.metadata = ["c2"]
        assert chat.metadata == ["c2", "r", "rc"]

        with pytest.raises(InvalidArgumentError):
            chat.set_metadata(["a", "b", "c", "d"])
        assert chat.metadata == ["c2", "r", "rc"]

    def test_unknown_model(self, client):
        with pytest.raises(ValueError):
            client.start_chat(model="nope")
