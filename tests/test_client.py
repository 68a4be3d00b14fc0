"""Tests for InteractionsClient -- HTTP calls, SSE parsing, error mapping, retries.

Uses httpx.MockTransport; nothing touches the network.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from colloquy.api.client import InteractionsClient, error_for_response, iter_sse_events
from colloquy.content.blocks import function_result, text
from colloquy.content.events import BlockDelta, StatusUpdate, StreamComplete, StreamStart
from colloquy.content.interaction import CreateInteractionRequest, InteractionStatus
from colloquy.errors import ServerRejected, ServerUnavailable, StreamProtocolError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _interaction(interaction_id: str = "int_1", status: str = "completed", outputs=None) -> dict:
    return {
        "id": interaction_id,
        "status": status,
        "outputs": outputs if outputs is not None else [{"type": "text", "text": "ok"}],
    }


def _sse(*events: dict) -> bytes:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode()


class Recorder:
    """MockTransport handler serving scripted responses and recording requests."""

    def __init__(self, *responses) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest_asyncio.fixture
async def make_client(settings):
    clients = []

    def factory(*responses):
        recorder = Recorder(*responses)
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(recorder),
            base_url=settings.api_base_url,
        )
        clients.append(http)
        return InteractionsClient(settings, http=http), recorder

    yield factory
    for http in clients:
        await http.aclose()


def _request(**overrides) -> CreateInteractionRequest:
    fields = {"model": "gemini-test", "input": "Tell me a joke", **overrides}
    return CreateInteractionRequest(**fields)


# ---------------------------------------------------------------------------
# Unary operations
# ---------------------------------------------------------------------------


class TestOperations:
    @pytest.mark.asyncio
    async def test_create(self, make_client):
        client, recorder = make_client(httpx.Response(200, json=_interaction()))

        interaction = await client.create(_request(background=True))

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/v1beta/interactions"
        body = json.loads(request.content)
        assert body == {"input": "Tell me a joke", "model": "gemini-test", "background": True}
        assert interaction.id == "int_1"
        assert interaction.text() == "ok"

    @pytest.mark.asyncio
    async def test_create_never_sends_stream_flag(self, make_client):
        client, recorder = make_client(httpx.Response(200, json=_interaction()))
        await client.create(_request(stream=True))
        assert "stream" not in json.loads(recorder.requests[0].content)

    @pytest.mark.asyncio
    async def test_create_with_results(self, make_client):
        client, recorder = make_client(httpx.Response(200, json=_interaction("int_2")))
        request = CreateInteractionRequest(
            model="gemini-test",
            input=[function_result("abc", "get_weather", "sunny")],
            previous_interaction_id="int_1",
        )
        await client.create(request)
        body = json.loads(recorder.requests[0].content)
        assert body["previous_interaction_id"] == "int_1"
        assert body["input"][0]["call_id"] == "abc"

    @pytest.mark.asyncio
    async def test_get(self, make_client):
        client, recorder = make_client(
            httpx.Response(200, json=_interaction(status="in_progress", outputs=[]))
        )
        interaction = await client.get("int_1")
        assert recorder.requests[0].method == "GET"
        assert recorder.requests[0].url.path == "/v1beta/interactions/int_1"
        assert interaction.status == InteractionStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_cancel(self, make_client):
        client, recorder = make_client(httpx.Response(200, json=_interaction(status="cancelled")))
        interaction = await client.cancel("int_1")
        assert recorder.requests[0].method == "POST"
        assert recorder.requests[0].url.path == "/v1beta/interactions/int_1/cancel"
        assert interaction.status == InteractionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_delete_empty_body(self, make_client):
        client, recorder = make_client(httpx.Response(204))
        assert await client.delete("int_1") is None
        assert recorder.requests[0].method == "DELETE"

    @pytest.mark.asyncio
    async def test_not_started(self, settings):
        client = InteractionsClient(settings)
        with pytest.raises(RuntimeError, match="start"):
            await client.get("int_1")

    @pytest.mark.asyncio
    async def test_start_sets_auth_header(self, settings):
        async with InteractionsClient(settings) as client:
            http = client._client()
            assert http.headers["x-goog-api-key"] == "test-key"
            assert str(http.base_url).startswith("https://interactions.test")
        assert client._http is None

    @pytest.mark.asyncio
    async def test_close_keeps_injected_client(self, make_client):
        client, _ = make_client()
        await client.close()
        assert client._client() is not None


# ---------------------------------------------------------------------------
# Errors and retries
# ---------------------------------------------------------------------------


class TestErrors:
    def test_error_body_mapping(self):
        body = json.dumps({
            "error": {"code": 400, "message": "input is empty", "status": "INVALID_ARGUMENT"}
        }).encode()
        error = error_for_response(400, body)
        assert isinstance(error, ServerRejected)
        assert error.status_code == 400
        assert error.error_type == "INVALID_ARGUMENT"
        assert "input is empty" in str(error)

    def test_unavailable_mapping(self):
        assert isinstance(error_for_response(429, b"slow down"), ServerUnavailable)
        assert isinstance(error_for_response(503, b""), ServerUnavailable)

    def test_non_json_body(self):
        error = error_for_response(404, b"<html>not found</html>")
        assert isinstance(error, ServerRejected)
        assert error.error_type == "http_error"

    @pytest.mark.asyncio
    async def test_4xx_not_retried(self, make_client):
        client, recorder = make_client(
            httpx.Response(400, json={"error": {"status": "INVALID_ARGUMENT", "message": "bad"}})
        )
        with pytest.raises(ServerRejected):
            await client.create(_request())
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_get_retries_503_once(self, make_client):
        client, recorder = make_client(
            httpx.Response(503, json={"error": {"status": "UNAVAILABLE"}}),
            httpx.Response(200, json=_interaction()),
        )
        with patch("colloquy.api.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            interaction = await client.get("int_1")
        assert interaction.status == InteractionStatus.COMPLETED
        assert len(recorder.requests) == 2
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_gives_up_after_one_retry(self, make_client):
        client, recorder = make_client(httpx.Response(500), httpx.Response(500))
        with patch("colloquy.api.client.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ServerUnavailable):
                await client.get("int_1")
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_create_not_retried_on_503(self, make_client):
        client, recorder = make_client(httpx.Response(503))
        with pytest.raises(ServerUnavailable):
            await client.create(_request())
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_create_retried_on_429_with_retry_after(self, make_client):
        client, recorder = make_client(
            httpx.Response(429, headers={"retry-after": "2"}),
            httpx.Response(200, json=_interaction()),
        )
        with patch("colloquy.api.client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await client.create(_request())
        sleep.assert_awaited_once_with(2.0)
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_create_timeout_not_retried(self, make_client):
        client, recorder = make_client(httpx.ReadTimeout("slow"))
        with pytest.raises(httpx.ReadTimeout):
            await client.create(_request())
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_get_timeout_retried(self, make_client):
        client, recorder = make_client(
            httpx.ReadTimeout("slow"),
            httpx.Response(200, json=_interaction()),
        )
        with patch("colloquy.api.client.asyncio.sleep", new_callable=AsyncMock):
            await client.get("int_1")
        assert len(recorder.requests) == 2


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreaming:
    @pytest.mark.asyncio
    async def test_create_stream(self, make_client):
        body = (
            b": keepalive\n\n"
            + _sse(
                {"event_type": "interaction.start", "event_id": 1,
                 "interaction": {"id": "int_1", "status": "in_progress"}},
                {"event_type": "content.start", "event_id": 2, "index": 0, "content": {"type": "text"}},
                {"event_type": "content.delta", "event_id": 3, "index": 0,
                 "delta": {"type": "text", "text": "Hi"}},
                {"event_type": "content.stop", "event_id": 4, "index": 0},
                {"event_type": "interaction.complete", "event_id": 5,
                 "interaction": _interaction(outputs=[{"type": "text", "text": "Hi"}])},
            )
            + b"data: [DONE]\n\n"
        )
        client, recorder = make_client(
            httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)
        )

        events = [e async for e in client.create_stream(_request(input=[text("Hi?")]))]

        request = recorder.requests[0]
        assert request.headers["accept"] == "text/event-stream"
        assert json.loads(request.content)["stream"] is True
        assert [e.event_id for e in events] == [1, 2, 3, 4, 5]
        assert isinstance(events[0], StreamStart)
        assert events[2] == BlockDelta(3, 0, {"type": "text", "text": "Hi"})
        assert isinstance(events[-1], StreamComplete)

    @pytest.mark.asyncio
    async def test_get_stream_resume_params(self, make_client):
        body = _sse({"event_type": "interaction.status_update", "event_id": 18, "status": "completed"})
        client, recorder = make_client(httpx.Response(200, content=body))

        events = [e async for e in client.get_stream("int_1", last_event_id=17)]

        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/v1beta/interactions/int_1"
        assert request.url.params["stream"] == "true"
        assert request.url.params["last_event_id"] == "17"
        assert events == [StatusUpdate(18, InteractionStatus.COMPLETED)]

    @pytest.mark.asyncio
    async def test_get_stream_from_start(self, make_client):
        client, recorder = make_client(httpx.Response(200, content=b""))
        assert [e async for e in client.get_stream("int_1")] == []
        assert "last_event_id" not in recorder.requests[0].url.params

    @pytest.mark.asyncio
    async def test_stream_http_error(self, make_client):
        client, _ = make_client(
            httpx.Response(404, json={"error": {"status": "NOT_FOUND", "message": "gone"}})
        )
        with pytest.raises(ServerRejected) as exc_info:
            async for _ in client.get_stream("int_1", last_event_id=3):
                pass
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_stream_unavailable(self, make_client):
        client, _ = make_client(httpx.Response(503))
        with pytest.raises(ServerUnavailable):
            async for _ in client.create_stream(_request()):
                pass


class TestSseParsing:
    @pytest.mark.asyncio
    async def test_sse_id_and_multiline_data(self):
        body = (
            b"id: 7\n"
            b'data: {"event_type": "content.stop",\n'
            b'data:  "index": 0}\n'
            b"\n"
        )
        response = httpx.Response(200, content=body)
        events = [e async for e in iter_sse_events(response)]
        assert len(events) == 1
        assert events[0].event_id == 7

    @pytest.mark.asyncio
    async def test_trailing_event_without_blank_line(self):
        body = b'data: {"event_type": "content.stop", "event_id": 2, "index": 1}'
        events = [e async for e in iter_sse_events(httpx.Response(200, content=body))]
        assert events[0].index == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        response = httpx.Response(200, content=b"data: {not json\n\n")
        with pytest.raises(StreamProtocolError):
            async for _ in iter_sse_events(response):
                pass

    @pytest.mark.asyncio
    async def test_non_object_payload(self):
        response = httpx.Response(200, content=b"data: [1, 2]\n\n")
        with pytest.raises(StreamProtocolError):
            async for _ in iter_sse_events(response):
                pass
