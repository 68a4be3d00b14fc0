"""HTTP boundary for the Interactions service.

Direct httpx calls, no vendor SDK. Non-streaming calls return parsed
``Interaction`` snapshots; streaming calls yield ``StreamEvent`` objects
parsed from the SSE body. Resumption lives one layer up in
``ResumableStream`` -- this client only knows how to open a stream, either
fresh (create) or after a given event id (retrieve).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import Any

import httpx

from colloquy.config import Settings
from colloquy.content.events import StreamEvent, parse_event
from colloquy.content.interaction import CreateInteractionRequest, Interaction
from colloquy.errors import ServerError, ServerRejected, ServerUnavailable, StreamProtocolError

logger = logging.getLogger(__name__)

# Statuses worth one retry on idempotent calls. POST is only retried on 429,
# where the server guarantees the request was not processed.
_RETRY_STATUSES = frozenset({429, 500, 503})
_MAX_RETRY_AFTER = 30.0


def error_for_response(status_code: int, body: bytes) -> ServerError:
    """Map a non-2xx response to ServerRejected (4xx) or ServerUnavailable (429/5xx)."""
    error_type = "http_error"
    message = body.decode(errors="replace")[:500]
    details: dict[str, Any] = {}
    try:
        error_data = json.loads(body)
        error = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        if isinstance(error, dict) and error:
            details = error
            error_type = str(error.get("status") or error.get("type") or error.get("code") or error_type)
            message = error.get("message", message)
    except (json.JSONDecodeError, UnicodeDecodeError):
        pass

    text = f"Interactions API error ({status_code}): {error_type} - {message}"
    if status_code == 429 or status_code >= 500:
        return ServerUnavailable(text, status_code=status_code, error_type=error_type, details=details)
    return ServerRejected(text, status_code=status_code, error_type=error_type, details=details)


def _retry_after(response: httpx.Response) -> float:
    try:
        value = float(response.headers.get("retry-after", "1"))
    except ValueError:
        value = 1.0
    return min(max(value, 0.0), _MAX_RETRY_AFTER)


def _decode_sse_data(lines: list[str], sse_id: str | None) -> StreamEvent | None:
    raw = "\n".join(lines)
    if raw.strip() == "[DONE]":
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StreamProtocolError(f"Stream event is not valid JSON: {raw[:200]!r}") from e
    if not isinstance(data, dict):
        raise StreamProtocolError(f"Stream event is not an object: {raw[:200]!r}")
    return parse_event(data, sse_id)


async def iter_sse_events(response: httpx.Response) -> AsyncGenerator[StreamEvent, None]:
    """Parse an SSE body into StreamEvents.

    Handles multi-line ``data:`` fields, ``id:`` fields and ``:`` comment
    keepalives. A blank line terminates each event.
    """
    data_lines: list[str] = []
    sse_id: str | None = None

    async for line in response.aiter_lines():
        if not line:
            if data_lines:
                event = _decode_sse_data(data_lines, sse_id)
                if event is not None:
                    yield event
            data_lines = []
            sse_id = None
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "id":
            sse_id = value

    if data_lines:
        event = _decode_sse_data(data_lines, sse_id)
        if event is not None:
            yield event


class InteractionsClient:
    """Create, retrieve, cancel, and delete Interactions over HTTP.

    Pass an ``httpx.AsyncClient`` to share a connection pool (or to inject
    a mock transport); otherwise ``start()`` builds one from settings.
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings

        headers: dict[str, str] = {"content-type": "application/json"}
        if settings.api_key:
            headers["x-goog-api-key"] = settings.api_key
        else:
            logger.warning("GEMINI_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        self._owns_http = True
        logger.info("httpx client initialized for %s", settings.api_base_url)

    async def close(self) -> None:
        """Clean up the httpx client if this instance created it."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> InteractionsClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, request: CreateInteractionRequest) -> Interaction:
        """Create a turn and return its snapshot (non-streaming)."""
        payload = request.to_wire()
        payload.pop("stream", None)
        data = await self._request("POST", self._path(), json=payload)
        return Interaction.from_wire(data)

    async def create_stream(self, request: CreateInteractionRequest) -> AsyncGenerator[StreamEvent, None]:
        """Create a turn and yield its events as they arrive."""
        payload = request.to_wire()
        payload["stream"] = True
        async with aclosing(self._stream("POST", self._path(), json=payload)) as events:
            async for event in events:
                yield event

    async def get(self, interaction_id: str) -> Interaction:
        """Read-only retrieval, used for polling."""
        data = await self._request("GET", self._path(interaction_id))
        return Interaction.from_wire(data)

    async def get_stream(
        self,
        interaction_id: str,
        last_event_id: int | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Re-fetch an interaction as a stream, resuming after ``last_event_id``."""
        params: dict[str, str] = {"stream": "true"}
        if last_event_id is not None:
            params["last_event_id"] = str(last_event_id)
        async with aclosing(self._stream("GET", self._path(interaction_id), params=params)) as events:
            async for event in events:
                yield event

    async def cancel(self, interaction_id: str) -> Interaction:
        """Request cancellation of a background interaction."""
        data = await self._request("POST", self._path(interaction_id, "cancel"))
        return Interaction.from_wire(data)

    async def delete(self, interaction_id: str) -> None:
        await self._request("DELETE", self._path(interaction_id))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _path(self, interaction_id: str | None = None, action: str | None = None) -> str:
        path = self._settings.interactions_path
        if interaction_id:
            path = f"{path}/{interaction_id}"
        if action:
            path = f"{path}/{action}"
        return path

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request with a single retry for transient failures.

        Raises:
            ServerRejected: 4xx response.
            ServerUnavailable: 429/5xx response after the retry.
            httpx.TransportError: Network failure after the retry.
        """
        http = self._client()
        idempotent = method != "POST"

        for attempt in range(2):  # initial + 1 retry
            try:
                response = await http.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                if idempotent and attempt == 0:
                    logger.warning("%s %s timed out, retrying: %s", method, url, e)
                    await asyncio.sleep(1)
                    continue
                raise

            if response.is_success:
                if not response.content:
                    return {}
                return response.json()

            error = error_for_response(response.status_code, response.content)
            retryable = response.status_code == 429 or (
                idempotent and response.status_code in _RETRY_STATUSES
            )
            if retryable and attempt == 0:
                delay = _retry_after(response)
                logger.warning(
                    "API error %d (%s), retrying in %.1fs",
                    response.status_code,
                    error.error_type,
                    delay,
                )
                await asyncio.sleep(delay)
                continue
            raise error

        raise RuntimeError("API call failed with unknown error")

    async def _stream(self, method: str, url: str, **kwargs: Any) -> AsyncGenerator[StreamEvent, None]:
        http = self._client()
        headers = {"accept": "text/event-stream"}
        async with http.stream(method, url, headers=headers, **kwargs) as response:
            if not response.is_success:
                body = await response.aread()
                raise error_for_response(response.status_code, body)
            async with aclosing(iter_sse_events(response)) as events:
                async for event in events:
                    yield event
