"""Tests for ResumableStream -- transparent resumption without gaps or duplicates."""

import httpx
import pytest

from colloquy.content.events import (
    BlockDelta,
    BlockStart,
    BlockStop,
    StatusUpdate,
    StreamComplete,
    StreamStart,
)
from colloquy.content.interaction import Interaction, InteractionStatus
from colloquy.errors import (
    ServerRejected,
    ServerUnavailable,
    StreamExhausted,
    UnresumableStream,
)
from colloquy.stream.decoder import StreamDecoder
from colloquy.stream.reconnect import ResumableStream


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _events(first: int, last: int) -> list:
    """Events ``first..last`` of a single-text-block stream for int_1 (1 <= first)."""
    events = []
    for event_id in range(first, last + 1):
        if event_id == 1:
            events.append(StreamStart(1, "int_1"))
        elif event_id == 2:
            events.append(BlockStart(2, 0, "text"))
        else:
            events.append(BlockDelta(event_id, 0, {"text": f"{event_id} "}))
    return events


def _ending(first: int) -> list:
    return [
        BlockStop(first, 0),
        StreamComplete(first + 1, Interaction(id="int_1", status=InteractionStatus.COMPLETED)),
    ]


def _source(events: list, fail_with: BaseException | None = None):
    async def gen():
        for event in events:
            yield event
        if fail_with is not None:
            raise fail_with

    return gen()


class Resumer:
    """Records resume calls and serves scripted sources in order."""

    def __init__(self, *sources) -> None:
        self._sources = list(sources)
        self.calls: list[tuple[str, int | None]] = []

    def __call__(self, interaction_id: str, last_event_id: int | None):
        self.calls.append((interaction_id, last_event_id))
        return self._sources.pop(0)


async def _collect(stream: ResumableStream) -> list:
    return [event async for event in stream]


# ---------------------------------------------------------------------------
# Resumption
# ---------------------------------------------------------------------------


class TestResume:
    @pytest.mark.asyncio
    async def test_resumes_after_last_event(self, clock):
        """Drop after event 17; server over-delivers 16 and 17 on resume."""
        resumer = Resumer(_source([*_events(16, 18), *_ending(19)]))
        stream = ResumableStream(
            lambda: _source(_events(1, 17), httpx.ReadError("connection reset")),
            resumer,
            jitter=0.0,
            sleep=clock.sleep,
        )

        events = await _collect(stream)

        assert resumer.calls == [("int_1", 17)]
        ids = [e.event_id for e in events]
        assert ids == list(range(1, 21))
        assert stream.resumes == 1
        assert stream.last_event_id == 20

    @pytest.mark.asyncio
    async def test_decoded_output_matches_uninterrupted(self, clock):
        uninterrupted = [*_events(1, 18), *_ending(19)]
        baseline = StreamDecoder()
        for event in uninterrupted:
            baseline.feed(event)

        resumer = Resumer(
            _source(_events(5, 11), httpx.RemoteProtocolError("peer closed")),
            _source([*_events(9, 18), *_ending(19)]),
        )
        stream = ResumableStream(
            lambda: _source(_events(1, 6), httpx.ReadError("reset")),
            resumer,
            jitter=0.0,
            sleep=clock.sleep,
        )
        resumed = StreamDecoder()
        async for event in stream:
            resumed.feed(event)

        assert resumer.calls == [("int_1", 6), ("int_1", 11)]
        assert resumed.outputs() == baseline.outputs()
        assert resumed.snapshot().status == InteractionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stream_closed_without_terminal_event(self, clock):
        resumer = Resumer(_source(_ending(4)))
        stream = ResumableStream(lambda: _source(_events(1, 3)), resumer, sleep=clock.sleep)

        events = await _collect(stream)

        assert resumer.calls == [("int_1", 3)]
        assert isinstance(events[-1], StreamComplete)

    @pytest.mark.asyncio
    async def test_clean_close_after_settled_status(self, clock):
        resumer = Resumer()
        stream = ResumableStream(
            lambda: _source([
                *_events(1, 3),
                BlockStop(4, 0),
                StatusUpdate(5, InteractionStatus.REQUIRES_ACTION),
            ]),
            resumer,
            sleep=clock.sleep,
        )

        events = await _collect(stream)

        assert [e.event_id for e in events] == [1, 2, 3, 4, 5]
        assert resumer.calls == []
        assert stream.settled

    @pytest.mark.asyncio
    async def test_settled_status_with_open_block_resumes(self, clock):
        resumer = Resumer(_source(_ending(5)))
        stream = ResumableStream(
            lambda: _source([*_events(1, 3), StatusUpdate(4, InteractionStatus.COMPLETED)]),
            resumer,
            sleep=clock.sleep,
        )

        events = await _collect(stream)

        assert resumer.calls == [("int_1", 4)]
        assert isinstance(events[-1], StreamComplete)

    @pytest.mark.asyncio
    async def test_server_unavailable_is_retryable(self, clock):
        resumer = Resumer(
            _source([], ServerUnavailable("503", status_code=503)),
            _source([*_events(4, 4), *_ending(5)]),
        )
        stream = ResumableStream(
            lambda: _source(_events(1, 3), httpx.ReadTimeout("slow")),
            resumer,
            sleep=clock.sleep,
        )

        events = await _collect(stream)

        assert [e.event_id for e in events] == [1, 2, 3, 4, 5, 6]
        assert resumer.calls == [("int_1", 3), ("int_1", 3)]

    @pytest.mark.asyncio
    async def test_attempts_reset_after_progress(self, clock):
        """Each resume makes progress, so max_attempts=1 never runs out."""
        resumer = Resumer(
            _source(_events(4, 4), httpx.ReadError("drop")),
            _source(_events(5, 5), httpx.ReadError("drop")),
            _source(_ending(6)),
        )
        stream = ResumableStream(
            lambda: _source(_events(1, 3), httpx.ReadError("drop")),
            resumer,
            max_attempts=1,
            sleep=clock.sleep,
        )

        events = await _collect(stream)

        assert [e.event_id for e in events] == list(range(1, 8))
        assert stream.resumes == 3

    @pytest.mark.asyncio
    async def test_stops_at_terminal_event(self, clock):
        trailing = BlockDelta(99, 0, {"text": "never"})
        stream = ResumableStream(
            lambda: _source([*_events(1, 2), *_ending(3), trailing]),
            Resumer(),
            sleep=clock.sleep,
        )
        events = await _collect(stream)
        assert trailing not in events

    @pytest.mark.asyncio
    async def test_preset_position(self, clock):
        """Reattach to an existing interaction without replaying old events."""
        resumer = Resumer(_source([*_events(8, 9), *_ending(10)]))
        stream = ResumableStream(
            lambda: _source([], httpx.ConnectError("refused")),
            resumer,
            interaction_id="int_1",
            last_event_id=8,
            sleep=clock.sleep,
        )
        events = await _collect(stream)
        assert [e.event_id for e in events] == [9, 10, 11]

    @pytest.mark.asyncio
    async def test_on_resume_hook(self, clock):
        seen = []

        async def on_resume(interaction_id, last_event_id, attempt):
            seen.append((interaction_id, last_event_id, attempt))

        stream = ResumableStream(
            lambda: _source(_events(1, 5), httpx.ReadError("drop")),
            Resumer(_source(_ending(6))),
            sleep=clock.sleep,
            on_resume=on_resume,
        )
        await _collect(stream)
        assert seen == [("int_1", 5, 1)]


# ---------------------------------------------------------------------------
# Failure modes
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_unresumable_before_interaction_id(self, clock):
        resumer = Resumer()
        stream = ResumableStream(
            lambda: _source([], httpx.ConnectError("refused")),
            resumer,
            sleep=clock.sleep,
        )
        with pytest.raises(UnresumableStream):
            await _collect(stream)
        assert resumer.calls == []

    @pytest.mark.asyncio
    async def test_exhausted(self, clock):
        resumer = Resumer(
            _source([], httpx.ReadError("drop")),
            _source([], httpx.ReadError("drop")),
        )
        stream = ResumableStream(
            lambda: _source(_events(1, 4), httpx.ReadError("drop")),
            resumer,
            max_attempts=2,
            backoff_base=0.5,
            backoff_max=8.0,
            jitter=0.0,
            sleep=clock.sleep,
        )

        with pytest.raises(StreamExhausted) as exc_info:
            await _collect(stream)

        assert exc_info.value.interaction_id == "int_1"
        assert exc_info.value.last_event_id == 4
        assert exc_info.value.attempts == 2
        assert clock.sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_zero_attempts_fails_immediately(self, clock):
        stream = ResumableStream(
            lambda: _source(_events(1, 2), httpx.ReadError("drop")),
            Resumer(),
            max_attempts=0,
            sleep=clock.sleep,
        )
        with pytest.raises(StreamExhausted):
            await _collect(stream)
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates(self, clock):
        resumer = Resumer()
        stream = ResumableStream(
            lambda: _source(_events(1, 3), ServerRejected("bad request", status_code=400)),
            resumer,
            sleep=clock.sleep,
        )
        with pytest.raises(ServerRejected):
            await _collect(stream)
        assert resumer.calls == []

    @pytest.mark.asyncio
    async def test_single_iteration(self, clock):
        stream = ResumableStream(lambda: _source(_ending(1)), Resumer(), sleep=clock.sleep)
        aiter(stream)
        with pytest.raises(RuntimeError):
            aiter(stream)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_exponential_with_cap(self):
        stream = ResumableStream(
            lambda: _source([]), Resumer(), backoff_base=0.5, backoff_max=2.0, jitter=0.0
        )
        assert [stream.backoff_delay(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 2.0]

    def test_jitter_bounds(self):
        stream = ResumableStream(
            lambda: _source([]), Resumer(), backoff_base=1.0, backoff_max=8.0, jitter=0.1
        )
        for _ in range(50):
            assert 2.0 <= stream.backoff_delay(2) <= 2.2 + 1e-9
