"""Shared fixtures: settings without .env leakage and a virtual clock."""

import pytest

from colloquy.config import Settings


# ---------------------------------------------------------------------------
# Virtual time
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited.

    Pass ``clock`` as the time source and ``clock.sleep`` as the sleep
    function; every requested delay is recorded in ``sleeps``.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        GEMINI_API_KEY="test-key",
        api_base_url="https://interactions.test",
        model="gemini-test",
        agent="",
        store=True,
        stream=False,
        background=False,
        stream_max_attempts=3,
        stream_backoff_base=0.5,
        stream_backoff_max=2.0,
        stream_backoff_jitter=0.0,
        poll_interval=1.0,
        poll_interval_max=4.0,
        poll_timeout=30.0,
        max_tool_rounds=3,
        event_bus_enabled=False,
    )
