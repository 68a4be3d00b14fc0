"""Streaming -- event decoding and transparent resumption."""

from colloquy.stream.decoder import (
    BlockCompleted,
    Decoded,
    StatusChanged,
    StreamDecoder,
    StreamFinished,
    StreamStarted,
)
from colloquy.stream.reconnect import RETRYABLE_ERRORS, ResumableStream

__all__ = [
    "BlockCompleted",
    "Decoded",
    "RETRYABLE_ERRORS",
    "ResumableStream",
    "StatusChanged",
    "StreamDecoder",
    "StreamFinished",
    "StreamStarted",
]
