"""Frame-pointer stack walking."""

from __future__ import annotations

from typing import Callable, List

from .errors import ConfigError, StackDepthError
from .registers import Frame, parse_frame
from .transport import QMPChannel

DEFAULT_MAX_DEPTH = 1024

FrameReader = Callable[[int], Frame]


def channel_frame_reader(channel: QMPChannel) -> FrameReader:
    """Read frames with one `x /2g` round trip each."""

    def read_frame(base_pointer: int) -> Frame:
        return parse_frame(channel.examine(base_pointer))

    return read_frame


def walk(base_pointer: int, read_frame: FrameReader, max_depth: int = DEFAULT_MAX_DEPTH) -> List[int]:
    """Return the return addresses on the chain at *base_pointer*, innermost first.

    The zero base pointer terminates the chain and is never read. A chain
    still running after *max_depth* frames raises StackDepthError.
    """
    if max_depth < 1:
        raise ConfigError(f"max depth must be >= 1, got {max_depth}")
    stack: List[int] = []
    current = base_pointer
    while current != 0:
        if len(stack) >= max_depth:
            raise StackDepthError(max_depth, stack)
        frame = read_frame(current)
        stack.append(frame.return_address)
        current = frame.saved_base_pointer
    return stack


class StackWalker:
    """Walks frame-pointer chains through a pluggable frame reader."""

    def __init__(self, read_frame: FrameReader, *, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        if max_depth < 1:
            raise ConfigError(f"max depth must be >= 1, got {max_depth}")
        self._read_frame = read_frame
        self.max_depth = max_depth
        self.last_round_trips = 0

    def _counting_reader(self, base_pointer: int) -> Frame:
        self.last_round_trips += 1
        return self._read_frame(base_pointer)

    def walk(self, base_pointer: int) -> List[int]:
        self.last_round_trips = 0
        return walk(base_pointer, self._counting_reader, self.max_depth)


__all__ = ["DEFAULT_MAX_DEPTH", "FrameReader", "StackWalker", "channel_frame_reader", "walk"]
