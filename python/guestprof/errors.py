"""Exception hierarchy shared by the guestprof modules."""

from __future__ import annotations

from typing import List, Optional


class ProfilerError(RuntimeError):
    """Base class for profiler failures."""

    recoverable = False


class TransportError(ProfilerError):
    """Raised when the control channel cannot complete an operation."""


class CommandError(TransportError):
    """The QMP server rejected a command; the channel itself is still usable."""

    recoverable = True

    def __init__(self, command: str, error_class: str, desc: str) -> None:
        super().__init__(f"{command} failed: {error_class}: {desc}")
        self.command = command
        self.error_class = error_class
        self.desc = desc


class ParseError(ProfilerError):
    """Monitor output did not have the expected shape."""

    recoverable = True


class StackDepthError(ParseError):
    """Frame chain did not reach a zero base pointer within the depth bound."""

    def __init__(self, depth: int, partial: Optional[List[int]] = None) -> None:
        super().__init__(f"frame chain exceeds max depth {depth}")
        self.depth = depth
        self.partial = list(partial or [])


class SymbolError(ProfilerError):
    """Resolver failure or malformed debug information."""

    recoverable = True


class ConfigError(ProfilerError):
    """Invalid configuration detected before sampling starts."""


class ForcedShutdown(BaseException):
    """Second shutdown signal; abandons the in-flight tick.

    Derives from BaseException so error policies and `except Exception`
    blocks never absorb it.
    """

    def __init__(self, signum: int) -> None:
        super().__init__(f"forced shutdown by signal {signum}")
        self.signum = signum
