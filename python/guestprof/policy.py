"""Per-sample error policies for the sampling loop."""

from __future__ import annotations

import logging
from typing import Dict, Type

from .errors import ConfigError, ProfilerError

logger = logging.getLogger(__name__)


class ErrorPolicy:
    """Decides whether a failed tick is skipped or ends the run."""

    name = "base"

    def should_skip(self, exc: ProfilerError) -> bool:
        raise NotImplementedError

    def on_success(self) -> None:
        pass


class AbortPolicy(ErrorPolicy):
    """Any failed tick is fatal."""

    name = "abort"

    def should_skip(self, exc: ProfilerError) -> bool:
        return False


class SkipPolicy(ErrorPolicy):
    """Skips recoverable failures; fatal ones and long failure streaks abort."""

    name = "skip"

    def __init__(self, max_consecutive: int = 100) -> None:
        if max_consecutive < 1:
            raise ConfigError(f"max consecutive failures must be >= 1, got {max_consecutive}")
        self.max_consecutive = max_consecutive
        self.consecutive = 0

    def should_skip(self, exc: ProfilerError) -> bool:
        if not exc.recoverable:
            return False
        self.consecutive += 1
        if self.consecutive > self.max_consecutive:
            logger.error("giving up after %d consecutive failed samples", self.consecutive)
            return False
        return True

    def on_success(self) -> None:
        self.consecutive = 0


POLICIES: Dict[str, Type[ErrorPolicy]] = {
    AbortPolicy.name: AbortPolicy,
    SkipPolicy.name: SkipPolicy,
}


def make_policy(name: str) -> ErrorPolicy:
    try:
        return POLICIES[name]()
    except KeyError:
        raise ConfigError(f"unknown error policy {name!r} (choose from {', '.join(sorted(POLICIES))})") from None


__all__ = ["AbortPolicy", "ErrorPolicy", "POLICIES", "SkipPolicy", "make_policy"]
