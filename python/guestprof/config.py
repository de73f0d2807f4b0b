"""Profiler configuration assembled from the command line."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .errors import ConfigError
from .folding import RecursionPattern, load_patterns
from .scheduler import SamplerConfig
from .transport import ChannelConfig
from .unwind import DEFAULT_MAX_DEPTH


def parse_address(value: str) -> int:
    """Parse a decimal or 0x-prefixed address (argparse type)."""
    text = str(value).strip().replace("_", "")
    try:
        number = int(text, 0)
    except ValueError:
        raise ConfigError(f"invalid address {value!r}") from None
    if number < 0:
        raise ConfigError(f"address must be non-negative, got {value!r}")
    return number


@dataclass
class ProfilerConfig:
    socket_path: str
    frequency: float
    executable: Optional[Path]
    load_offset: Optional[int]
    max_depth: int = DEFAULT_MAX_DEPTH
    patterns_path: Optional[Path] = None
    include_ip: bool = False
    on_error: str = "abort"
    duration: Optional[float] = None
    max_samples: Optional[int] = None
    output: Optional[Path] = None
    summary: int = 0
    addr2line: str = "addr2line"
    patterns: List[RecursionPattern] = field(default_factory=list)

    def validate(self) -> None:
        self.sampler_config().validate()
        if self.executable is None:
            raise ConfigError("guest executable path is required")
        if not self.executable.is_file():
            raise ConfigError(f"executable not found: {self.executable}")
        if self.load_offset is None:
            raise ConfigError("load offset is required")
        if self.load_offset < 0:
            raise ConfigError(f"load offset must be non-negative, got {self.load_offset:#x}")
        if not self.socket_path:
            raise ConfigError("QMP socket path is required")
        if self.summary < 0:
            raise ConfigError(f"summary size must be >= 0, got {self.summary}")

    def load(self) -> "ProfilerConfig":
        """Validate and read the recursion-pattern file, if any."""
        self.validate()
        if self.patterns_path is not None:
            self.patterns = load_patterns(self.patterns_path)
        return self

    def channel_config(self) -> ChannelConfig:
        return ChannelConfig(socket_path=self.socket_path)

    def sampler_config(self) -> SamplerConfig:
        return SamplerConfig(
            frequency=self.frequency,
            max_depth=self.max_depth,
            include_ip=self.include_ip,
            max_samples=self.max_samples,
            duration=self.duration,
            error_policy=self.on_error,
        )
