"""
Sampling loop.

One tick pauses the guest, reads registers, walks the frame chain and
resumes the guest before resolving names. Ticks run on a fixed grid
(start + n * period) so time spent inside a tick never accumulates drift.
Shutdown requests are honoured only between ticks: a pause/resume bracket
always completes before the loop moves to DRAINING. The one exception is
ForcedShutdown, raised from a second signal while a tick is blocked on the
monitor; the channel is then in an unknown state and is not resumed.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .aggregate import SampleTable
from .errors import ConfigError, ForcedShutdown, ProfilerError
from .folding import StackFolder
from .policy import POLICIES, ErrorPolicy, make_policy
from .registers import parse_registers
from .symbols import SymbolTable
from .transport import QMPChannel
from .unwind import DEFAULT_MAX_DEPTH, FrameReader, StackWalker, channel_frame_reader

logger = logging.getLogger(__name__)

# Longest sleep between checks of the signal-handler flag.
POLL_INTERVAL = 0.05


class SamplerState(enum.Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    DRAINING = "draining"
    DONE = "done"


@dataclass
class SamplerConfig:
    frequency: float = 100.0
    max_depth: int = DEFAULT_MAX_DEPTH
    include_ip: bool = False
    max_samples: Optional[int] = None
    duration: Optional[float] = None
    error_policy: str = "abort"

    def validate(self) -> None:
        if self.error_policy not in POLICIES:
            raise ConfigError(
                f"unknown error policy {self.error_policy!r} (expected one of {', '.join(sorted(POLICIES))})"
            )
        if not isinstance(self.frequency, (int, float)) or not math.isfinite(self.frequency) or self.frequency <= 0:
            raise ConfigError(f"sampling frequency must be > 0 Hz, got {self.frequency!r}")
        if self.max_depth < 1:
            raise ConfigError(f"max depth must be >= 1, got {self.max_depth}")
        if self.max_samples is not None and self.max_samples < 1:
            raise ConfigError(f"sample limit must be >= 1, got {self.max_samples}")
        if self.duration is not None and self.duration <= 0:
            raise ConfigError(f"duration must be > 0 seconds, got {self.duration}")

    @property
    def period(self) -> float:
        return 1.0 / self.frequency


@dataclass
class SamplerStats:
    ticks: int = 0
    recorded: int = 0
    skipped: int = 0
    missed_deadlines: int = 0
    total_tick_us: int = 0
    max_tick_us: int = 0
    max_depth_seen: int = 0

    @property
    def avg_tick_us(self) -> float:
        if not self.recorded:
            return 0.0
        return self.total_tick_us / self.recorded


@dataclass
class TickResult:
    signature: str
    stack: List[int] = field(default_factory=list)
    elapsed_us: int = 0

    @property
    def depth(self) -> int:
        return len(self.stack)


class Sampler:
    """Drives the pause -> sample -> resume cycle at a fixed rate."""

    def __init__(
        self,
        channel: QMPChannel,
        symbols: SymbolTable,
        folder: Optional[StackFolder] = None,
        config: Optional[SamplerConfig] = None,
        *,
        policy: Optional[ErrorPolicy] = None,
        read_frame: Optional[FrameReader] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.symbols = symbols
        self.folder = folder or StackFolder()
        self.config = config or SamplerConfig()
        self.policy = policy or make_policy(self.config.error_policy)
        self.walker = StackWalker(read_frame or channel_frame_reader(channel), max_depth=self.config.max_depth)
        self.state = SamplerState.IDLE
        self.stats = SamplerStats()
        self._clock = clock
        self._shutdown = threading.Event()
        self._shutdown_flag = False

    def request_shutdown(self) -> None:
        """Ask the loop to stop after the current tick. Call from another thread."""
        self._shutdown_flag = True
        self._shutdown.set()

    def signal_shutdown(self) -> None:
        """Signal-handler variant of request_shutdown.

        Only sets a flag. Event.set() takes the event's lock, which the main
        thread may already hold inside Event.wait() when the signal lands.
        """
        self._shutdown_flag = True

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_flag or self._shutdown.is_set()

    # ------------------------------------------------------------------
    # One sample
    # ------------------------------------------------------------------
    def tick(self) -> TickResult:
        start = self._clock()
        stack = self._sample_stack()
        names = self.symbols.names_for_stack(stack)
        signature = self.folder.signature(names)
        elapsed_us = int((self._clock() - start) * 1_000_000)
        logger.debug("depth: %d, %dus", len(stack), elapsed_us)
        return TickResult(signature=signature, stack=stack, elapsed_us=elapsed_us)

    def _sample_stack(self) -> List[int]:
        self.channel.stop()
        try:
            registers = parse_registers(self.channel.info_registers())
            stack = self.walker.walk(registers.base_pointer)
        except ForcedShutdown:
            raise
        except BaseException:
            self.channel.cont()
            raise
        self.channel.cont()
        if self.config.include_ip:
            stack.insert(0, registers.instruction_pointer)
        return stack

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    def run(self, table: Optional[SampleTable] = None) -> SampleTable:
        """Sample until shutdown or a configured limit; returns the table it filled.

        The table is owned by the caller, so samples recorded before a fatal
        error remain available after the exception propagates.
        """
        self.config.validate()
        if table is None:
            table = SampleTable()
        period = self.config.period
        self.state = SamplerState.SAMPLING
        start = self._clock()
        index = 0
        logger.info("sampling at %.1f Hz (period %.3f ms)", self.config.frequency, period * 1000.0)
        try:
            while self._wait_until(start + index * period):
                self._run_tick(table)
                if self._limit_reached(start):
                    break
                index = self._next_index(start, index, period)
        finally:
            self.state = SamplerState.DRAINING
        if self.shutdown_requested:
            logger.info("shutdown requested; stopped after %d ticks", self.stats.ticks)
        return table

    def drain(self, table: SampleTable) -> List[Tuple[str, int]]:
        entries = table.drain()
        self.state = SamplerState.DONE
        return entries

    def _run_tick(self, table: SampleTable) -> None:
        self.stats.ticks += 1
        try:
            result = self.tick()
        except ProfilerError as exc:
            if not self.policy.should_skip(exc):
                raise
            self.stats.skipped += 1
            logger.warning("skipping sample %d: %s", self.stats.ticks, exc)
            return
        self.policy.on_success()
        table.record(result.signature)
        self.stats.recorded += 1
        self.stats.total_tick_us += result.elapsed_us
        self.stats.max_tick_us = max(self.stats.max_tick_us, result.elapsed_us)
        self.stats.max_depth_seen = max(self.stats.max_depth_seen, result.depth)

    def _wait_until(self, deadline: float) -> bool:
        """Block until *deadline*; False once shutdown has been requested."""
        while True:
            if self.shutdown_requested:
                return False
            remaining = deadline - self._clock()
            if remaining <= 0:
                return True
            if self._shutdown.wait(min(remaining, POLL_INTERVAL)):
                return False

    def _next_index(self, start: float, index: int, period: float) -> int:
        index += 1
        behind = self._clock() - (start + index * period)
        if behind >= period:
            missed = int(behind // period)
            self.stats.missed_deadlines += missed
            index += missed
        return index

    def _limit_reached(self, start: float) -> bool:
        if self.config.max_samples is not None and self.stats.ticks >= self.config.max_samples:
            return True
        if self.config.duration is not None and self._clock() - start >= self.config.duration:
            return True
        return False


__all__ = [
    "Sampler",
    "SamplerConfig",
    "SamplerState",
    "SamplerStats",
    "TickResult",
]
