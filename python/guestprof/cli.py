"""guestprof command-line entry point."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from .aggregate import SampleTable
from .config import ProfilerConfig, parse_address
from .errors import ConfigError, ForcedShutdown, ProfilerError, SymbolError
from .folding import StackFolder
from .output import summarise, write_folded
from .policy import POLICIES, ErrorPolicy, make_policy
from .scheduler import Sampler
from .symbols import Addr2LineResolver, SymbolResolver, SymbolTable
from .transport import QMPChannel
from .unwind import DEFAULT_MAX_DEPTH

LOG = logging.getLogger("guestprof.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _address_arg(value: str) -> int:
    try:
        return parse_address(value)
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="guestprof",
        description="Sampling stack profiler for a QEMU guest, driven over QMP",
    )
    parser.add_argument("-s", "--socket", required=True, help="Path to the QMP socket")
    parser.add_argument(
        "-f",
        "--frequency",
        type=float,
        required=True,
        help="Sampling frequency (Hz); each sample takes roughly 1ms, so rates near 1000Hz are not accurate",
    )
    parser.add_argument("-e", "--executable", type=Path, required=True, help="Path to the guest executable")
    parser.add_argument(
        "-o",
        "--offset",
        type=_address_arg,
        required=True,
        help="Executable base address / load offset (decimal or 0x hex)",
    )
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum frames per stack")
    parser.add_argument("--patterns", type=Path, help="JSON file with recursion patterns to fold")
    parser.add_argument(
        "--include-ip",
        action="store_true",
        help="Record the sampled instruction pointer as the innermost frame",
    )
    parser.add_argument(
        "--on-error",
        choices=sorted(POLICIES),
        default="abort",
        help="Per-sample error policy (default abort)",
    )
    parser.add_argument("--duration", type=float, help="Stop after this many seconds")
    parser.add_argument("--samples", type=int, help="Stop after this many ticks")
    parser.add_argument("--output", type=Path, help="Write folded stacks here instead of stdout")
    parser.add_argument("--summary", type=int, default=0, metavar="N", help="Print the N hottest functions to stderr")
    parser.add_argument("--addr2line", default="addr2line", help="addr2line binary used for symbolisation")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("GUESTPROF_LOG", "INFO"),
        help="Logging level (default INFO)",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> ProfilerConfig:
    return ProfilerConfig(
        socket_path=args.socket,
        frequency=args.frequency,
        executable=args.executable,
        load_offset=args.offset,
        max_depth=args.max_depth,
        patterns_path=args.patterns,
        include_ip=args.include_ip,
        on_error=args.on_error,
        duration=args.duration,
        max_samples=args.samples,
        output=args.output,
        summary=args.summary,
        addr2line=args.addr2line,
    )


def _install_signal_handlers(sampler: Sampler) -> Dict[int, Any]:
    """First SIGINT/SIGTERM stops after the current tick; the second one
    abandons it, for when the monitor has stopped answering."""
    received: List[int] = []

    def handler(signum: int, frame: Any) -> None:
        received.append(signum)
        if len(received) > 1:
            raise ForcedShutdown(signum)
        sampler.signal_shutdown()

    previous: Dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    return previous


def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _emit(config: ProfilerConfig, entries: List, stream: Optional[TextIO]) -> None:
    if stream is not None:
        write_folded(entries, stream)
    elif config.output is not None:
        with config.output.open("w", encoding="utf-8") as fh:
            count = write_folded(entries, fh)
        LOG.info("wrote %d stacks to %s", count, config.output)
    else:
        write_folded(entries, sys.stdout)
    if config.summary:
        print(summarise(entries, config.summary), file=sys.stderr)


def run_profiler(
    config: ProfilerConfig,
    *,
    channel: QMPChannel,
    resolver: SymbolResolver,
    policy: Optional[ErrorPolicy] = None,
    stream: Optional[TextIO] = None,
    install_signals: bool = True,
) -> int:
    """Sample until shutdown, then print every collected stack.

    Returns 0 after a deliberate shutdown or a configured limit, 1 when a
    tick failed fatally (samples gathered before the failure are still
    printed). A forced shutdown (second signal) also returns 0.
    """
    symbols = SymbolTable(resolver, config.load_offset or 0)
    sampler = Sampler(
        channel,
        symbols,
        StackFolder(config.patterns),
        config.sampler_config(),
        policy=policy,
    )
    table = SampleTable()
    previous = _install_signal_handlers(sampler) if install_signals else {}
    status = 0
    try:
        sampler.run(table)
    except ForcedShutdown as exc:
        LOG.warning("%s during a tick; the guest may be left paused", exc)
    except ProfilerError as exc:
        LOG.error("sampling aborted: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        status = 1
    finally:
        _restore_signal_handlers(previous)
    if sampler.shutdown_requested:
        print("exiting!", file=sys.stderr)
    stats = sampler.stats
    LOG.info(
        "%d ticks, %d recorded, %d skipped, %d missed deadlines, avg %.0fus, max depth %d, %d round trips",
        stats.ticks,
        stats.recorded,
        stats.skipped,
        stats.missed_deadlines,
        stats.avg_tick_us,
        stats.max_depth_seen,
        channel.round_trips,
    )
    entries = sampler.drain(table)
    _emit(config, entries, stream)
    return status


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    config = config_from_args(args)
    try:
        config.load()
        policy = make_policy(config.on_error)
        resolver = Addr2LineResolver(config.executable, tool=config.addr2line)
    except (ConfigError, SymbolError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    try:
        with QMPChannel(config.channel_config()) as channel:
            return run_profiler(config, channel=channel, resolver=resolver, policy=policy)
    except KeyboardInterrupt:
        print("error: interrupted", file=sys.stderr)
        return 130
    except ProfilerError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:  # pragma: no cover - unexpected failure
        LOG.exception("profiler failed")
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        resolver.close()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
