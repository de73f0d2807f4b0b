"""
guestprof - sampling stack profiler for QEMU guests.

The profiler runs entirely outside the guest. Each sample pauses the VM over
QMP, reads RIP/RBP with `info registers`, follows saved frame pointers with
`x /2g`, resumes the VM and resolves the addresses against the guest
executable. Stacks are folded and counted for flame-graph tools:

    transport.py  → QMP socket, negotiation, monitor commands
    registers.py  → register and memory-dump parsing
    unwind.py     → frame-pointer stack walking
    symbols.py    → addr2line adapter and per-address symbol cache
    folding.py    → recursion-pattern collapsing
    aggregate.py  → collapsed-stack counting
    scheduler.py  → fixed-rate sampling loop
    output.py     → folded-stack text and summary tables
"""

from .aggregate import SampleTable  # noqa: F401
from .errors import (  # noqa: F401
    CommandError,
    ConfigError,
    ParseError,
    ProfilerError,
    StackDepthError,
    SymbolError,
    TransportError,
)
from .folding import RecursionPattern, StackFolder, collapse, load_patterns  # noqa: F401
from .output import format_folded, summarise, write_folded  # noqa: F401
from .policy import AbortPolicy, SkipPolicy, make_policy  # noqa: F401
from .registers import Frame, RegisterSnapshot, parse_frame, parse_registers  # noqa: F401
from .scheduler import Sampler, SamplerConfig, SamplerState, SamplerStats  # noqa: F401
from .symbols import Addr2LineResolver, StaticResolver, SymbolTable  # noqa: F401
from .transport import ChannelConfig, QMPChannel  # noqa: F401
from .unwind import StackWalker, walk  # noqa: F401

__all__ = [
    "AbortPolicy",
    "Addr2LineResolver",
    "ChannelConfig",
    "CommandError",
    "ConfigError",
    "Frame",
    "ParseError",
    "ProfilerError",
    "QMPChannel",
    "RecursionPattern",
    "RegisterSnapshot",
    "SampleTable",
    "Sampler",
    "SamplerConfig",
    "SamplerState",
    "SamplerStats",
    "SkipPolicy",
    "StackDepthError",
    "StackFolder",
    "StackWalker",
    "StaticResolver",
    "SymbolError",
    "SymbolTable",
    "TransportError",
    "collapse",
    "format_folded",
    "load_patterns",
    "make_policy",
    "parse_frame",
    "parse_registers",
    "summarise",
    "walk",
    "write_folded",
]

__version__ = "0.1.0"
