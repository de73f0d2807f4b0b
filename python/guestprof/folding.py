"""
Recursion folding for resolved stacks.

Interpreter and compiler call chains recurse through the same few functions
(a driver calling block and statement translators that call the driver
again). Left alone, each sample turns into thousands of near-identical
frames. A recursion pattern names one period of such a cycle; every run of
the cycle inside a stack is folded down to a single period.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .errors import ConfigError

EMPTY_STACK = "[unknown]"


@dataclass(frozen=True)
class RecursionPattern:
    name: str
    functions: Tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.functions:
            raise ConfigError(f"recursion pattern {self.name!r} has no functions")
        object.__setattr__(self, "functions", tuple(self.functions))

    def __len__(self) -> int:
        return len(self.functions)


def _pattern_from_entry(entry: Any, index: int) -> RecursionPattern:
    if not isinstance(entry, dict):
        raise ConfigError(f"recursion pattern #{index} must be an object, got {type(entry).__name__}")
    name = entry.get("name") or f"pattern{index}"
    functions = entry.get("functions")
    if not isinstance(functions, list) or not all(isinstance(fn, str) and fn for fn in functions):
        raise ConfigError(f"recursion pattern {name!r} needs a non-empty list of function names")
    return RecursionPattern(name=str(name), functions=tuple(functions))


def parse_patterns(data: Any) -> List[RecursionPattern]:
    entries = data.get("recursion_patterns") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ConfigError("recursion pattern config must be a list or contain 'recursion_patterns'")
    return [_pattern_from_entry(entry, idx) for idx, entry in enumerate(entries)]


def load_patterns(path: str | Path) -> List[RecursionPattern]:
    """Load an ordered list of recursion patterns from a JSON file."""
    source = Path(path)
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"cannot read recursion patterns from {source}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in {source}: {exc}") from exc
    return parse_patterns(data)


def _run_length(names: Sequence[str], start: int, pattern: RecursionPattern) -> int:
    period = pattern.functions
    length = 0
    while start + length < len(names) and names[start + length] == period[length % len(period)]:
        length += 1
    return length


def _longest_run(
    names: Sequence[str], start: int, patterns: Sequence[RecursionPattern]
) -> Tuple[Optional[RecursionPattern], int]:
    best: Optional[RecursionPattern] = None
    best_len = 0
    for pattern in patterns:
        if pattern.functions[0] != names[start]:
            continue
        run = _run_length(names, start, pattern)
        if run > best_len:
            best, best_len = pattern, run
    return best, best_len


def collapse(names: Sequence[str], patterns: Iterable[RecursionPattern]) -> List[str]:
    """Fold every run of a recursion pattern down to one period.

    A run that stops partway through a later period keeps that partial
    period, so the innermost frames of the stack are never lost.
    """
    patterns = list(patterns)
    if not patterns:
        return list(names)
    out: List[str] = []
    i = 0
    while i < len(names):
        pattern, run = _longest_run(names, i, patterns)
        if pattern is None:
            out.append(names[i])
            i += 1
            continue
        period = len(pattern)
        out.extend(names[i : i + min(run, period)])
        tail = run % period
        if run > period and tail:
            out.extend(names[i + run - tail : i + run])
        i += run
    return out


class StackFolder:
    """Applies configured recursion patterns and builds aggregation keys."""

    def __init__(self, patterns: Optional[Iterable[RecursionPattern]] = None) -> None:
        self.patterns: List[RecursionPattern] = list(patterns or [])

    def fold(self, names: Sequence[str]) -> List[str]:
        return collapse(names, self.patterns)

    def signature(self, names: Sequence[str]) -> str:
        folded = self.fold(names)
        if not folded:
            return EMPTY_STACK
        return ";".join(folded)


__all__ = [
    "EMPTY_STACK",
    "RecursionPattern",
    "StackFolder",
    "collapse",
    "load_patterns",
    "parse_patterns",
]
