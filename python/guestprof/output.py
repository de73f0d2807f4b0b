"""Folded-stack output and summary tables."""

from __future__ import annotations

from collections import Counter
from typing import Iterable, List, Sequence, TextIO, Tuple

from tabulate import tabulate

Entry = Tuple[str, int]


def format_folded(entries: Iterable[Entry]) -> List[str]:
    """Render `<names;joined> <count>` lines in signature order."""
    return [f"{signature} {count}" for signature, count in sorted(entries)]


def write_folded(entries: Iterable[Entry], stream: TextIO) -> int:
    lines = format_folded(entries)
    for line in lines:
        stream.write(line + "\n")
    stream.flush()
    return len(lines)


def leaf_counts(entries: Iterable[Entry]) -> Counter:
    counts: Counter = Counter()
    for signature, count in entries:
        counts[signature.rsplit(";", 1)[-1]] += count
    return counts


def summarise(entries: Sequence[Entry], limit: int = 10) -> str:
    """Table of the hottest innermost functions."""
    total = sum(count for _, count in entries)
    rows = []
    for name, count in leaf_counts(entries).most_common(limit):
        share = (count / total * 100.0) if total else 0.0
        rows.append([name, count, f"{share:.1f}%"])
    return tabulate(rows, headers=["function", "samples", "share"], tablefmt="github")


__all__ = ["format_folded", "leaf_counts", "summarise", "write_folded"]
