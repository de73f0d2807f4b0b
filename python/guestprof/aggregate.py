"""Collapsed-stack sample counting."""

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Tuple

from .errors import ProfilerError


class SampleTable:
    """Occurrence counts per collapsed-stack signature. Drained exactly once."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._drained = False

    def record(self, signature: str) -> int:
        if self._drained:
            raise ProfilerError("sample table already drained")
        self._counts[signature] += 1
        return self._counts[signature]

    def drain(self) -> List[Tuple[str, int]]:
        if self._drained:
            raise ProfilerError("sample table already drained")
        self._drained = True
        entries = list(self._counts.items())
        self._counts = Counter()
        return entries

    @property
    def drained(self) -> bool:
        return self._drained

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def count(self, signature: str) -> int:
        return self._counts.get(signature, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)

    def __len__(self) -> int:
        return len(self._counts)

    def __contains__(self, signature: object) -> bool:
        return signature in self._counts
