"""Address-to-name resolution for guest executables."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Set

from .errors import ConfigError, SymbolError

logger = logging.getLogger(__name__)

UNKNOWN_SYMBOL = "???"

# Queried after every real address so the variable-length inline output can be delimited.
_SENTINEL = 0


class SymbolResolver(Protocol):
    def resolve(self, file_address: int) -> List[str]:
        """Return names for *file_address*, outermost first."""
        ...


class StaticResolver:
    """Resolver backed by an in-memory address table."""

    def __init__(self, mapping: Mapping[int, Sequence[str] | str]) -> None:
        self._mapping: Dict[int, List[str]] = {}
        for addr, names in mapping.items():
            self._mapping[int(addr)] = [names] if isinstance(names, str) else list(names)

    def resolve(self, file_address: int) -> List[str]:
        return list(self._mapping.get(file_address, []))


class Addr2LineResolver:
    """Persistent `addr2line` process (binutils) answering one address at a time.

    `-i` expands inline chains and `-C` demangles. addr2line reports inline
    frames innermost first; results are reversed to outer-to-inner.
    """

    def __init__(self, executable: str | Path, *, tool: str = "addr2line") -> None:
        self.executable = Path(executable)
        if not self.executable.is_file():
            raise ConfigError(f"executable not found: {self.executable}")
        tool_path = shutil.which(tool)
        if tool_path is None:
            raise SymbolError(f"{tool} not found on PATH")
        self._proc: Optional[subprocess.Popen] = subprocess.Popen(
            [tool_path, "-a", "-f", "-i", "-C", "-e", str(self.executable)],
            encoding="ascii",
            errors="replace",
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )

    def resolve(self, file_address: int) -> List[str]:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.stdout is None:
            raise SymbolError("addr2line process closed")
        try:
            proc.stdin.write(f"{file_address:#x}\n{_SENTINEL:#x}\n")
            proc.stdin.flush()
            lines = self._read_block(proc)
        except (OSError, ValueError) as exc:
            raise SymbolError(f"addr2line failed for {file_address:#x}: {exc}") from exc
        # lines alternate function name / file:line, innermost first
        names = [name for name in lines[0::2] if name and name != "??"]
        names.reverse()
        return names

    def _read_block(self, proc: subprocess.Popen) -> List[str]:
        echo = self._readline(proc)
        if not echo.startswith("0x"):
            raise SymbolError(f"unexpected addr2line output: {echo!r}")
        lines: List[str] = []
        while True:
            line = self._readline(proc)
            if line.startswith("0x") and _parse_echo(line) == _SENTINEL:
                break
            lines.append(line)
        # sentinel answer: one function line and one location line
        self._readline(proc)
        self._readline(proc)
        return lines

    @staticmethod
    def _readline(proc: subprocess.Popen) -> str:
        line = proc.stdout.readline()
        if not line:
            raise SymbolError("addr2line exited unexpectedly")
        return line.rstrip("\n")

    def close(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None:
            return
        try:
            if proc.stdin:
                proc.stdin.close()
        except OSError:
            pass
        try:
            proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()


def _parse_echo(line: str) -> Optional[int]:
    try:
        return int(line, 16)
    except ValueError:
        return None


class SymbolTable:
    """Translates runtime addresses and memoises resolver answers per address."""

    def __init__(self, resolver: SymbolResolver, load_offset: int = 0) -> None:
        if load_offset < 0:
            raise ConfigError(f"load offset must be non-negative, got {load_offset:#x}")
        self.resolver = resolver
        self.load_offset = load_offset
        self._cache: Dict[int, List[str]] = {}
        self._warned: Set[int] = set()
        self.hits = 0
        self.misses = 0
        self.failures = 0

    def names_for(self, runtime_address: int) -> List[str]:
        cached = self._cache.get(runtime_address)
        if cached is not None:
            self.hits += 1
            return list(cached)
        self.misses += 1
        names = self._lookup(runtime_address)
        self._cache[runtime_address] = names
        return list(names)

    def names_for_stack(self, stack: Sequence[int]) -> List[str]:
        """Resolve an innermost-first raw stack into outer-to-inner names."""
        names: List[str] = []
        for address in reversed(stack):
            names.extend(self.names_for(address))
        return names

    def _lookup(self, runtime_address: int) -> List[str]:
        file_address = runtime_address - self.load_offset
        if file_address < 0:
            self._fail(runtime_address, f"address {runtime_address:#x} below load offset {self.load_offset:#x}")
            return [UNKNOWN_SYMBOL]
        try:
            names = self.resolver.resolve(file_address)
        except SymbolError as exc:
            self._fail(runtime_address, str(exc))
            return [UNKNOWN_SYMBOL]
        if not names:
            return [UNKNOWN_SYMBOL]
        return list(names)

    def _fail(self, runtime_address: int, message: str) -> None:
        self.failures += 1
        if runtime_address in self._warned:
            return
        self._warned.add(runtime_address)
        logger.warning("symbol lookup failed: %s", message)


__all__ = [
    "Addr2LineResolver",
    "StaticResolver",
    "SymbolResolver",
    "SymbolTable",
    "UNKNOWN_SYMBOL",
]
