"""Parsers for `info registers` and `x /2g` monitor output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from .errors import ParseError

U64_MASK = 0xFFFFFFFFFFFFFFFF

# `x /2g` prints "%016x: 0x%016x 0x%016x"; both quadwords sit at fixed offsets.
SAVED_BP_FIELD = slice(0x14, 0x24)
RETURN_ADDR_FIELD = slice(0x27, 0x37)
FRAME_TEXT_MIN = RETURN_ADDR_FIELD.stop

_HEX_FIELD = re.compile(r"[0-9a-fA-F]{16}")
_REGISTER_RE = {
    "RBP": re.compile(r"RBP=([0-9a-fA-F]+)"),
    "RIP": re.compile(r"RIP=([0-9a-fA-F]+)"),
}


@dataclass(frozen=True)
class RegisterSnapshot:
    instruction_pointer: int
    base_pointer: int


@dataclass(frozen=True)
class Frame:
    """Contents of one saved frame: [saved rbp, return address]."""

    return_address: int
    saved_base_pointer: int


def _register_value(text: str, name: str) -> int:
    match = _REGISTER_RE[name].search(text)
    if not match:
        raise ParseError(f"register {name} not found in monitor output")
    return int(match.group(1), 16) & U64_MASK


def parse_registers(text: str) -> RegisterSnapshot:
    """Extract RIP and RBP from free-form `info registers` text."""
    if not isinstance(text, str):
        raise ParseError(f"expected register text, got {type(text).__name__}")
    return RegisterSnapshot(
        instruction_pointer=_register_value(text, "RIP"),
        base_pointer=_register_value(text, "RBP"),
    )


def _hex_field(text: str, field: slice, label: str) -> int:
    raw = text[field]
    if not _HEX_FIELD.fullmatch(raw):
        raise ParseError(f"invalid {label} field {raw!r} in memory dump")
    return int(raw, 16)


def parse_frame(data: Union[str, bytes]) -> Frame:
    if isinstance(data, (bytes, bytearray)):
        try:
            text = bytes(data).decode("ascii")
        except UnicodeDecodeError as exc:
            raise ParseError(f"memory dump is not ASCII: {exc}") from exc
    else:
        text = data
    if len(text) < FRAME_TEXT_MIN:
        raise ParseError(f"memory dump too short ({len(text)} < {FRAME_TEXT_MIN}): {text!r}")
    return Frame(
        return_address=_hex_field(text, RETURN_ADDR_FIELD, "return address"),
        saved_base_pointer=_hex_field(text, SAVED_BP_FIELD, "saved base pointer"),
    )


__all__ = [
    "Frame",
    "RegisterSnapshot",
    "parse_frame",
    "parse_registers",
]
