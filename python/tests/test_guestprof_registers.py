import pytest

from python.guestprof.errors import ParseError
from python.guestprof.registers import Frame, RegisterSnapshot, parse_frame, parse_registers
from python.tests.guest_stubs import memory_dump, register_dump


def test_parse_registers_from_qemu_dump():
    snapshot = parse_registers(register_dump(rip=0x55A11002000, rbp=0x7FFD1234))
    assert snapshot == RegisterSnapshot(instruction_pointer=0x55A11002000, base_pointer=0x7FFD1234)


def test_parse_registers_amid_unrelated_text():
    text = "noise RSP=1 ... RBP=7ffd1234 more noise RIP=55a11002000 trailing ..."
    snapshot = parse_registers(text)
    assert snapshot.base_pointer == 0x7FFD1234
    assert snapshot.instruction_pointer == 0x55A11002000


def test_parse_registers_accepts_uppercase_hex():
    snapshot = parse_registers("RIP=FFFFFFFF81000000 RBP=FFFFC90000003E58")
    assert snapshot.instruction_pointer == 0xFFFFFFFF81000000
    assert snapshot.base_pointer == 0xFFFFC90000003E58


@pytest.mark.parametrize(
    "text",
    [
        "RIP=0000000000401000 RSP=00007ffd00000f00",
        "RBP=00007ffd00000f00",
        "RBP= RIP=0000000000401000",
        "RBP=zz RIP=0000000000401000",
    ],
)
def test_parse_registers_rejects_missing_or_bad_markers(text):
    with pytest.raises(ParseError):
        parse_registers(text)


def test_parse_frame_reads_fixed_offsets():
    frame = parse_frame(memory_dump(0x7FFD1234, saved_bp=0x7FFD1260, return_address=0x55A11002000))
    assert frame == Frame(return_address=0x55A11002000, saved_base_pointer=0x7FFD1260)


def test_parse_frame_accepts_bytes():
    frame = parse_frame(memory_dump(0x1000, 0, 0x401136).encode("ascii"))
    assert frame.saved_base_pointer == 0
    assert frame.return_address == 0x401136


def test_parse_frame_rejects_short_response():
    with pytest.raises(ParseError):
        parse_frame("0000000000001000: 0x0000000000000000")


def test_parse_frame_rejects_non_hex_field():
    text = "0000000000001000: 0x00000000000000zz 0x0000000000401136\n"
    with pytest.raises(ParseError):
        parse_frame(text)


def test_parse_frame_rejects_error_text():
    with pytest.raises(ParseError):
        parse_frame("Cannot access memory at address 0xdeadbeef00000000\n")
