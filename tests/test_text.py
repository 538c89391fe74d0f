from __future__ import annotations

from pathlib import Path

import pytest

from src.io.charsets import BCD1401, BURROUGHS_B5500, FLEXOWRITER, SDS_INTERNAL, SDS_MAGTAPE, char_for, ebcdic_text
from src.io.labels import parse_label, process_label
from src.io.sinks import BlockWriter
from src.io.textfile import TextDump, TextFormat, format_record, record_flag


def _ebcdic(text: str) -> bytes:
    return text.ljust(80).encode("cp037")


def _hdr1(kind: str = "HDR1", dsid: str = "PAYROLL.DATA") -> bytes:
    return _ebcdic(kind + dsid.ljust(17) + "V00042" + "0001" + "0003" + "0001" + "00"
                   + " 72065" + " 72365" + "0" + "000123" + "IBM OS/360")


def test_character_tables() -> None:
    for table in (BCD1401, BURROUGHS_B5500, SDS_INTERNAL, SDS_MAGTAPE, FLEXOWRITER):
        assert len(table) == 64
    assert char_for(0x41, "ASCII") == "A"
    assert char_for(0x0D, "ASCII") == " "
    assert char_for(0xC1, "EBCDIC") == "A"
    assert char_for(0xF7, "EBCDIC") == "7"
    assert char_for(0x21, "sixbit") == "A"
    assert char_for(0x31, "BCD") == "A"
    assert char_for(0x11, "B5500") == "A"
    # only the low six bits index the six-bit tables
    assert char_for(0xC1, "BCD") == char_for(0x01, "BCD") == "1"
    assert ebcdic_text(bytes([0xC8, 0xC5, 0xD3, 0xD3, 0xD6])) == "HELLO"


def test_format_record_characters_only() -> None:
    assert format_record(b"HI\x00", TextFormat(chartype="ASCII")) == "    3: HI \n"


def test_format_record_hex_and_characters_wraps_lines() -> None:
    fmt = TextFormat("hex", "ASCII", linesize=4)

    text = format_record(b"ABCDEF", fmt)

    assert text.splitlines() == [
        "    6: 41424344  ABCD",
        "       4546      EF",
    ]


def test_format_record_octal_pairs() -> None:
    fmt = TextFormat("octal2", dataspace=2)
    assert format_record(b"\x01\x02\x03", fmt, "!") == "!   3: 000402 003\n"


def test_format_record_linefeed() -> None:
    fmt = TextFormat(chartype="ASCII", linefeed=True)
    assert format_record(b"AB\nCD", fmt) == "    5: AB\n        CD\n"


def test_text_format_names() -> None:
    assert TextFormat("hex", "EBCDIC").filename("t") == "t.hex.EBCDIC.txt"
    assert TextFormat(chartype="BCD").filename("t") == "t.BCD.txt"
    assert TextFormat("octal").bytes_per_line == 64
    assert TextFormat("hex", "ASCII").describe() == "-hex -ASCII -linesize=32"
    with pytest.raises(ValueError):
        TextFormat("decimal")


@pytest.mark.parametrize(
    ("errors", "warnings", "flag"),
    [(0, 0, " "), (1, 0, "!"), (0, 2, "?"), (3, 1, "X")],
)
def test_record_flag(errors: int, warnings: int, flag: str) -> None:
    assert record_flag(errors, warnings) == flag


def test_text_dump_summary(tmp_path: Path) -> None:
    dump = TextDump(str(tmp_path / "t"), TextFormat(chartype="ASCII"), quiet=True)
    dump.record(b"good")
    dump.record(b"bad", errcount=1)
    dump.tapemark()
    dump.close()

    text = (tmp_path / "t.ASCII.txt").read_text(encoding="utf-8")
    assert text.startswith(f"file: {tmp_path / 't.ASCII.txt'}\noptions: -ASCII -linesize=64\n")
    assert "!   3: bad" in text
    assert "there were 2 data blocks with 7 bytes, and 1 tapemarks" in text
    assert "1 block(s) with errors were marked with a !" in text
    assert "no block had warnings" in text


def test_unused_text_dump_writes_nothing(tmp_path: Path) -> None:
    dump = TextDump(str(tmp_path / "t"), TextFormat("hex"), quiet=True)
    dump.close()
    assert not dump.path.exists()


def test_parse_labels() -> None:
    vol1 = parse_label(_ebcdic("VOL1V00042" + " " * 31 + "SMITH"))
    assert vol1.kind == "VOL1"
    assert vol1.fields == {"serno": "V00042", "owner": "SMITH"}

    hdr1 = parse_label(_hdr1())
    assert hdr1.kind == "HDR1"
    assert hdr1.fields["dsid"] == "PAYROLL.DATA"
    assert hdr1.fields["serno"] == "V00042"
    assert hdr1.fields["dsseqno"] == "0003"
    assert hdr1.fields["blkcnt"] == "000123"

    hdr2 = parse_label(_ebcdic("HDR2F0080000080"))
    assert (hdr2.kind, hdr2.fields["recfm"], hdr2.fields["blklen"], hdr2.fields["reclen"]) == ("HDR2", "F", "00800", "00080")


def test_non_labels_are_left_alone(tmp_path: Path) -> None:
    writer = BlockWriter(str(tmp_path / "t"), quiet=True)
    assert parse_label(_ebcdic("HDR1")[:79]) is None
    assert parse_label(_ebcdic("DATA RECORD")) is None
    assert not process_label(_ebcdic("DATA RECORD"), 0, writer, 0.0, quiet=True)
    assert writer.created == []


def test_hdr1_label_names_the_output_file(tmp_path: Path) -> None:
    writer = BlockWriter(str(tmp_path / "t"), quiet=True)

    assert process_label(_hdr1(), 0, writer, 1.0, quiet=True)
    # the tapemark after the header label keeps the file open
    writer.tapemark(1.1)
    writer.write_block(b"payroll", False, 1.2)
    writer.tapemark(1.3)
    assert process_label(_hdr1("EOF1"), 0, writer, 1.4, quiet=True)
    writer.finish(1.5)

    assert writer.created == [tmp_path / "t-001-PAYROLL.DATA.bin"]
    assert (tmp_path / "t-001-PAYROLL.DATA.bin").read_bytes() == b"payroll"


def test_hdr1_label_with_tap_output_keeps_one_file(tmp_path: Path) -> None:
    writer = BlockWriter(str(tmp_path / "t"), tap_format=True, quiet=True)
    assert process_label(_hdr1(), 0, writer, 0.0, quiet=True)
    assert writer.created == []
    assert writer.hdr1_label
