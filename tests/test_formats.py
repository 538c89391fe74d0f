from __future__ import annotations

import io
import struct
from datetime import datetime
from pathlib import Path

import numpy as np
import pytest

from src.decoder.config import Mode
from src.decoder.errors import TapFormatError, TbinFormatError
from src.dumptap import main as dumptap_main
from src.io.sinks import BlockWriter
from src.io.tapfile import iter_tap, read_tap
from src.io.tbin import (
    FLAG_INVERTED,
    FLAG_TRKORDER_INCLUDED,
    SAMPLE_MAX,
    TbinDat,
    TbinHeader,
    datetime_from_tm,
    end_marker,
    quantize,
    tm_from_datetime,
)


def test_tbin_header_round_trip() -> None:
    written = datetime(1972, 3, 5, 10, 20, 30)
    hdr = TbinHeader(descr="IBM 2401 drive", flags=FLAG_INVERTED, ntrks=9, tdelta_ns=1250, maxvolts=2.5,
                     mode=Mode.NRZI, bpi=800.0, ips=50.0, time_written=tm_from_datetime(written),
                     trkorder="P01234567")
    dat = TbinDat(tstart_ns=500_000)

    fp = io.BytesIO(hdr.pack() + dat.pack() + end_marker())
    got = TbinHeader.read(fp)
    got_dat = TbinDat.read(fp)

    assert got.descr == "IBM 2401 drive"
    assert got.flags == FLAG_INVERTED | FLAG_TRKORDER_INCLUDED
    assert (got.ntrks, got.tdelta_ns, got.mode) == (9, 1250, Mode.NRZI)
    assert got.maxvolts == pytest.approx(2.5)
    assert (got.bpi, got.ips) == (800.0, 50.0)
    assert got.trkorder == "P01234567"
    assert datetime_from_tm(got.time_written) == written
    assert datetime_from_tm(got.time_read) is None
    assert got_dat.tstart_ns == 500_000
    assert struct.unpack("<h", fp.read(2))[0] == -32768


def test_tbin_header_accepts_the_old_gcr_mode() -> None:
    hdr = TbinHeader(ntrks=9, tdelta_ns=100, maxvolts=1.0, mode=4)
    assert TbinHeader.read(io.BytesIO(hdr.pack())).mode == Mode.GCR


def test_tbin_header_errors() -> None:
    good = TbinHeader(ntrks=9, tdelta_ns=100, maxvolts=1.0).pack()
    with pytest.raises(TbinFormatError, match="TBINHDR"):
        TbinHeader.read(io.BytesIO(b"XXXXXXXX" + good[8:]))
    with pytest.raises(TbinFormatError):
        TbinHeader.read(io.BytesIO(good[:100]))
    with pytest.raises(TbinFormatError, match="encoding mode"):
        TbinHeader.read(io.BytesIO(TbinHeader(ntrks=9, mode=7).pack()))
    with pytest.raises(TbinFormatError, match="16 bits"):
        TbinDat.read(io.BytesIO(TbinDat(sample_bits=8).pack()))


def test_quantize_rounds_away_from_zero_and_clips() -> None:
    volts = np.array([[0.5, -0.5, 1.4, -1.6, 40000.0, -40000.0]])

    samples, toobig, toosmall = quantize(volts, float(SAMPLE_MAX))

    assert samples.tolist() == [[1, -1, 1, -2, SAMPLE_MAX, -SAMPLE_MAX]]
    assert samples.dtype == np.dtype("<i2")
    assert (toobig, toosmall) == (1, 1)


def _tap(tmp_path: Path) -> Path:
    writer = BlockWriter(str(tmp_path / "img"), tap_format=True, quiet=True)
    writer.write_block(b"ABCDE", False, 0.1)
    writer.write_block(b"\x01\xab", True, 0.2)
    writer.tapemark(0.3)
    writer.finish(0.4)
    return tmp_path / "img.tap"


def test_tap_writer_and_reader(tmp_path: Path) -> None:
    path = _tap(tmp_path)

    raw = path.read_bytes()
    # odd length records are padded to an even length
    assert raw[:4] == struct.pack("<I", 5)
    assert raw[4:10] == b"ABCDE\0"
    assert raw[-4:] == b"\xff\xff\xff\xff"

    records = read_tap(path)
    assert [r.kind for r in records] == ["data", "data", "tapemark", "end"]
    assert records[0].data == b"ABCDE" and not records[0].has_errors
    assert records[1].data == b"\x01\xab" and records[1].has_errors


def test_empty_tap_image_holds_the_end_marker(tmp_path: Path) -> None:
    writer = BlockWriter(str(tmp_path / "blank"), tap_format=True, quiet=True)
    writer.finish(0.0)

    path = tmp_path / "blank.tap"
    assert writer.created == [path]
    assert path.read_bytes() == b"\xff\xff\xff\xff"
    assert [r.kind for r in read_tap(path)] == ["end"]


def test_separate_files_are_not_made_for_an_empty_tape(tmp_path: Path) -> None:
    writer = BlockWriter(str(tmp_path / "blank"), quiet=True)
    writer.finish(0.0)
    assert writer.created == []
    assert list(tmp_path.iterdir()) == []


def test_tap_reader_rejects_damaged_files() -> None:
    with pytest.raises(TapFormatError, match="bad marker"):
        list(iter_tap(io.BytesIO(struct.pack("<I", 0x01000002) + b"AB")))
    with pytest.raises(TapFormatError, match="ending marker"):
        list(iter_tap(io.BytesIO(struct.pack("<I", 2) + b"AB" + struct.pack("<I", 3))))
    with pytest.raises(TapFormatError, match="end-of-medium"):
        list(iter_tap(io.BytesIO(struct.pack("<I", 0))))


def test_block_writer_separate_files(tmp_path: Path) -> None:
    writer = BlockWriter(str(tmp_path / "out"), quiet=True)
    writer.write_block(b"one", False, 0.0)
    writer.write_block(b"two", False, 0.0)
    writer.tapemark(0.0)
    writer.write_block(b"three", False, 0.0)
    writer.finish(0.0)

    assert (tmp_path / "out.001.bin").read_bytes() == b"onetwo"
    assert (tmp_path / "out.002.bin").read_bytes() == b"three"
    assert (writer.numfiles, writer.numblks) == (2, 3)


def test_dumptap_writes_a_hex_dump(tmp_path: Path, capsys) -> None:
    _tap(tmp_path)
    base = tmp_path / "img"

    assert dumptap_main([str(base), "-hex", "-q"]) == 0

    text = (tmp_path / "img.hex.txt").read_text(encoding="utf-8")
    assert "    5: 4142434445" in text
    assert "!   2: 01AB" in text
    assert ".tap tape mark" in text
    assert ".tap end of medium" in text
    assert "1 block(s) with errors were marked with a !" in text
    assert capsys.readouterr().out.strip() == f"{tmp_path / 'img.hex.txt'}: 2 blocks, 1 tape marks"


def test_dumptap_bad_marker_is_fatal(tmp_path: Path) -> None:
    (tmp_path / "bad.tap").write_bytes(struct.pack("<I", 0x7F000000))
    assert dumptap_main([str(tmp_path / "bad"), "-q"]) == 99
