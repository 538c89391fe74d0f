from __future__ import annotations

from pathlib import Path

import pytest

from src.decoder.config import BlockType, Mode
from src.decoder.errors import DecoderError, OptionError
from src.decoder.results import Attempt, BlockBuffers, BlockResult
from src.io.sinks import BlockWriter
from src.readtape import (
    FATAL_EXIT,
    choose_attempt,
    main,
    parse_options,
    parse_skew,
    parse_track_order,
    read_file_list,
    split_input_name,
    translate_options,
)
from tests.synth import nrzi_capture


def test_translate_options() -> None:
    tokens = ["-NRZI", "-bpi=800", "/data/tape.csv", "--tap", "-v3", "/deskew", "-outp=out/"]

    assert translate_options(tokens) == [
        "--mode", "nrzi", "--bpi=800", "/data/tape.csv", "--tap", "--verbose-level=3", "--deskew", "--outp=out/",
    ]


@pytest.mark.parametrize("token", ["-bogus", "-bpi", "-tap=1"])
def test_translate_options_rejects_unknown_options(token: str) -> None:
    with pytest.raises(OptionError, match="bad option"):
        translate_options([token])


def test_parse_options_defaults() -> None:
    opts, name = parse_options(["tape"])

    assert name == "tape"
    assert opts.mode == Mode.UNKNOWN
    assert opts.parity == 1
    assert opts.multiple_tries and opts.logging and opts.labels
    assert not opts.textfile


def test_parse_options_values() -> None:
    opts, _ = parse_options(["-gcr", "-even", "-ntrks=9", "-skew=0,1,0,2,0,0,0,0,1", "-octal2", "-outf=x", "-outp=o/",
                             "tape"])

    assert opts.mode == Mode.GCR
    assert opts.parity == 0
    assert opts.skew == (0, 1, 0, 2, 0, 0, 0, 0, 1)
    assert opts.deskew
    assert opts.textfile and opts.numtype == "octal2" and opts.dataspace == 2
    assert opts.base_output_name == "o/x"


def test_parse_track_order() -> None:
    assert parse_track_order("P314520", 7) == [6, 3, 1, 4, 5, 2, 0]
    assert parse_track_order("01234567p") == list(range(9))


@pytest.mark.parametrize(
    ("text", "ntrks"),
    [("01234567P", 7), ("01234566P", 0), ("0123456XP", 0), ("0P", 0)],
)
def test_parse_track_order_errors(text: str, ntrks: int) -> None:
    with pytest.raises(OptionError):
        parse_track_order(text, ntrks)


def test_parse_skew() -> None:
    assert parse_skew("0,1,2", 3) == (0, 1, 2)
    for text, ntrks in (("0,1,2", None), ("0,1", 3), ("0,-1,2", 3), ("0,a,2", 3)):
        with pytest.raises(OptionError):
            parse_skew(text, ntrks)


def test_split_input_name() -> None:
    assert split_input_name("dir/tape.TBIN") == ("dir/tape", ".tbin")
    assert split_input_name("tape.csv") == ("tape", ".csv")
    assert split_input_name("tape.dat") == ("tape.dat", "")
    assert split_input_name("tape") == ("tape", "")


def _attempt(blktype: BlockType, **counts: int) -> Attempt:
    return Attempt(BlockResult(blktype=blktype, **counts), BlockBuffers())


def test_choose_attempt_prefers_good_blocks_with_fewest_warnings() -> None:
    attempts = {
        0: _attempt(BlockType.BLOCK, vparity_errs=1),
        1: _attempt(BlockType.BLOCK, missed_midbits=2),
        2: _attempt(BlockType.BLOCK, corrected_bits=1),
        3: _attempt(BlockType.BADBLOCK),
    }
    assert choose_attempt(attempts, 3) == 2


def test_choose_attempt_fallbacks() -> None:
    errors = {0: _attempt(BlockType.BLOCK, crc_errs=1, lrc_errs=1), 1: _attempt(BlockType.BLOCK, crc_errs=1)}
    assert choose_attempt(errors, 1) == 1

    bad = {0: _attempt(BlockType.BADBLOCK, track_mismatch=3), 1: _attempt(BlockType.BADBLOCK, track_mismatch=1),
           2: _attempt(BlockType.NOISE)}
    assert choose_attempt(bad, 2) == 1

    assert choose_attempt({0: _attempt(BlockType.NOISE), 1: _attempt(BlockType.NOISE)}, 1) == 0

    tapemark = {0: _attempt(BlockType.BLOCK), 1: _attempt(BlockType.TAPEMARK)}
    assert choose_attempt(tapemark, 1) == 1

    with pytest.raises(DecoderError):
        choose_attempt({0: _attempt(BlockType.NONE)}, 0)


def test_read_file_list(tmp_path: Path) -> None:
    path = tmp_path / "list.txt"
    path.write_text('-nrzi tape1\n\n-bpi=800 -q "my tape.tbin"\n', encoding="utf-8")

    assert read_file_list(path) == [(["-nrzi"], "tape1"), (["-bpi=800", "-q"], "my tape.tbin")]

    path.write_text("-nrzi -q\n", encoding="utf-8")
    with pytest.raises(OptionError):
        read_file_list(path)


def test_missing_input_is_fatal(tmp_path: Path) -> None:
    assert main([str(tmp_path / "missing"), "-nolog"]) == FATAL_EXIT


def test_bad_option_is_fatal(tmp_path: Path) -> None:
    assert main([str(tmp_path / "tape"), "-bogus"]) == FATAL_EXIT


def test_file_list_decodes_each_entry(tmp_path: Path, capsys) -> None:
    for name in ("a", "b"):
        cap = nrzi_capture()
        cap.nrzi_block(f"block from tape {name}".encode("ascii"))
        cap.write_csv(tmp_path / f"{name}.csv")
    (tmp_path / "list.txt").write_text(f"{tmp_path / 'a'}\n-nolog {tmp_path / 'b'}\n", encoding="utf-8")

    assert main([str(tmp_path / "list.txt"), "-nrzi", "-bpi=800", "-tap"]) == 0

    out = capsys.readouterr().out
    assert f"{tmp_path / 'a'}: ok" in out
    assert f"{tmp_path / 'b'}: ok" in out
    assert (tmp_path / "a.tap").is_file()
    assert (tmp_path / "b.tap").is_file()
    assert (tmp_path / "a.log").is_file()
    assert not (tmp_path / "b.log").exists()


def test_tap_input_is_dumped(tmp_path: Path) -> None:
    writer = BlockWriter(str(tmp_path / "img"), tap_format=True, quiet=True)
    writer.write_block(b"HELLO", False, 0.0)
    writer.finish(0.0)

    assert main([str(tmp_path / "img.tap"), "-q"]) == 0

    assert "HELLO" in (tmp_path / "img.ASCII.txt").read_text(encoding="utf-8")
