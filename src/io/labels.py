"""Recognise IBM standard tape labels (VOL1, HDR1/EOF1/EOV1, HDR2/EOF2/EOV2).

Labels are 80-byte EBCDIC blocks. They are logged rather than written out,
and a HDR1 label names the file that the following data goes into.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .charsets import ebcdic_text
from .sinks import BlockWriter

LOGGER = logging.getLogger(__name__)

LABEL_LENGTH = 80


@dataclass(frozen=True)
class TapeLabel:
    kind: str
    fields: dict[str, str]


def _fields(text: str, layout: tuple[tuple[str, int, int], ...]) -> dict[str, str]:
    return {name: text[start:end].strip() for name, start, end in layout}


VOL1_LAYOUT = (("serno", 4, 10), ("owner", 41, 51))
HDR1_LAYOUT = (
    ("dsid", 4, 21), ("serno", 21, 27), ("volseqno", 27, 31), ("dsseqno", 31, 35),
    ("genno", 35, 39), ("genver", 39, 41), ("created", 41, 47), ("expires", 47, 53),
    ("security", 53, 54), ("blkcnt", 54, 60), ("syscode", 60, 73),
)
HDR2_LAYOUT = (
    ("recfm", 4, 5), ("blklen", 5, 10), ("reclen", 10, 15), ("density", 15, 16),
    ("dspos", 16, 17), ("job", 17, 34), ("recording", 34, 36), ("controlchar", 36, 37),
    ("blkattrib", 38, 39),
)


def parse_label(data: bytes) -> TapeLabel | None:
    """Decode ``data`` (8-bit bytes, parity stripped) if it is a standard label."""
    if len(data) != LABEL_LENGTH:
        return None
    text = ebcdic_text(data)
    kind = text[:4]
    if kind == "VOL1":
        return TapeLabel(kind, _fields(text, VOL1_LAYOUT))
    if kind in ("HDR1", "EOF1", "EOV1"):
        fields = _fields(text, HDR1_LAYOUT)
        fields["dsid_raw"] = text[4:21]
        return TapeLabel(kind, fields)
    if kind in ("HDR2", "EOF2", "EOV2"):
        return TapeLabel(kind, _fields(text, HDR2_LAYOUT))
    return None


def process_label(data: bytes, errcount: int, writer: BlockWriter, now: float,
                  quiet: bool = False) -> bool:
    """Log a label and act on it; returns False if the block isn't a label."""
    label = parse_label(data)
    if label is None:
        return False
    f = label.fields
    if label.kind == "VOL1":
        if not quiet:
            LOGGER.info("*** tape label %s, serno \"%s\", owner \"%s\"", label.kind, f["serno"], f["owner"])
    elif label.kind.endswith("1"):
        if not quiet:
            LOGGER.info("*** tape label %s, dsid \"%s\", serno \"%s\", created%s",
                        label.kind, f["dsid"], f["serno"], f["created"])
            LOGGER.info("    volume %s, dataset %s", f["volseqno"], f["dsseqno"])
            if label.kind == "EOF1":
                LOGGER.info("    block count %s, system %s", f["blkcnt"], f["syscode"])
        if label.kind == "HDR1":
            name = f"{writer.base}-{writer.numfiles + 1:03d}-{f['dsid_raw']}".rstrip(" ")
            if not writer.tap_format:
                writer.create_datafile(now, name)
            writer.hdr1_label = True
        if label.kind == "EOF1" and not writer.tap_format:
            writer.close_file(now)
    else:
        if not quiet:
            LOGGER.info("*** tape label %s, RECFM=%s%s, BLKSIZE=%s, LRECL=%s",
                        label.kind, f["recfm"], f["blkattrib"], f["blklen"], f["reclen"])
            LOGGER.info("    job: \"%s\"", f["job"])
    if errcount and not quiet:
        LOGGER.info("--> %d errors", errcount)
    return True
