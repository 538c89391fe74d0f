"""Character sets used to interpret decoded bytes as text.

Six-bit codes index 64-entry tables; EBCDIC and ASCII use all 8 bits.
Characters with no printable equivalent show as a blank or a mnemonic
letter (t = tapemark, r = record mark, g = group mark, d = delta).
"""

from __future__ import annotations


def _ebcdic_table() -> str:
    table = [" "] * 256
    for start, text in (
        (0x4A, "[.<(+|"),
        (0x50, "&"),
        (0x5A, "!$*);^"),
        (0x60, "-/"),
        (0x6A, "|,%_>?"),
        (0x79, "`:#|'=\""),
        (0x81, "abcdefghi"),
        (0x91, "jklmnopqr"),
        (0xA1, "~stuvwxyz"),
        (0xC0, "{ABCDEFGHI"),
        (0xD0, "}JKLMNOPQR"),
        (0xE0, "\\"),
        (0xE2, "STUVWXYZ"),
        (0xF0, "0123456789"),
    ):
        for offset, ch in enumerate(text):
            table[start + offset] = ch
    return "".join(table)


EBCDIC = _ebcdic_table()

BCD1401 = (" 1234567890#@:>t"
           " /STUVWXYZr,%='\""
           "-JKLMNOPQR!$*);d"
           "&ABCDEFGHI?.?(<g")

BURROUGHS_B5500 = ("0123456789#@?:>}"
                   "+ABCDEFGHI.[&(<~"
                   "|JKLMNOPQR$*-);{"
                   " /STUVWXYZ,%!]=\"")

SDS_INTERNAL = ("01234567890=':>s"
                "+ABCDEFGHI?.)[<g"
                "-JKLMNOPQR!$*];d"
                " /STUVWXYZr,(~\\#")

SDS_MAGTAPE = ("01234567890#@:>s"
               " /STUVWXYZt,%~\\g"
               "-JKLMNOPQRc$*];d"
               "&ABCDEFGHIb.l[<r")

FLEXOWRITER = ("  e8 |a3 =s4i+u2"
               "..d5rlj7n,f6c-k "
               "t z.l.w h.y p q "
               "o.b g 9 m.x v.0 ")

CHARTYPES = ("BCD", "EBCDIC", "ASCII", "B5500", "sixbit", "SDS", "SDSM", "flexo")

_SIXBIT_TABLES = {
    "BCD": BCD1401,
    "B5500": BURROUGHS_B5500,
    "SDS": SDS_INTERNAL,
    "SDSM": SDS_MAGTAPE,
    "flexo": FLEXOWRITER,
}


def char_for(value: int, chartype: str) -> str:
    """Printable rendering of one byte in the given character set."""
    if chartype == "ASCII":
        return chr(value & 0x7F) if 0x20 <= value < 0x7F else " "
    if chartype == "sixbit":
        return chr((value & 0x3F) + 32)
    if chartype == "EBCDIC":
        return EBCDIC[value & 0xFF]
    table = _SIXBIT_TABLES.get(chartype)
    if table is None:
        return "?"
    return table[value & 0x3F]


def ebcdic_text(data: bytes) -> str:
    return "".join(EBCDIC[b] for b in data)
