"""ECC for 6250 BPI GCR data groups.

Each 8-byte group holds seven data bytes and an ECC byte, each 9 bits wide
with the parity bit in bit 0. The ECC bits are dot products of the 56 data
bits with fixed masks. With pointers to up to two bad tracks the group can
be corrected from the parity and ECC syndromes.
"""

from __future__ import annotations

import logging

LOGGER = logging.getLogger(__name__)

ECC_MASKS = (
    0x0F6A71994C5230,
    0x70110840108004,
    0x5A701108401080,
    0x372BE95D5A7011,
    0xE95D5A70110840,
    0x4C523001884412,
    0x2BE95D5A701108,
    0x5D5A7011084010,
)

# matrices for two-track correction, indexed by the distance between the tracks
TWO_TRACK_MATRICES = (
    (0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00),
    (0xFE, 0xFC, 0xF8, 0x0F, 0xE0, 0x3F, 0x7F, 0xFF),
    (0x54, 0xA8, 0x50, 0xF5, 0xBF, 0x2A, 0x55, 0xAA),
    (0x93, 0x26, 0x4D, 0x09, 0x80, 0x92, 0x24, 0x49),
    (0xBA, 0x75, 0xEA, 0x6E, 0x66, 0x77, 0xEE, 0xDD),
    (0x11, 0x23, 0x46, 0x9C, 0x29, 0x42, 0x84, 0x08),
    (0x7C, 0xF9, 0xF3, 0x9A, 0x49, 0xEF, 0xDF, 0xBE),
    (0x39, 0x72, 0xE5, 0xF3, 0xDF, 0x87, 0x0E, 0x1C),
)

CORRECTION_ORDER = (4, 2, 1, 5, 7, 3, 6, 0, 8)
DATA_ORDER = (7, 2, 1, 5, 0, 3, 6, 4, 8)
BYTE_REVERSE = (7, 6, 5, 4, 3, 2, 1, 0)


def _parity(value: int) -> int:
    return bin(value).count("1") & 1


def compute_ecc(group: list[int]) -> int:
    """ECC byte for the first seven 9-bit symbols of ``group``."""
    dblock = 0
    for symbol in group[:7]:
        dblock = (dblock << 8) | ((symbol >> 1) & 0xFF)
    ecc = 0
    for i, mask in enumerate(ECC_MASKS):
        ecc |= _parity(dblock & mask) << i
    return ecc


def reorder(value: int, order: tuple[int, ...]) -> int:
    """Move bit i of value to bit order[i]."""
    out = 0
    for i, dest in enumerate(order):
        if value & (1 << i):
            out |= 1 << dest
    return out


def times_alpha(s: int) -> int:
    s <<= 1
    if s & 0x100:
        s ^= 0x39
    return s & 0xFF


def div_by_alpha(s: int) -> int:
    low = s & 1
    s >>= 1
    if low:
        s ^= 0x9C
    return s


def matrix_product(matrix: list[int], x: int) -> int:
    ans = 0
    for i, row in enumerate(matrix):
        ans |= _parity(row & x) << (7 - i)
    return ans


def bad_track_numbers(bad_tracks: int) -> tuple[int, int]:
    pi = pj = 0
    count = 0
    for i in range(9):
        if not bad_tracks & (1 << i):
            continue
        if count == 0:
            pi = pj = i
        elif count == 1:
            pj = i
        else:
            LOGGER.warning("Too many bad track pointers in gcr_correct_errors.  Ignoring track %d", i)
        count += 1
    return pi, pj


def correct_errors(dblock: list[int], bad_tracks: int) -> bool:
    """Correct up to two bad tracks in place.

    ``dblock`` holds eight 9-bit symbols with the parity bit as bit 8
    (p)(msb)...(lsb). ``bad_tracks`` has bit i set for bad track i in the
    same order. Returns False when no error location can be found.
    """
    bad_tracks = reorder(bad_tracks, CORRECTION_ORDER)
    pi, pj = bad_track_numbers(bad_tracks)
    mk: list[int] = []
    if pj > pi:
        mk = [reorder(row, BYTE_REVERSE) for row in TWO_TRACK_MATRICES[pj - pi]]

    b = [reorder(dblock[i], CORRECTION_ORDER) for i in range(8)]
    s1 = 0xFF
    s2 = 0
    for i in range(8):
        s1 ^= _parity(b[i] & 0x1FF) << i
        s2 = times_alpha(s2)
        s2 ^= b[i] & 0xFF
    s2 = reorder(s2, BYTE_REVERSE)

    if pi == pj:
        errloc = -1
        if s1:
            if s2 == 0:
                errloc = 8
            else:
                sx = s1
                for i in range(8):
                    if s2 == sx:
                        errloc = i
                        break
                    sx = div_by_alpha(sx)
            if errloc < 0:
                LOGGER.warning("no error location was found in gcr_correct_errors")
                return False
            for i in range(8):
                if s1 & (1 << i):
                    b[i] ^= 1 << errloc
    else:
        sy = s2
        for _ in range(pi):
            sy = times_alpha(sy)
        sy ^= s1
        e2 = sy if pj == 8 else matrix_product(mk, sy)
        e1 = e2 ^ s1
        for i in range(8):
            if e1 & (1 << i):
                b[i] ^= 1 << pi
            if e2 & (1 << i):
                b[i] ^= 1 << pj

    for i in range(8):
        dblock[i] = reorder(b[i], DATA_ORDER)
    return True


def to_correction_word(symbol: int) -> int:
    """(msb)...(lsb)(p) to (p)(msb)...(lsb)."""
    return ((symbol >> 1) & 0xFF) | ((symbol & 1) << 8)


def from_correction_word(word: int) -> int:
    return ((word & 0xFF) << 1) | (word >> 8)
