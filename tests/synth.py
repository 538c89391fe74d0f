"""Synthetic read-head captures for the decoder tests.

Each flux transition becomes a Gaussian pulse on its track; the polarity of
the pulse is the direction of the transition.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np

from src.decoder.config import Mode
from src.decoder.gcr import ENCODE, MARK1, MARK2, SYNC
from src.decoder.gcr_ecc import compute_ecc
from src.decoder.nrzi import crc_9track, lrc
from src.io.tbin import TbinDat, TbinHeader, end_marker, quantize

AMPLITUDE = 2.0
GAP_SECS = 1e-3

PE_BPI, PE_IPS = 1600.0, 50.0
NRZI_BPI, NRZI_IPS = 800.0, 50.0
GCR_BPI, GCR_IPS = 9042.0, 25.0

TAPEMARK_TRACKS = (0, 2, 5, 6, 7, 8)


def odd_symbol(byte: int, ntrks: int = 9) -> int:
    """(msb)...(lsb)(p) with odd parity."""
    byte &= (1 << (ntrks - 1)) - 1
    return (byte << 1) | (0 if bin(byte).count("1") & 1 else 1)


def track_bits(symbols: list[int], ntrks: int) -> list[list[int]]:
    return [[(s >> (ntrks - 1 - trk)) & 1 for s in symbols] for trk in range(ntrks)]


class Capture:
    """Flux transitions on every track, laid down block by block."""

    def __init__(self, ntrks: int, bpi: float, ips: float, samples_per_bit: int = 20,
                 width_bits: float = 0.1) -> None:
        self.ntrks = ntrks
        self.bitspacing = 1.0 / (bpi * ips)
        self.dt = self.bitspacing / samples_per_bit
        self.sigma = self.bitspacing * width_bits
        self.t = GAP_SECS / 2
        self.transitions: list[list[tuple[float, int]]] = [[] for _ in range(ntrks)]
        self.polarity = [1] * ntrks
        # per-track head delay in bit times
        self.skew = [0.0] * ntrks

    def gap(self, secs: float = GAP_SECS) -> None:
        self.t += secs

    def dropout(self, trk: int, start: float, end: float) -> None:
        """Silence a track between two times."""
        self.transitions[trk] = [(when, sign) for when, sign in self.transitions[trk] if not start <= when < end]

    def _flip(self, trk: int, when: float) -> None:
        self.transitions[trk].append((when, self.polarity[trk]))
        self.polarity[trk] = -self.polarity[trk]

    # PE

    def pe_bits(self, bits: list[list[int]]) -> None:
        """A 1 is a rising transition mid-cell; equal neighbours get a boundary transition."""
        T = self.bitspacing
        for trk, seq in enumerate(bits):
            for i, bit in enumerate(seq):
                start = self.t + i * T
                mid = 1 if bit else -1
                if i > 0 and seq[i - 1] == bit:
                    self.transitions[trk].append((start, -mid))
                self.transitions[trk].append((start + T / 2, mid))
        self.t += max((len(seq) for seq in bits), default=0) * T
        self.gap()

    def pe_block(self, data: bytes) -> None:
        symbols = [odd_symbol(b, self.ntrks) for b in data]
        bits = [[0] * 40 + [1] + seq + [1] + [0] * 40 for seq in track_bits(symbols, self.ntrks)]
        self.pe_bits(bits)

    def pe_tapemark(self) -> None:
        self.pe_bits([[0] * 80 if trk in TAPEMARK_TRACKS else [] for trk in range(self.ntrks)])

    # NRZI

    def nrzi_symbols(self, symbols: list[int | None]) -> None:
        """One bit time per entry; ``None`` is a bit time with no transitions."""
        T = self.bitspacing
        for i, symbol in enumerate(symbols):
            if symbol is None:
                continue
            for trk in range(self.ntrks):
                if (symbol >> (self.ntrks - 1 - trk)) & 1:
                    self._flip(trk, self.t + i * T)
        self.t += len(symbols) * T
        self.gap()

    def nrzi_block(self, data: bytes, bad_crc: bool = False) -> None:
        symbols = [odd_symbol(b, self.ntrks) for b in data]
        empty: list[int | None] = [None] * 3
        if self.ntrks == 9:
            crc = crc_9track(symbols)
            check = lrc(symbols, crc)
            if bad_crc:
                crc ^= 0x03
            self.nrzi_symbols([*symbols, *empty, crc, *empty, check])
        else:
            self.nrzi_symbols([*symbols, *empty, lrc(symbols)])

    def nrzi_tapemark(self) -> None:
        if self.ntrks == 9:
            self.nrzi_symbols([0x26, *[None] * 7, 0x26])
        else:
            self.nrzi_symbols([0x1E, None, None, 0x1E])

    # GCR

    def gcr_bits(self, bits: list[list[int]]) -> None:
        T = self.bitspacing
        for trk, seq in enumerate(bits):
            for i, bit in enumerate(seq):
                if bit:
                    self._flip(trk, self.t + i * T)
        self.t += max((len(seq) for seq in bits), default=0) * T
        self.gap()

    def gcr_block(self, data: bytes, bad_subgroup: tuple[int, int] | None = None) -> None:
        """Write a block; ``bad_subgroup`` is (track, data subgroup) to replace with an invalid code."""
        full = len(data) - len(data) % 7
        quads: list[list[int]] = []
        for start in range(0, full, 7):
            group = [odd_symbol(b) for b in data[start:start + 7]]
            group.append(odd_symbol(compute_ecc(group)))
            quads += [group[:4], group[4:]]
        residual = [odd_symbol(b) for b in data[full:]]
        residual += [odd_symbol(0)] * (8 - len(residual))
        crc_group = [odd_symbol(0)] * 8
        crc_group[6] = odd_symbol((len(data) - full) << 5)
        trailer = [residual[:4], residual[4:], crc_group[:4], crc_group[4:]]

        subgroups = []
        for trk in range(9):
            codes = [SYNC] * 10 + [MARK1]
            for n, quad in enumerate(quads):
                codes.append(SYNC if bad_subgroup == (trk, n) else ENCODE[_nibble(quad, trk)])
            codes.append(SYNC)
            codes += [ENCODE[_nibble(quad, trk)] for quad in trailer]
            codes += [MARK2] + [SYNC] * 6
            subgroups.append(codes)

        bits = [[(code >> (4 - k)) & 1 for code in codes for k in range(5)] for codes in subgroups]
        self.gcr_bits(bits)

    def gcr_tapemark(self) -> None:
        self.gcr_bits([[1] * 300 if trk in TAPEMARK_TRACKS else [] for trk in range(9)])

    # output

    def render(self) -> tuple[np.ndarray, np.ndarray]:
        """Sample times and an (nsamples, ntrks) array of voltages."""
        n = int(self.t / self.dt) + 1
        times = np.arange(n) * self.dt
        volts = np.zeros((n, self.ntrks))
        reach = int(6 * self.sigma / self.dt) + 1
        for trk, flux in enumerate(self.transitions):
            delay = self.skew[trk] * self.bitspacing
            for when, sign in flux:
                when += delay
                center = int(round(when / self.dt))
                lo, hi = max(0, center - reach), min(n, center + reach + 1)
                volts[lo:hi, trk] += sign * AMPLITUDE * np.exp(-0.5 * ((times[lo:hi] - when) / self.sigma) ** 2)
        return times, volts

    def write_csv(self, path: Path) -> Path:
        times, volts = self.render()
        header = "Time [s], " + ", ".join(f"Channel {trk}" for trk in range(self.ntrks))
        rows = np.column_stack([times, volts])
        fmt = ["%.10f"] + ["%.5f"] * self.ntrks
        np.savetxt(path, rows, fmt=fmt, delimiter=", ", header=f"synthetic capture\n{header}", comments="")
        return path

    def write_tbin(self, path: Path, mode: Mode, bpi: float = 0.0, ips: float = 0.0) -> Path:
        _, volts = self.render()
        maxvolts = float(np.abs(volts).max()) * 1.1
        samples, _, _ = quantize(volts, maxvolts)
        hdr = TbinHeader(descr="synthetic capture", ntrks=self.ntrks, tdelta_ns=int(round(self.dt * 1e9)),
                         maxvolts=maxvolts, mode=mode, bpi=bpi, ips=ips)
        with path.open("wb") as fp:
            fp.write(hdr.pack())
            fp.write(TbinDat().pack())
            fp.write(samples.tobytes())
            fp.write(end_marker())
        return path


def _nibble(quad: list[int], trk: int) -> int:
    """Four bits of one track across four 9-bit symbols, the first symbol in the high bit."""
    return sum(((symbol >> (8 - trk)) & 1) << (3 - i) for i, symbol in enumerate(quad))


def pe_capture() -> Capture:
    return Capture(9, PE_BPI, PE_IPS)


def nrzi_capture(ntrks: int = 9) -> Capture:
    return Capture(ntrks, NRZI_BPI, NRZI_IPS)


def gcr_capture() -> Capture:
    return Capture(9, GCR_BPI, GCR_IPS, samples_per_bit=10, width_bits=0.2)
