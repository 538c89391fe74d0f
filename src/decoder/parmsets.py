"""Parameter sets used to decode a block.

A block that decodes with errors is retried with the next active parameter
set. The built-in defaults for each mode can be replaced by a ``.parms`` file:

    // comment
    readtape -deskew
    parms active, clk_window, clk_alpha, ..., id
    { 1, 0, 0.2, ..., PRM }  // optional comment

The ``parms`` line names the order of the values in the ``{...}`` lines.
Unknown names are ignored with a warning; known names that are missing take
the value from the first built-in set for the mode.
"""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path

from .config import MAXPARMSETS, Mode, mode_name
from .errors import ParmsetError

LOGGER = logging.getLogger(__name__)

ALLMODES = frozenset({Mode.PE, Mode.NRZI, Mode.GCR})


@dataclass
class Parmset:
    active: int = 0
    clk_window: int = 0
    clk_alpha: float = 0.0
    agc_window: int = 0
    agc_alpha: float = 0.0
    min_peak: float = 0.0
    clk_factor: float = 0.0
    pulse_adj: float = 0.0
    pkww_bitfrac: float = 0.0
    pkww_rise: float = 0.0
    midbit: float = 0.0
    z1pt: float = 0.0
    z2pt: float = 0.0
    comment: str = ""
    tried: int = 0
    chosen: int = 0


@dataclass(frozen=True)
class ParmDescr:
    name: str
    kind: type
    modes: frozenset
    min: float
    max: float


PARM_DESCRS = (
    ParmDescr("active", int, ALLMODES, 0.0, 1.0),
    ParmDescr("clk_window", int, ALLMODES, 0.0, 50.0),
    ParmDescr("clk_alpha", float, ALLMODES, 0.0, 1.0),
    ParmDescr("agc_window", int, ALLMODES, 0.0, 10.0),
    ParmDescr("agc_alpha", float, ALLMODES, 0.0, 1.0),
    ParmDescr("min_peak", float, ALLMODES, 0.0, 5.0),
    ParmDescr("clk_factor", float, frozenset({Mode.PE}), 0.0, 2.0),
    ParmDescr("pulse_adj", float, ALLMODES, 0.0, 1.0),
    ParmDescr("pkww_bitfrac", float, ALLMODES, 0.0, 2.0),
    ParmDescr("pkww_rise", float, ALLMODES, 0.0, 5.0),
    ParmDescr("midbit", float, frozenset({Mode.NRZI}), 0.0, 1.0),
    ParmDescr("z1pt", float, frozenset({Mode.GCR}), 1.0, 2.0),
    ParmDescr("z2pt", float, frozenset({Mode.GCR}), 2.0, 3.0),
)
PARM_BY_NAME = {d.name: d for d in PARM_DESCRS}

DEFAULT_PARMS_TEXT = {
    Mode.PE: """
parms active, clk_window, clk_alpha, agc_window, agc_alpha, min_peak, clk_factor, pulse_adj, pkww_bitfrac, pkww_rise, id
{  1,  0, 0.2, 5, 0.0, 0.0, 1.50, 0.4, 0.7, 0.10, PRM }
{  1,  0, 0.2, 5, 0.0, 0.1, 1.50, 0.4, 0.7, 0.10, PRM }
{  1,  3, 0.0, 5, 0.0, 0.0, 1.40, 0.0, 0.7, 0.10, PRM }
{  1,  3, 0.0, 5, 0.0, 0.0, 1.40, 0.2, 0.7, 0.10, PRM }
{  1,  5, 0.0, 5, 0.0, 0.0, 1.40, 0.0, 0.7, 0.10, PRM }
{  1,  5, 0.0, 5, 0.0, 0.0, 1.50, 0.2, 0.7, 0.10, PRM }
{  1,  5, 0.0, 5, 0.0, 0.0, 1.40, 0.4, 0.7, 0.10, PRM }
{  1,  3, 0.0, 5, 0.0, 0.0, 1.40, 0.2, 0.7, 0.10, PRM }
""",
    Mode.NRZI: """
parms active, clk_window, clk_alpha, agc_window, agc_alpha, min_peak, pulse_adj, pkww_bitfrac, pkww_rise, midbit, id
{  1, 0, 0.200, 0, 0.300, 1.000, 0.300, 0.700, 0.200, 0.500, PRM }
{  1, 0, 0.300, 0, 0.300, 1.000, 0.400, 0.600, 0.200, 0.500, PRM }
{  1, 2, 0.000, 0, 0.300, 1.000, 0.400, 0.700, 0.200, 0.500, PRM }
{  1, 0, 0.600, 0, 0.300, 1.000, 0.400, 0.600, 0.200, 0.500, PRM }
{  1, 2, 0.000, 1, 0.000, 0.500, 0.500, 0.900, 0.050, 0.500, PRM }  // for shallow peaks
{  1, 0, 0.200, 1, 0.000, 1.000, 0.500, 0.700, 0.050, 0.500, PRM }
{  1, 2, 0.000, 1, 0.000, 0.500, 0.500, 0.700, 0.050, 0.500, PRM }
{  1, 0, 0.600, 1, 0.000, 0.500, 0.500, 0.600, 0.050, 0.500, PRM }
""",
    Mode.GCR: """
parms active, clk_window, clk_alpha, agc_window, agc_alpha, min_peak, pulse_adj, pkww_bitfrac, pkww_rise, z1pt, z2pt, id
{  1,  0, 0.015, 0, 0.500, 0.200, 0.300, 1.500, 0.200, 1.450, 2.350, PRM }
{  1,  0, 0.020, 0, 0.500, 0.200, 0.300, 1.500, 0.200, 1.450, 2.350, PRM }
{  1,  0, 0.010, 0, 0.500, 0.200, 0.300, 1.500, 0.200, 1.450, 2.350, PRM }
{  1, 10, 0.000, 0, 0.500, 0.000, 0.600, 1.500, 0.140, 1.400, 2.300, PRM }
{  1,  0, 0.020, 0, 0.500, 0.200, 0.300, 1.500, 0.200, 1.480, 2.350, PRM }
""",
}

_NUMBER = re.compile(r"[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")


@dataclass
class ParmsFile:
    """Result of parsing a parameter-set text."""

    parmsets: list[Parmset]
    extra_options: list[str]
    source: str


def _parse_values(line: str, names: list[str | None], setnum: int, mode: Mode) -> Parmset:
    pset = Parmset()
    rest = line
    for name in names:
        rest = rest.lstrip(" \t,")
        match = _NUMBER.match(rest)
        if match is None:
            raise ParmsetError(f"bad parm value in parmset {setnum} at: {rest}")
        value = float(match.group(0))
        rest = rest[match.end():]
        if name is None:
            continue
        descr = PARM_BY_NAME[name]
        if not descr.min <= value <= descr.max:
            raise ParmsetError(
                f"bad {'integer' if descr.kind is int else 'floating point'} parm in "
                f"parmset {setnum} for \"{name}\" at: {match.group(0)}{rest}"
            )
        setattr(pset, name, int(value) if descr.kind is int else value)
    rest = rest.lstrip(" \t,")
    for token in ('"PRM"', "PRM"):
        if rest.upper().startswith(token):
            rest = rest[len(token):].lstrip()
            break
    else:
        raise ParmsetError(f"missing \"PRM\" in parmset {setnum} at: {rest}")
    if not rest.startswith("}"):
        raise ParmsetError(f"missing parmset closing }} in parmset {setnum}")
    rest = rest[1:].strip()
    if rest.startswith("//"):
        pset.comment = rest[2:].strip()[:80]
    return pset


def parse_parms(text: str, mode: Mode, source: str = "<internal>",
                defaults: list[Parmset] | None = None) -> ParmsFile:
    """Parse parameter-set text for ``mode``.

    ``defaults`` supplies values for known parms the text doesn't name.
    """
    names: list[str | None] | None = None
    given: set[str] = set()
    parmsets: list[Parmset] = []
    extra: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        lower = line.lower()
        if not line or lower.startswith("//"):
            continue
        if lower.startswith("readtape"):
            LOGGER.info("readtape %s", line[8:].strip())
            try:
                extra.extend(shlex.split(line[8:]))
            except ValueError as exc:
                raise ParmsetError(f"bad option string in parms file: {line}") from exc
        elif lower.startswith("parms"):
            body = line[5:].lstrip(" \t:")
            names = []
            for name in (n.strip() for n in body.split(",")):
                if not re.fullmatch(r"\w+", name):
                    raise ParmsetError(f"bad parm name: {name}")
                if name == "id":
                    continue
                if name not in PARM_BY_NAME:
                    LOGGER.warning("  --->obsolete %s parm ignored: %s", mode_name(mode), name)
                    names.append(None)
                    continue
                if mode not in PARM_BY_NAME[name].modes:
                    LOGGER.info("  --->parm %s ignored because it isn't used for %s", name, mode_name(mode))
                names.append(name)
                given.add(name)
        elif line.startswith("{"):
            if names is None:
                raise ParmsetError("missing parameter names line")
            parmsets.append(_parse_values(line[1:], names, len(parmsets) + 1, mode))
            if len(parmsets) > MAXPARMSETS:
                raise ParmsetError(f"too many parmsets at: {line}")
        else:
            raise ParmsetError(f"bad parmset file input: \"{line}\"")
    if not parmsets:
        raise ParmsetError("no parameter sets given")

    if defaults:
        for descr in PARM_DESCRS:
            if descr.name in given:
                continue
            value = getattr(defaults[0], descr.name)
            for pset in parmsets:
                setattr(pset, descr.name, value)
            if mode in descr.modes:
                LOGGER.warning("  --->missing %s parm %s; using default of %s for all parmsets",
                               mode_name(mode), descr.name, value)
    return ParmsFile(parmsets, extra, source)


def default_parmsets(mode: Mode) -> list[Parmset]:
    if mode not in DEFAULT_PARMS_TEXT:
        raise ParmsetError(f"no default parameter sets for mode {mode_name(mode)}")
    return parse_parms(DEFAULT_PARMS_TEXT[mode], mode).parmsets


def find_parms_file(basename: str, mode: Mode) -> Path | None:
    """Look for <basename>.parms, then <MODE>.parms beside it, then in the cwd."""
    base = Path(basename)
    candidates = [Path(f"{basename}.parms")]
    if base.parent != Path("."):
        candidates.append(base.parent / f"{mode_name(mode)}.parms")
    candidates.append(Path(f"{mode_name(mode)}.parms"))
    for path in candidates:
        if path.is_file():
            return path
    return None


def read_parms(basename: str, mode: Mode, quiet: bool = False) -> ParmsFile:
    """Load the parameter sets to use for a file, falling back to the defaults."""
    defaults = default_parmsets(mode)
    path = find_parms_file(basename, mode)
    if path is None:
        if not quiet:
            LOGGER.info("no .parms file was found, so we're using these internal defaults "
                        "for the %s parameter sets:", mode_name(mode))
            show_parms(defaults, mode)
        return ParmsFile(defaults, [], "<internal>")
    if not quiet:
        LOGGER.info("reading parmsets from file %s", path)
    result = parse_parms(path.read_text(encoding="utf-8"), mode, str(path), defaults)
    if not quiet:
        show_parms(result.parmsets, mode)
    return result


def show_parms(parmsets: list[Parmset], mode: Mode) -> None:
    used = [d for d in PARM_DESCRS if mode in d.modes]
    LOGGER.info("  parms %s", ", ".join(f"{d.name:>11s}" for d in used))
    for pset in parmsets:
        if pset.active != 1:
            continue
        values = ", ".join(
            f"{getattr(pset, d.name):10d}" if d.kind is int else f"{getattr(pset, d.name):10.3f}"
            for d in used
        )
        LOGGER.info("  {   %s }%s", values, f" //{pset.comment}" if pset.comment else "")

