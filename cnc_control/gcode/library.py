"""G-code text utilities -- parse, inspect, tidy and re-emit programs.

Understands the subset this package writes plus common controller codes:
motion (G0-G4), planes (G17-G19), units (G20/G21), positioning (G90/G91),
feed mode (G94), spindle/coolant/program M-codes (M0-M9, M30) and the
printer codes used by the placeholder program (M82, M84, M107).

Words are normalised on parse (``g00`` → ``G0``).  Comments start at
``;`` and run to the end of the line.

Typical round trip::

    lines = parse(program.text)
    path = extract_toolpath(lines)
    stats = analyze_toolpath(path)
    report = validate(program.text)

Machine post-transform (axis mirroring, origin offset, calibration
scale) is applied to finished text with :func:`transform_program`.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Mapping

from cncai.utils.validators import ValidationReport, parse_bool, parse_float

from cnc_control.gcode.generator import GCodeError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

COMMAND_GROUPS: dict[str, tuple[str, ...]] = {
    "motion": ("G0", "G1", "G2", "G3", "G4"),
    "plane": ("G17", "G18", "G19"),
    "units": ("G20", "G21"),
    "positioning": ("G90", "G91"),
    "feed_mode": ("G94",),
    "homing": ("G28",),
    "tool": ("M3", "M4", "M5", "M6"),
    "coolant": ("M7", "M8", "M9"),
    "program": ("M0", "M1", "M2", "M30"),
    "printer": ("M82", "M84", "M107"),
}

SUPPORTED_COMMANDS = frozenset(c for group in COMMAND_GROUPS.values() for c in group)

MODAL_COMMANDS = frozenset(
    {"G0", "G1", "G2", "G3", "G17", "G18", "G19", "G20", "G21", "G90", "G91", "G94"}
)

PARAMETER_LETTERS = "XYZIJKFRSP"

_COMMAND_RE = re.compile(r"^([GM])(\d+)$")

# (from, to) → command rewrite table
DIALECT_RULES: dict[tuple[str, str], dict[str, str]] = {
    ("grbl", "linuxcnc"): {"G21": "G21", "G90": "G90", "G0": "G0", "G1": "G1"},
}


# ---------------------------------------------------------------------------
# Parsed representation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedLine:
    """One source line.

    Parameters
    ----------
    line_number : int
        1-based line index in the source text.
    kind : ``"empty"`` | ``"comment"`` | ``"command"``
        Line classification.
    original : str
        Raw source line.
    commands : tuple[str, ...]
        Normalised G/M words in source order.
    parameters : dict[str, float]
        Axis/feed/spindle words (last occurrence wins).
    comment : str | None
        Comment text without the ``;``.
    invalid : tuple[str, ...]
        Tokens that could not be interpreted.
    """

    line_number: int
    kind: str
    original: str = ""
    commands: tuple[str, ...] = ()
    parameters: dict[str, float] = field(default_factory=dict)
    comment: str | None = None
    invalid: tuple[str, ...] = ()

    def has(self, command: str) -> bool:
        return command in self.commands


@dataclass(frozen=True)
class PathPoint:
    """Machine position reached by a G0/G1 move."""

    x: float
    y: float
    z: float
    rapid: bool
    line_number: int


@dataclass(frozen=True)
class ToolpathStats:
    """Distance totals and bounds of an extracted toolpath (mm)."""

    total_points: int
    total_distance: float
    rapid_distance: float
    feed_distance: float
    bounds: tuple[float, float, float, float, float, float]
    """(min_x, max_x, min_y, max_y, min_z, max_z)"""


@dataclass(frozen=True)
class SyntaxReport:
    """Result of :func:`validate`."""

    is_valid: bool
    errors: tuple[str, ...]
    line_count: int
    command_count: int


@dataclass(frozen=True)
class TimeEstimate:
    """Machining time from distances at fixed rapid/feed rates (minutes)."""

    total_minutes: float
    rapid_minutes: float
    feed_minutes: float
    total_distance: float
    rapid_distance: float
    feed_distance: float


# ---------------------------------------------------------------------------
# Parse / stringify
# ---------------------------------------------------------------------------


def parse_command(code: str, line_number: int = 0) -> ParsedLine:
    """Parse the code part of a line (no comment) into words."""
    commands: list[str] = []
    parameters: dict[str, float] = {}
    invalid: list[str] = []

    for part in code.split():
        letter = part[0].upper()
        rest = part[1:]
        match = _COMMAND_RE.match(part.upper())
        if match:
            commands.append(f"{match.group(1)}{int(match.group(2))}")
        elif letter in PARAMETER_LETTERS:
            try:
                value = float(rest)
            except ValueError:
                invalid.append(part)
                continue
            if math.isnan(value):
                invalid.append(part)
                continue
            parameters[letter] = value
        else:
            invalid.append(part)

    return ParsedLine(
        line_number=line_number,
        kind="command",
        original=code,
        commands=tuple(commands),
        parameters=parameters,
        invalid=tuple(invalid),
    )


def parse(text: str) -> list[ParsedLine]:
    """Split a program into classified lines.

    Non-string or empty input yields an empty list.
    """
    if not text or not isinstance(text, str):
        return []

    parsed: list[ParsedLine] = []
    for i, original in enumerate(text.split("\n"), start=1):
        trimmed = original.strip()
        if not trimmed:
            parsed.append(ParsedLine(line_number=i, kind="empty", original=original))
            continue

        comment = None
        code = trimmed
        if ";" in trimmed:
            code, _, comment = trimmed.partition(";")
            code = code.strip()
            comment = comment.strip()

        if not code:
            parsed.append(
                ParsedLine(line_number=i, kind="comment", original=original, comment=comment)
            )
            continue

        line = parse_command(code, i)
        parsed.append(replace(line, original=original, comment=comment))
    return parsed


def stringify(lines: list[ParsedLine], precision: int = 4) -> str:
    """Render parsed lines back to text (parameters at ``precision`` decimals)."""
    out: list[str] = []
    for line in lines:
        if line.kind == "empty":
            out.append("")
            continue
        if line.kind == "comment":
            out.append(f"; {line.comment}")
            continue
        words = list(line.commands)
        words.extend(f"{k}{v:.{precision}f}" for k, v in line.parameters.items())
        if line.comment:
            words.append(f"; {line.comment}")
        out.append(" ".join(words))
    return "\n".join(out)


# ---------------------------------------------------------------------------
# Toolpath extraction / statistics
# ---------------------------------------------------------------------------


def extract_toolpath(lines: list[ParsedLine]) -> list[PathPoint]:
    """Positions visited by G0/G1 moves, honouring G90/G91.

    Motion mode is modal: a line with axis words but no G0/G1 continues
    the last motion mode.  Moves that don't change the position (e.g.
    ``G1 F800``) are skipped.
    """
    path: list[PathPoint] = []
    x = y = z = 0.0
    absolute = True
    motion: str | None = None

    for line in lines:
        if line.kind != "command":
            continue
        if line.has("G90"):
            absolute = True
        elif line.has("G91"):
            absolute = False

        if line.has("G0"):
            motion = "G0"
        elif line.has("G1"):
            motion = "G1"
        elif any(line.has(c) for c in ("G2", "G3")):
            motion = None

        if motion is None:
            continue
        params = line.parameters
        if not any(axis in params for axis in "XYZ"):
            continue

        nx, ny, nz = x, y, z
        if "X" in params:
            nx = params["X"] if absolute else x + params["X"]
        if "Y" in params:
            ny = params["Y"] if absolute else y + params["Y"]
        if "Z" in params:
            nz = params["Z"] if absolute else z + params["Z"]

        if (nx, ny, nz) != (x, y, z):
            path.append(PathPoint(nx, ny, nz, motion == "G0", line.line_number))
        x, y, z = nx, ny, nz

    return path


def analyze_toolpath(path: list[PathPoint]) -> ToolpathStats:
    """3-D distance totals split by rapid/feed, plus bounds."""
    if not path:
        return ToolpathStats(0, 0.0, 0.0, 0.0, (0.0,) * 6)

    total = rapid = feed = 0.0
    for prev, cur in zip(path, path[1:]):
        d = math.sqrt(
            (cur.x - prev.x) ** 2 + (cur.y - prev.y) ** 2 + (cur.z - prev.z) ** 2
        )
        total += d
        if cur.rapid:
            rapid += d
        else:
            feed += d

    xs = [p.x for p in path]
    ys = [p.y for p in path]
    zs = [p.z for p in path]
    return ToolpathStats(
        total_points=len(path),
        total_distance=total,
        rapid_distance=rapid,
        feed_distance=feed,
        bounds=(min(xs), max(xs), min(ys), max(ys), min(zs), max(zs)),
    )


def estimate_machining_time(
    lines: list[ParsedLine],
    rapid_feed: float = 3000.0,
    default_feed: float = 1000.0,
) -> TimeEstimate:
    """Time at constant rapid and feed rates (mm/min), ignoring ``F`` words."""
    if rapid_feed <= 0 or default_feed <= 0:
        raise GCodeError("Feed rates for time estimation must be positive")
    stats = analyze_toolpath(extract_toolpath(lines))
    rapid_minutes = stats.rapid_distance / rapid_feed
    feed_minutes = stats.feed_distance / default_feed
    return TimeEstimate(
        total_minutes=rapid_minutes + feed_minutes,
        rapid_minutes=rapid_minutes,
        feed_minutes=feed_minutes,
        total_distance=stats.total_distance,
        rapid_distance=stats.rapid_distance,
        feed_distance=stats.feed_distance,
    )


# ---------------------------------------------------------------------------
# Header / footer snippets
# ---------------------------------------------------------------------------


def generate_header(
    units: str = "G21",
    positioning: str = "G90",
    plane: str = "G17",
    safe_z: float = 5.0,
    feed_rate: float = 1000.0,
    timestamp: str | None = None,
) -> str:
    """Commented preamble for hand-assembled programs."""
    if timestamp is None:
        timestamp = datetime.now(timezone.utc).isoformat()
    return "\n".join([
        "; CNC AI generated G-code",
        f"; {timestamp}",
        f"{units} {positioning} {plane} ; units, positioning, plane",
        f"G0 Z{safe_z:.2f} ; safe Z",
        f"G1 F{feed_rate:.0f} ; feed rate",
    ])


def generate_footer(safe_z: float = 5.0) -> str:
    return "\n".join([
        f"G0 Z{safe_z:.2f} ; safe Z",
        "M5 ; spindle off",
        "M30 ; program end",
    ])


# ---------------------------------------------------------------------------
# Optimisation / validation / dialects
# ---------------------------------------------------------------------------


def _is_modal(line: ParsedLine) -> bool:
    return any(c in MODAL_COMMANDS for c in line.commands)


# Words that apply to one block only; never inherited from the last line
_PER_BLOCK_WORDS = frozenset("IJKRP")
_AXIS_WORDS = frozenset("XYZ")
_ARC_COMMANDS = frozenset({"G2", "G3"})


def optimize(lines: list[ParsedLine]) -> list[ParsedLine]:
    """Drop repeated modal lines and parameters equal to their last value.

    A command line identical (words and parameters) to the previous
    command line is removed when it is modal.  Remaining lines lose any
    parameter whose value equals the one last programmed.

    Arc centre offsets, radii and dwell times are never stripped, and an
    arc is never dropped as a repeat (it would be a full circle).  Under
    G91 every axis word is a move, so relative blocks keep their axis
    words and are never dropped; the absolute position is unknown again
    after the next G90.
    """
    optimized: list[ParsedLine] = []
    last: ParsedLine | None = None
    last_params: dict[str, float] = {}
    absolute = True

    for line in lines:
        if line.kind != "command":
            optimized.append(line)
            continue
        if line.has("G91"):
            absolute = False
        elif line.has("G90"):
            absolute = True
        if not absolute:
            last_params = {k: v for k, v in last_params.items() if k not in _AXIS_WORDS}

        if (
            absolute
            and _is_modal(line)
            and not _ARC_COMMANDS.intersection(line.commands)
            and last is not None
            and line.commands == last.commands
            and line.parameters == last.parameters
        ):
            continue

        keep = _PER_BLOCK_WORDS if absolute else _PER_BLOCK_WORDS | _AXIS_WORDS
        cleaned = {
            k: v for k, v in line.parameters.items()
            if k in keep or last_params.get(k) != v
        }
        optimized.append(replace(line, parameters=cleaned))
        last = line
        if absolute:
            last_params = {**last_params, **line.parameters}
        else:
            last_params = {
                **last_params,
                **{k: v for k, v in line.parameters.items() if k not in _AXIS_WORDS},
            }

    removed = len(lines) - len(optimized)
    if removed:
        logger.debug("Optimised away %d redundant line(s)", removed)
    return optimized


def validate(text: str, strict: bool = False) -> SyntaxReport:
    """Check G-code syntax.

    Parameters
    ----------
    text : str
        Program text.
    strict : bool
        Also reject well-formed G/M words outside SUPPORTED_COMMANDS.

    Returns
    -------
    SyntaxReport
        ``is_valid`` is ``True`` when no error was found.
    """
    errors: list[str] = []
    parsed = parse(text)
    for line in parsed:
        if line.kind != "command":
            continue
        for token in line.invalid:
            errors.append(f"line {line.line_number}: invalid word '{token}'")
        if strict:
            for cmd in line.commands:
                if cmd not in SUPPORTED_COMMANDS:
                    errors.append(f"line {line.line_number}: unsupported command '{cmd}'")

    return SyntaxReport(
        is_valid=not errors,
        errors=tuple(errors),
        line_count=len(parsed),
        command_count=sum(1 for line in parsed if line.kind == "command"),
    )


def convert_dialect(
    lines: list[ParsedLine], from_dialect: str, to_dialect: str
) -> list[ParsedLine]:
    """Rewrite command words with the (from, to) rule table.

    Raises
    ------
    GCodeError
        If no rule table exists for the pair.
    """
    rules = DIALECT_RULES.get((from_dialect.lower(), to_dialect.lower()))
    if rules is None:
        raise GCodeError(f"Unsupported dialect conversion: {from_dialect} -> {to_dialect}")
    return [
        line if line.kind != "command"
        else replace(line, commands=tuple(rules.get(c, c) for c in line.commands))
        for line in lines
    ]


# ---------------------------------------------------------------------------
# Machine post-transform
# ---------------------------------------------------------------------------

MAX_CALIBRATION = 1.0
MAX_ORIGIN_OFFSET_MM = 1000.0

# settings-form key → MachineTransform field
_TRANSFORM_ALIASES = {"rev_x": "reverse_x", "rev_y": "reverse_y"}


@dataclass(frozen=True)
class MachineTransform:
    """Per-machine correction applied to a finished program.

    For each X/Y word on a G0/G1 move: mirror when reversed, add the
    origin offset, then scale by ``1 + cal``.  Z only takes its origin
    offset.  Under G91 the offsets are skipped.
    """

    origin_x: float = 0.0
    origin_y: float = 0.0
    origin_z: float = 0.0
    cal_x: float = 0.0
    cal_y: float = 0.0
    reverse_x: bool = False
    reverse_y: bool = False

    @classmethod
    def from_raw(
        cls, raw: Mapping[str, Any] | None = None
    ) -> tuple[MachineTransform, ValidationReport]:
        """Build from form values; unparsable entries fall back to identity."""
        data = {_TRANSFORM_ALIASES.get(k, k): v for k, v in dict(raw or {}).items()}
        report = ValidationReport()
        floats = {
            name: parse_float(name, data.get(name), 0.0, report)
            for name in ("origin_x", "origin_y", "origin_z", "cal_x", "cal_y")
        }
        flags = {
            name: parse_bool(name, data.get(name), False, report)
            for name in ("reverse_x", "reverse_y")
        }
        return cls(**floats, **flags), report

    @property
    def is_identity(self) -> bool:
        return self == MachineTransform()

    def validate(self) -> list[str]:
        """Return one message per out-of-range field (empty when usable)."""
        errors: list[str] = []
        for name in ("cal_x", "cal_y"):
            value = getattr(self, name)
            if not -MAX_CALIBRATION < value <= MAX_CALIBRATION:
                errors.append(
                    f"{name} must be in (-{MAX_CALIBRATION:g}, {MAX_CALIBRATION:g}], got {value:g}"
                )
        for name in ("origin_x", "origin_y", "origin_z"):
            value = getattr(self, name)
            if abs(value) > MAX_ORIGIN_OFFSET_MM:
                errors.append(
                    f"{name} must be within ±{MAX_ORIGIN_OFFSET_MM:g} mm, got {value:g}"
                )
        return errors

    def apply(self, axis: str, value: float, absolute: bool = True) -> float:
        """Transform one axis word value."""
        if axis == "Z":
            return value + self.origin_z if absolute else value
        if axis == "X":
            reverse, origin, cal = self.reverse_x, self.origin_x, self.cal_x
        elif axis == "Y":
            reverse, origin, cal = self.reverse_y, self.origin_y, self.cal_y
        else:
            raise ValueError(f"Unknown axis '{axis}'")
        if reverse:
            value = -value
        if absolute:
            value += origin
        return value * (1.0 + cal)

    def limits(
        self, bounds: tuple[float, float, float, float, float, float]
    ) -> tuple[float, float, float, float, float, float]:
        """Map ``(min_x, max_x, min_y, max_y, min_z, max_z)`` to machine space.

        Mirroring swaps an axis' ends, so each pair is re-sorted.
        """
        min_x, max_x, min_y, max_y, min_z, max_z = bounds
        xs = sorted((self.apply("X", min_x), self.apply("X", max_x)))
        ys = sorted((self.apply("Y", min_y), self.apply("Y", max_y)))
        zs = sorted((self.apply("Z", min_z), self.apply("Z", max_z)))
        return (xs[0], xs[1], ys[0], ys[1], zs[0], zs[1])


def _transform_code(code: str, transform: MachineTransform, absolute: bool) -> str:
    words: list[str] = []
    for part in code.split():
        axis = part[0].upper()
        if axis in _AXIS_WORDS:
            try:
                value = float(part[1:])
            except ValueError:
                words.append(part)
                continue
            words.append(f"{axis}{transform.apply(axis, value, absolute):.4f}")
        else:
            words.append(part)
    return " ".join(words)


def transform_program(text: str, transform: MachineTransform) -> str:
    """Apply ``transform`` to the axis words of every G0/G1 move.

    Motion mode is tracked as in :func:`extract_toolpath`, so continuation
    lines (axis words without a G word) are transformed too; lines with
    other commands (``G28 X0``) are not.  Transformed words are written
    with 4 decimals.  All other lines, indentation and comments are kept
    verbatim.

    Raises
    ------
    GCodeError
        If :meth:`MachineTransform.validate` reports a problem.
    """
    errors = transform.validate()
    if errors:
        raise GCodeError("Invalid machine transform: " + "; ".join(errors))
    if not text or transform.is_identity:
        return text

    out: list[str] = []
    absolute = True
    motion: str | None = None
    changed = 0

    for line in parse(text):
        if line.kind != "command":
            out.append(line.original)
            continue
        if line.has("G90"):
            absolute = True
        elif line.has("G91"):
            absolute = False
        if line.has("G0"):
            motion = "G0"
        elif line.has("G1"):
            motion = "G1"
        elif _ARC_COMMANDS.intersection(line.commands):
            motion = None

        is_move = line.has("G0") or line.has("G1") or (not line.commands and motion is not None)
        if not is_move or not _AXIS_WORDS.intersection(line.parameters):
            out.append(line.original)
            continue

        original = line.original
        indent = original[: len(original) - len(original.lstrip())]
        code, sep, comment = original.strip().partition(";")
        rewritten = indent + _transform_code(code, transform, absolute)
        if sep:
            rewritten = f"{rewritten} ;{comment}"
        out.append(rewritten)
        changed += 1

    logger.debug("Machine transform rewrote %d line(s)", changed)
    return "\n".join(out)
