"""G-code emitter -- toolpath points to router / laser programs.

Output is plain newline-separated ASCII.  Fixed precision throughout:
positions 2 decimals, depths 3 decimals, feeds and spindle values 0
decimals.  The first line is always the units/positioning preamble and the
last two lines are always ``M5`` / ``M30``.

Router program::

    G21 G90 G17
    G0 Z<safe>
    G0 X.. Y.. Z<safe>      ; per segment: rapid to start at safe height
    G1 F<feed>
    G1 X.. Y.. Z..          ; one line per point, start point included
    G0 Z<safe>              ; retract
    M5
    M30

Laser program::

    G21 G90
    G0 X0 Y0
    M3 S<power*10>
    G0 X.. Y..              ; per segment, whole list repeated per pass
    G1 F<speed>
    G1 X.. Y..[ S..]        ; inline S only with per-point power
    M5
    M30

Emission is all-or-nothing: malformed input raises :class:`GCodeError`
before any text is returned.  Nothing here touches the filesystem.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from io import StringIO

from cncai.utils.validators import LaserSettings, RouterSettings

from cnc_control.toolpath.operations import (
    Segment,
    ToolpathPoint,
    feed_length,
    split_segments,
)

logger = logging.getLogger(__name__)

OVERHEAD_Z_RATE = 50.0
OVERHEAD_PATH_UNIT_MM = 1000.0


class GCodeError(Exception):
    """Raised when G-code generation fails due to invalid input."""

    pass


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeneratedProgram:
    """Immutable emission result.

    Parameters
    ----------
    text : str
        Complete G-code program.
    estimated_time_minutes : float
        Machining time estimate.
    total_path_length_mm : float
        XY feed length actually machined (all passes).
    point_count : int
        Toolpath points in the program (per pass).
    warnings : tuple[str, ...]
        Non-fatal notes (settings clamping, point caps, ...).
    machine : str
        ``"router"``, ``"laser"`` or ``"print"``.
    """

    text: str
    estimated_time_minutes: float
    total_path_length_mm: float
    point_count: int
    warnings: tuple[str, ...] = ()
    machine: str = "router"

    @property
    def lines(self) -> list[str]:
        return self.text.splitlines()

    def with_warnings(self, extra: list[str] | tuple[str, ...]) -> GeneratedProgram:
        """Copy with ``extra`` appended to the warnings."""
        if not extra:
            return self
        return GeneratedProgram(
            text=self.text,
            estimated_time_minutes=self.estimated_time_minutes,
            total_path_length_mm=self.total_path_length_mm,
            point_count=self.point_count,
            warnings=self.warnings + tuple(extra),
            machine=self.machine,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _xy(x: float, y: float) -> str:
    return f"X{x:.2f} Y{y:.2f}"


def _s(power_pct: float) -> str:
    """Spindle/laser word: percent → S0..S1000, halves round up."""
    return f"S{math.floor(power_pct * 10 + 0.5)}"


def _check_points(points: list[ToolpathPoint]) -> list[Segment]:
    """Validate a toolpath and split it into segments.

    Raises
    ------
    GCodeError
        If the first point is not rapid or any value is non-finite.
    """
    for i, p in enumerate(points):
        if not isinstance(p, ToolpathPoint):
            raise GCodeError(f"Point {i} is {type(p).__name__}, expected ToolpathPoint")
        if not p.is_finite():
            raise GCodeError(f"Point {i} has a non-finite coordinate: {p}")
    if points and not points[0].rapid:
        raise GCodeError("Toolpath must start with a rapid point")
    return split_segments(points)


def router_time_minutes(
    length_mm: float,
    feed_rate: float,
    safe_z: float,
    overhead_z_rate: float = OVERHEAD_Z_RATE,
    overhead_path_unit_mm: float = OVERHEAD_PATH_UNIT_MM,
) -> float:
    """``L/feed + (max(0, safe_z)/overhead_z_rate) * (L/overhead_path_unit_mm)``."""
    if feed_rate <= 0:
        raise GCodeError(f"Feed rate must be positive, got {feed_rate}")
    overhead = (max(0.0, safe_z) / overhead_z_rate) * (length_mm / overhead_path_unit_mm)
    return length_mm / feed_rate + overhead


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


class GCodeEmitter:
    """Serialise toolpath points into router or laser programs.

    Parameters
    ----------
    overhead_z_rate : float
        Divisor of safe Z in the router retract/plunge overhead term.
    overhead_path_unit_mm : float
        Path length unit the overhead term scales with.
    """

    def __init__(
        self,
        overhead_z_rate: float = OVERHEAD_Z_RATE,
        overhead_path_unit_mm: float = OVERHEAD_PATH_UNIT_MM,
    ) -> None:
        self._overhead_z_rate = overhead_z_rate
        self._overhead_path_unit_mm = overhead_path_unit_mm

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def router(
        self, points: list[ToolpathPoint], settings: RouterSettings
    ) -> GeneratedProgram:
        """Emit a router program (raster or contour toolpath).

        Raises
        ------
        GCodeError
            If the point list is malformed.
        """
        segments = _check_points(points)
        safe = f"Z{settings.safe_z:.2f}"
        feed = f"F{settings.feed_rate:.0f}"

        buf = StringIO()
        buf.write("G21 G90 G17\n")
        buf.write(f"G0 {safe}\n")
        for segment in segments:
            start = segment[0]
            buf.write(f"G0 {_xy(start.x, start.y)} {safe}\n")
            buf.write(f"G1 {feed}\n")
            for p in segment:
                buf.write(f"G1 {_xy(p.x, p.y)} Z{p.z:.3f}\n")
            buf.write(f"G0 {safe}\n")
        self._write_footer(buf)

        length = feed_length(points)
        minutes = router_time_minutes(
            length,
            settings.feed_rate,
            settings.safe_z,
            self._overhead_z_rate,
            self._overhead_path_unit_mm,
        )
        warnings = () if points else ("empty toolpath: program contains no cuts",)
        logger.info(
            "Router program: %d points, %d segments, %.1f mm, ~%.1f min",
            len(points),
            len(segments),
            length,
            minutes,
        )
        return GeneratedProgram(
            text=buf.getvalue(),
            estimated_time_minutes=minutes,
            total_path_length_mm=length,
            point_count=len(points),
            warnings=warnings,
            machine="router",
        )

    def laser(
        self, points: list[ToolpathPoint], settings: LaserSettings
    ) -> GeneratedProgram:
        """Emit a laser program; the segment list is repeated per pass.

        Inline ``S`` words are written only when both ``per_point_power``
        and ``dynamic_power`` are set; otherwise the power set by the
        header ``M3`` applies to every move.
        """
        segments = _check_points(points)
        feed = f"F{settings.speed:.0f}"
        inline_power = settings.per_point_power and settings.dynamic_power

        buf = StringIO()
        buf.write("G21 G90\n")
        buf.write("G0 X0 Y0\n")
        buf.write(f"M3 {_s(settings.power)}\n")
        for _ in range(settings.passes):
            for segment in segments:
                start = segment[0]
                buf.write(f"G0 {_xy(start.x, start.y)}\n")
                buf.write(f"G1 {feed}\n")
                for p in segment:
                    if inline_power:
                        power = settings.power if p.power is None else p.power
                        buf.write(f"G1 {_xy(p.x, p.y)} {_s(power)}\n")
                    else:
                        buf.write(f"G1 {_xy(p.x, p.y)}\n")
        self._write_footer(buf)

        length = feed_length(points) * settings.passes
        minutes = length / settings.speed
        warnings = () if points else ("empty toolpath: program contains no engraving moves",)
        logger.info(
            "Laser program: %d points x %d pass(es), %.1f mm, ~%.1f min",
            len(points),
            settings.passes,
            length,
            minutes,
        )
        return GeneratedProgram(
            text=buf.getvalue(),
            estimated_time_minutes=minutes,
            total_path_length_mm=length,
            point_count=len(points),
            warnings=warnings,
            machine="laser",
        )

    # ------------------------------------------------------------------
    # Footer
    # ------------------------------------------------------------------

    def _write_footer(self, buf: StringIO) -> None:
        buf.write("M5\n")
        buf.write("M30\n")


# ---------------------------------------------------------------------------
# Module-level API
# ---------------------------------------------------------------------------

_default_emitter = GCodeEmitter()


def emit_router(
    points: list[ToolpathPoint], settings: RouterSettings
) -> GeneratedProgram:
    """Router program with the default time-estimate constants."""
    return _default_emitter.router(points, settings)


def emit_laser(
    points: list[ToolpathPoint], settings: LaserSettings
) -> GeneratedProgram:
    """Laser program."""
    return _default_emitter.laser(points, settings)


def emit(
    points: list[ToolpathPoint],
    settings: RouterSettings | LaserSettings,
    emitter: GCodeEmitter | None = None,
) -> GeneratedProgram:
    """Dispatch on the settings type.

    Raises
    ------
    GCodeError
        If ``settings`` is neither router nor laser settings.
    """
    emitter = emitter or _default_emitter
    if isinstance(settings, RouterSettings):
        return emitter.router(points, settings)
    if isinstance(settings, LaserSettings):
        return emitter.laser(points, settings)
    raise GCodeError(f"Unsupported settings type: {type(settings).__name__}")
