"""Toolpath vocabulary -- the points between synthesis and G-code.

A toolpath is a flat, ordered list of :class:`ToolpathPoint`.  A point
with ``rapid=True`` starts a new *segment*: the tool travels to it at safe
height, then plunges (router) or switches to engraving feed (laser).  All
following non-rapid points up to the next rapid point are fed through in
order.

Coordinates are machine millimetres.  ``z`` is depth (<= 0 below the
surface unless inverted); ``power`` is the laser power in percent and is
only set by the laser synthesiser.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

Segment = list["ToolpathPoint"]
"""One rapid-entered run of feed moves."""


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ToolpathPoint:
    """Single toolpath vertex.

    Parameters
    ----------
    x, y : float
        Machine position in mm.
    z : float
        Depth in mm.  Laser points carry 0.0.
    rapid : bool
        ``True`` for the first point of a segment.
    power : float | None
        Laser power in percent, ``None`` for router points.
    """

    x: float
    y: float
    z: float = 0.0
    rapid: bool = False
    power: float | None = None

    def is_finite(self) -> bool:
        values = (self.x, self.y, self.z)
        if self.power is not None:
            values += (self.power,)
        return all(math.isfinite(v) for v in values)


@dataclass
class SynthesisStats:
    """Counters collected while synthesising one toolpath."""

    lines_scanned: int = 0
    lines_emitted: int = 0
    segments: int = 0
    points: int = 0
    truncated: bool = False
    notes: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Segment helpers
# ---------------------------------------------------------------------------


def split_segments(points: list[ToolpathPoint]) -> list[Segment]:
    """Regroup a flat point list into segments at ``rapid`` flags.

    Points before the first rapid point (malformed input) form a leading
    segment of their own so no point is silently dropped.
    """
    segments: list[Segment] = []
    for point in points:
        if point.rapid or not segments:
            segments.append([point])
        else:
            segments[-1].append(point)
    return segments


def flatten_segments(segments: list[Segment]) -> list[ToolpathPoint]:
    """Inverse of :func:`split_segments`.

    The first point of every non-empty segment is marked rapid, the rest
    are marked as feed moves.
    """
    points: list[ToolpathPoint] = []
    for segment in segments:
        for i, p in enumerate(segment):
            rapid = i == 0
            if p.rapid != rapid:
                p = ToolpathPoint(p.x, p.y, p.z, rapid, p.power)
            points.append(p)
    return points


def segment_length(segment: Segment) -> float:
    """XY feed length of one segment in mm."""
    total = 0.0
    for a, b in zip(segment, segment[1:]):
        total += math.hypot(b.x - a.x, b.y - a.y)
    return total


def feed_length(points: list[ToolpathPoint]) -> float:
    """Summed XY feed length over all segments (rapids excluded), mm."""
    return sum(segment_length(s) for s in split_segments(points))


def rapid_length(points: list[ToolpathPoint]) -> float:
    """XY travel between consecutive segments (end → next start), mm."""
    segments = split_segments(points)
    total = 0.0
    for prev, nxt in zip(segments, segments[1:]):
        total += math.hypot(nxt[0].x - prev[-1].x, nxt[0].y - prev[-1].y)
    return total
