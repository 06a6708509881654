"""Toolpath synthesis -- contours + raster + settings to ordered points.

Three strategies:

``synthesize_raster``
    Router scan lines clipped to the primary contour.  Lines run along
    ``scan_direction`` and are spaced ``step_over`` pixels apart (4x in
    quick preview); each line is sampled every 2 px.  Contiguous inside
    runs become segments, depth follows intensity (darker = deeper).
``synthesize_contour``
    Router contour following: each contour is one closed segment, depth
    sampled at each vertex.
``synthesize_laser``
    Laser scan lines every 3 px, samples every 3 px, capped at
    ``max_points``; power constant or scaled by intensity.

Scan lines alternate direction (serpentine): the k-th line that produced
output runs forward for even k and backward for odd k, with both segment
order and point order reversed.

Every function is pure: the contour set and raster are only read.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from cncai.data_pipeline.edge_tracer import Contour, ContourSet
from cncai.data_pipeline.preprocess import GrayscaleRaster
from cncai.utils.geometry import intensity_to_depth, pixel_to_machine, sample_gray_array
from cncai.utils.validators import LaserSettings, RouterSettings

from cnc_control.toolpath.operations import Segment, SynthesisStats, ToolpathPoint

logger = logging.getLogger(__name__)

ROUTER_SAMPLE_SPACING_PX = 2
QUICK_STEP_MULTIPLIER = 4
LASER_SCAN_SPACING_PX = 3
LASER_SAMPLE_SPACING_PX = 3
LASER_MAX_POINTS = 2000


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------


def _resolve(
    contours: ContourSet | Contour,
    raster: GrayscaleRaster | np.ndarray | None,
) -> tuple[Contour, GrayscaleRaster]:
    if isinstance(contours, ContourSet):
        primary = contours.primary
        if raster is None:
            raster = contours.raster
    elif isinstance(contours, Contour):
        primary = contours
    else:
        primary = Contour.from_points(contours)
    if raster is None:
        raise ValueError("A raster is required when synthesising from a bare contour")
    if not isinstance(raster, GrayscaleRaster):
        raster = GrayscaleRaster.from_array(raster)
    return primary, raster


def inside_mask(contour: Contour, shape: tuple[int, int]) -> np.ndarray:
    """Boolean (H, W) mask of pixels inside or on ``contour``."""
    mask = np.zeros(shape, dtype=np.uint8)
    pts = contour.as_cv()
    cv2.fillPoly(mask, [pts], 255)
    cv2.polylines(mask, [pts], True, 255, 1)
    return mask > 0


def _runs(inside: np.ndarray) -> list[tuple[int, int]]:
    """Half-open [start, end) index ranges of consecutive True values."""
    if inside.size == 0:
        return []
    padded = np.concatenate(([0], inside.astype(np.int8), [0]))
    edges = np.flatnonzero(np.diff(padded))
    return list(zip(edges[0::2].tolist(), edges[1::2].tolist()))


def _scan_lines(
    mask: np.ndarray,
    direction: str,
    line_spacing: float,
    sample_spacing: float,
):
    """Yield (along, across, [(start, end), ...]) for each scan line.

    ``along`` are the sample positions on the line, ``across`` is the
    line's fixed coordinate; both in pixels.
    """
    h, w = mask.shape
    along_extent, across_extent = (w, h) if direction == "x" else (h, w)
    along = np.arange(0.0, along_extent, sample_spacing)
    along_idx = np.minimum(along.astype(np.intp), along_extent - 1)

    for across in np.arange(0.0, across_extent, line_spacing):
        across_idx = min(int(across), across_extent - 1)
        if direction == "x":
            inside = mask[across_idx, along_idx]
        else:
            inside = mask[along_idx, across_idx]
        yield along, float(across), _runs(inside)


def _xy(direction: str, along: np.ndarray, across: float) -> tuple[np.ndarray, np.ndarray]:
    if direction == "x":
        return along, np.full(along.shape, across)
    return np.full(along.shape, across), along


def _serpentine(segments: list[Segment], line_number: int) -> list[Segment]:
    if line_number % 2 == 0:
        return segments
    return [seg[::-1] for seg in reversed(segments)]


def _mark_rapid(segment: Segment) -> Segment:
    first = segment[0]
    head = ToolpathPoint(first.x, first.y, first.z, True, first.power)
    tail = [
        p if not p.rapid else ToolpathPoint(p.x, p.y, p.z, False, p.power)
        for p in segment[1:]
    ]
    return [head] + tail


# ---------------------------------------------------------------------------
# Router raster
# ---------------------------------------------------------------------------


def synthesize_raster(
    contours: ContourSet | Contour,
    raster: GrayscaleRaster | np.ndarray | None = None,
    settings: RouterSettings | None = None,
    *,
    quick: bool = False,
    sample_spacing_px: float = ROUTER_SAMPLE_SPACING_PX,
    quick_step_multiplier: float = QUICK_STEP_MULTIPLIER,
    stats: SynthesisStats | None = None,
) -> list[ToolpathPoint]:
    """Serpentine raster scan of the primary contour's interior.

    Parameters
    ----------
    contours : ContourSet | Contour
        Region to fill; a ContourSet contributes its primary contour and
        (when ``raster`` is None) its raster.
    raster : GrayscaleRaster | np.ndarray | None
        Intensity source for depth mapping.
    settings : RouterSettings | None
        Validated router settings; ``None`` uses defaults.
    quick : bool
        Preview mode: line spacing multiplied by ``quick_step_multiplier``.
    sample_spacing_px : float
        Spacing of samples along a line.
    stats : SynthesisStats | None
        Filled in place when given.

    Returns
    -------
    list[ToolpathPoint]
        Flat point list; the first point of every segment has
        ``rapid=True``.  Empty when no line crosses the region.
    """
    settings = settings or RouterSettings()
    stats = stats if stats is not None else SynthesisStats()
    primary, raster = _resolve(contours, raster)

    w, h = raster.width, raster.height
    mask = inside_mask(primary, (h, w))
    line_spacing = settings.step_over * (quick_step_multiplier if quick else 1)
    direction = settings.scan_direction

    points: list[ToolpathPoint] = []
    for along, across, runs in _scan_lines(mask, direction, line_spacing, sample_spacing_px):
        stats.lines_scanned += 1
        segments: list[Segment] = []
        for start, end in runs:
            if end - start < 2:
                continue
            xs, ys = _xy(direction, along[start:end], across)
            z = intensity_to_depth(
                sample_gray_array(raster, xs, ys),
                settings.max_depth,
                settings.use_fixed_z,
                settings.fixed_z_value,
                settings.invert_z,
            )
            mx = pixel_to_machine(xs, w, settings.work_width, settings.origin_x)
            my = pixel_to_machine(ys, h, settings.work_height, settings.origin_y)
            segments.append([
                ToolpathPoint(float(px), float(py), float(pz))
                for px, py, pz in zip(mx, my, z)
            ])

        if not segments:
            continue
        for segment in _serpentine(segments, stats.lines_emitted):
            segment = _mark_rapid(segment)
            points.extend(segment)
            stats.segments += 1
        stats.lines_emitted += 1

    stats.points = len(points)
    logger.info(
        "Raster toolpath: %d points, %d segments on %d/%d lines (%s)",
        stats.points,
        stats.segments,
        stats.lines_emitted,
        stats.lines_scanned,
        "quick" if quick else "full",
    )
    return points


# ---------------------------------------------------------------------------
# Router contour
# ---------------------------------------------------------------------------


def synthesize_contour(
    contour_set: ContourSet,
    raster: GrayscaleRaster | np.ndarray | None = None,
    settings: RouterSettings | None = None,
    *,
    stats: SynthesisStats | None = None,
) -> list[ToolpathPoint]:
    """Follow contour outlines as closed segments.

    ``contour_mode="outer"`` walks the primary contour only; ``"all"``
    walks the primary then every secondary in rank order.  Each segment is
    the contour's vertices followed by its first vertex again.
    """
    settings = settings or RouterSettings()
    stats = stats if stats is not None else SynthesisStats()
    if raster is None:
        raster = contour_set.raster
    elif not isinstance(raster, GrayscaleRaster):
        raster = GrayscaleRaster.from_array(raster)

    selected = [contour_set.primary]
    if settings.contour_mode == "all":
        selected.extend(contour_set.secondary)

    w, h = raster.width, raster.height
    points: list[ToolpathPoint] = []
    for contour in selected:
        if len(contour) == 0:
            continue
        vertices = np.vstack([contour.points, contour.points[:1]]).astype(np.float64)
        xs, ys = vertices[:, 0], vertices[:, 1]
        z = intensity_to_depth(
            sample_gray_array(raster, xs, ys),
            settings.max_depth,
            settings.use_fixed_z,
            settings.fixed_z_value,
            settings.invert_z,
        )
        mx = pixel_to_machine(xs, w, settings.work_width, settings.origin_x)
        my = pixel_to_machine(ys, h, settings.work_height, settings.origin_y)
        for i, (px, py, pz) in enumerate(zip(mx, my, z)):
            points.append(ToolpathPoint(float(px), float(py), float(pz), rapid=i == 0))
        stats.segments += 1

    stats.points = len(points)
    logger.info(
        "Contour toolpath (%s): %d points in %d closed segments",
        settings.contour_mode,
        stats.points,
        stats.segments,
    )
    return points


# ---------------------------------------------------------------------------
# Laser raster
# ---------------------------------------------------------------------------


def synthesize_laser(
    contours: ContourSet | Contour,
    raster: GrayscaleRaster | np.ndarray | None = None,
    settings: LaserSettings | None = None,
    *,
    scan_spacing_px: float = LASER_SCAN_SPACING_PX,
    sample_spacing_px: float = LASER_SAMPLE_SPACING_PX,
    max_points: int = LASER_MAX_POINTS,
    stats: SynthesisStats | None = None,
) -> list[ToolpathPoint]:
    """Serpentine laser scan with a hard point cap.

    Power is ``settings.power`` for every point, or
    ``(intensity / 255) * settings.power`` with ``dynamic_power``.  Output
    stops at exactly ``max_points`` points; a run cut down to a single
    point is dropped.
    """
    settings = settings or LaserSettings()
    stats = stats if stats is not None else SynthesisStats()
    primary, raster = _resolve(contours, raster)

    w, h = raster.width, raster.height
    mask = inside_mask(primary, (h, w))

    points: list[ToolpathPoint] = []
    for along, across, runs in _scan_lines(mask, "x", scan_spacing_px, sample_spacing_px):
        if len(points) >= max_points:
            stats.truncated = True
            break
        stats.lines_scanned += 1
        segments: list[Segment] = []
        budget = max_points - len(points)
        for start, end in runs:
            if budget < 2:
                stats.truncated = True
                break
            if end - start < 2:
                continue
            if end - start > budget:
                end = start + budget
                stats.truncated = True
            xs, ys = _xy("x", along[start:end], across)
            if settings.dynamic_power:
                power = sample_gray_array(raster, xs, ys) / 255.0 * settings.power
            else:
                power = np.full(xs.shape, settings.power)
            mx = pixel_to_machine(xs, w, settings.work_width, settings.origin_x)
            my = pixel_to_machine(ys, h, settings.work_height, settings.origin_y)
            segments.append([
                ToolpathPoint(float(px), float(py), 0.0, power=float(pw))
                for px, py, pw in zip(mx, my, power)
            ])
            budget -= end - start

        if not segments:
            if stats.truncated:
                break
            continue
        for segment in _serpentine(segments, stats.lines_emitted):
            points.extend(_mark_rapid(segment))
            stats.segments += 1
        stats.lines_emitted += 1

    stats.points = len(points)
    if stats.truncated:
        stats.notes.append(f"laser point cap of {max_points} reached")
        logger.warning("Laser toolpath truncated at %d points", max_points)
    logger.info(
        "Laser toolpath: %d points, %d segments (dynamic_power=%s)",
        stats.points,
        stats.segments,
        settings.dynamic_power,
    )
    return points
