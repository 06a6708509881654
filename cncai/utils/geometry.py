"""Raster sampling and pixel/machine coordinate mapping.

Provides:
    - Bilinear grayscale sampling at fractional pixel coordinates
    - Vectorised sampling for scan-line synthesis
    - Pixel → machine (mm) mapping with exact borders
    - Intensity → depth (Z) mapping
    - Polyline length and bounding box

Used by:
    - Toolpath synthesis: depth per visited point, machine coordinates
    - G-code emission: path length for time estimates
    - Tests: sampling determinism, depth bounds

Sampling never raises. It sits on the synthesis hot path, so any invalid
input (empty raster, non-finite coordinate, degenerate destination size)
yields the neutral intensity NEUTRAL_GRAY instead.

Rasters are anything array-like of shape (H, W), or an object exposing
such an array as ``.pixels`` (e.g. GrayscaleRaster). Coordinates are (x, y)
with the origin at the top-left pixel.
"""

import math
from typing import Optional, Sequence, Tuple, Union

import numpy as np

NEUTRAL_GRAY = 128.0

ArrayLike = Union[float, np.ndarray]


def _as_array(raster) -> np.ndarray:
    return np.asarray(getattr(raster, "pixels", raster))


def sample_gray(
    raster,
    x: float,
    y: float,
    dest_size: Optional[Tuple[float, float]] = None
) -> float:
    """Sample intensity at a (possibly fractional) destination coordinate.

    Parameters
    ----------
    raster : array-like or GrayscaleRaster
        (H, W) intensities in [0, 255]
    x, y : float
        Coordinate in destination space
    dest_size : Optional[Tuple[float, float]]
        (width, height) of the destination space; None means the raster
        itself, i.e. raster pixel coordinates

    Returns
    -------
    float
        Bilinear intensity in [0, 255], or NEUTRAL_GRAY on invalid input

    Notes
    -----
    Destination coordinates are scaled by raster_w / dest_w (and
    raster_h / dest_h), then clamped to [0, W-1] × [0, H-1]. At integer
    raster coordinates the fractional weights are zero, so the stored value
    is returned exactly.
    """
    try:
        pixels = _as_array(raster)
        if pixels.ndim != 2 or pixels.size == 0:
            return NEUTRAL_GRAY
        h, w = pixels.shape
        x = float(x)
        y = float(y)
        if not (math.isfinite(x) and math.isfinite(y)):
            return NEUTRAL_GRAY

        if dest_size is not None:
            dest_w, dest_h = float(dest_size[0]), float(dest_size[1])
            if not (dest_w > 0 and dest_h > 0):
                return NEUTRAL_GRAY
            x *= w / dest_w
            y *= h / dest_h

        x = min(max(x, 0.0), w - 1.0)
        y = min(max(y, 0.0), h - 1.0)

        x0 = int(math.floor(x))
        y0 = int(math.floor(y))
        x1 = min(x0 + 1, w - 1)
        y1 = min(y0 + 1, h - 1)
        fx = x - x0
        fy = y - y0

        top = float(pixels[y0, x0]) * (1.0 - fx) + float(pixels[y0, x1]) * fx
        bottom = float(pixels[y1, x0]) * (1.0 - fx) + float(pixels[y1, x1]) * fx
        value = top * (1.0 - fy) + bottom * fy
        if not math.isfinite(value):
            return NEUTRAL_GRAY
        return value
    except (TypeError, ValueError, IndexError, OverflowError):
        return NEUTRAL_GRAY


def sample_gray_array(
    raster,
    xs: ArrayLike,
    ys: ArrayLike,
    dest_size: Optional[Tuple[float, float]] = None
) -> np.ndarray:
    """Vectorised :func:`sample_gray`.

    Parameters
    ----------
    raster : array-like or GrayscaleRaster
        (H, W) intensities
    xs, ys : array-like
        Coordinates in destination space, broadcastable to a common shape
    dest_size : Optional[Tuple[float, float]]
        (width, height) of the destination space, None for raster space

    Returns
    -------
    np.ndarray
        float64 intensities with the broadcast shape of (xs, ys); entries
        with non-finite coordinates are NEUTRAL_GRAY. An unusable raster or
        destination size gives NEUTRAL_GRAY everywhere.
    """
    try:
        xs = np.asarray(xs, dtype=np.float64)
        ys = np.asarray(ys, dtype=np.float64)
        xs, ys = np.broadcast_arrays(xs, ys)
    except (TypeError, ValueError):
        return np.full(np.shape(xs), NEUTRAL_GRAY, dtype=np.float64)

    fallback = np.full(xs.shape, NEUTRAL_GRAY, dtype=np.float64)
    try:
        pixels = _as_array(raster)
    except (TypeError, ValueError):
        return fallback
    if pixels.ndim != 2 or pixels.size == 0:
        return fallback
    h, w = pixels.shape

    sx = xs.copy()
    sy = ys.copy()
    if dest_size is not None:
        try:
            dest_w, dest_h = float(dest_size[0]), float(dest_size[1])
        except (TypeError, ValueError, IndexError):
            return fallback
        if not (dest_w > 0 and dest_h > 0):
            return fallback
        sx *= w / dest_w
        sy *= h / dest_h

    valid = np.isfinite(sx) & np.isfinite(sy)
    sx = np.clip(np.where(valid, sx, 0.0), 0.0, w - 1.0)
    sy = np.clip(np.where(valid, sy, 0.0), 0.0, h - 1.0)

    x0 = np.floor(sx).astype(np.intp)
    y0 = np.floor(sy).astype(np.intp)
    x1 = np.minimum(x0 + 1, w - 1)
    y1 = np.minimum(y0 + 1, h - 1)
    fx = sx - x0
    fy = sy - y0

    data = pixels.astype(np.float64, copy=False)
    top = data[y0, x0] * (1.0 - fx) + data[y0, x1] * fx
    bottom = data[y1, x0] * (1.0 - fx) + data[y1, x1] * fx
    values = top * (1.0 - fy) + bottom * fy

    return np.where(valid & np.isfinite(values), values, NEUTRAL_GRAY)


def pixel_to_machine(
    px: ArrayLike,
    image_extent: float,
    work_extent: float,
    origin: float = 0.0
) -> ArrayLike:
    """Map a pixel coordinate along one axis to machine millimeters.

    ``px * (work_extent / image_extent) + origin``. Evaluated as
    ``px * work / image`` so that px == image_extent lands exactly on
    ``origin + work_extent``.

    Raises
    ------
    ValueError
        If image_extent is not positive
    """
    if not image_extent > 0:
        raise ValueError(f"image_extent must be positive, got {image_extent}")
    return px * work_extent / image_extent + origin


def intensity_to_depth(
    intensity: ArrayLike,
    max_depth: float,
    use_fixed_z: bool = False,
    fixed_z: float = -1.0,
    invert_z: bool = False
) -> ArrayLike:
    """Map intensity to cutting depth (darker = deeper).

    Parameters
    ----------
    intensity : float or np.ndarray
        Gray level(s), clipped to [0, 255]
    max_depth : float
        Depth at intensity 0 (mm, positive)
    use_fixed_z : bool
        Ignore intensity and use ``fixed_z`` everywhere
    fixed_z : float
        Constant Z for fixed mode (mm)
    invert_z : bool
        Negate the result (depths become heights in [0, max_depth])

    Returns
    -------
    float or np.ndarray
        z in [-max_depth, 0] (or [0, max_depth] when inverted); same shape
        as ``intensity``
    """
    if use_fixed_z:
        z = np.full(np.shape(intensity), float(fixed_z)) if np.ndim(intensity) else float(fixed_z)
    else:
        level = np.clip(intensity, 0.0, 255.0)
        z = -((255.0 - level) / 255.0) * max_depth
    if invert_z:
        z = -z
    # Normalise -0.0 so white never prints as "-0.000"
    z = z + 0.0
    if np.ndim(z) == 0:
        return float(z)
    return z


def polyline_length(points: Sequence) -> float:
    """Total XY length of a polyline.

    Parameters
    ----------
    points : array-like
        Vertices, shape (N, 2) or (N, ≥2); extra columns are ignored

    Returns
    -------
    float
        Sum of Euclidean distances between consecutive vertices; 0.0 for
        fewer than 2 points
    """
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[0] < 2:
        return 0.0
    diffs = np.diff(pts[:, :2], axis=0)
    return float(np.hypot(diffs[:, 0], diffs[:, 1]).sum())


def polyline_bbox(points: Sequence) -> Tuple[float, float, float, float]:
    """Axis-aligned bounding box (xmin, ymin, xmax, ymax); zeros if empty."""
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[0] == 0:
        return (0.0, 0.0, 0.0, 0.0)
    return (
        float(pts[:, 0].min()),
        float(pts[:, 1].min()),
        float(pts[:, 0].max()),
        float(pts[:, 1].max()),
    )
