"""Contour extraction: grayscale raster → ranked closed boundary polygons.

Pipeline (router):
    1. Gaussian blur 5×5
    2. Threshold band from the blurred mean: (1 ± sensitivity) · mean,
       clamped to [0, 255]
    3. Edge operator by mode: Sobel magnitude, |Laplacian|, or Canny
    4. Morphological closing, 3×3 rectangle
    5. Trace component outer boundaries (two-level hierarchy, flat result)
    6. Drop contours with area <= 1% of the image
    7. Stable sort by area, descending; first = primary

Pipeline (laser) differs in step 3 (adaptive threshold, morphological
gradient, Sobel gradient or fixed-band Canny), an extra closing scaled by
detail level, and the 0.2% area threshold.

Operator outputs that are not strictly binary (Sobel, Laplacian, gradients,
adaptive threshold) are traced with every non-zero pixel as foreground.

Public API:
    detect(raster, settings=None, machine=None) → ContourSet
    compute_edge_map(raster, settings) → np.ndarray
    trace_contours(edge_map, min_area_px) → List[Contour]
    render_overlay(contour_set) → BGR np.ndarray
    edge_stats(edge_map) → Dict[str, float]

All coordinates are pixels, (x, y), top-left origin.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

import cv2
import numpy as np
from shapely.geometry import LineString

from ..utils import validators
from ..utils.validators import DetectionSettings
from .preprocess import GrayscaleRaster

logger = logging.getLogger(__name__)

ROUTER_MIN_AREA_FRACTION = 0.01
LASER_MIN_AREA_FRACTION = 0.002

MIN_AREA_FRACTIONS = {
    "router": ROUTER_MIN_AREA_FRACTION,
    "laser": LASER_MIN_AREA_FRACTION,
}


class NoEdgesFound(Exception):
    """No contour survived the area filter.

    Lower the sensitivity (router) or pick another operator, or load a
    clearer, higher-contrast image.
    """
    pass


@dataclass(frozen=True, eq=False)
class Contour:
    """Closed polygon in pixel space.

    Attributes
    ----------
    points : np.ndarray
        Read-only int32 vertices, shape (N, 2), columns (x, y); the closing
        edge back to points[0] is implicit
    area : float
        Absolute polygon area in px²
    """
    points: np.ndarray
    area: float

    @classmethod
    def from_points(cls, points) -> 'Contour':
        """Build from (N, 2) or OpenCV-style (N, 1, 2) vertices."""
        pts = np.array(points, dtype=np.int32).reshape(-1, 2)
        area = abs(float(cv2.contourArea(pts.reshape(-1, 1, 2)))) if len(pts) >= 3 else 0.0
        pts.setflags(write=False)
        return cls(points=pts, area=area)

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def as_cv(self) -> np.ndarray:
        """(N, 1, 2) int32 copy for OpenCV drawing/testing functions."""
        return np.array(self.points).reshape(-1, 1, 2)

    def bounding_box(self) -> Tuple[int, int, int, int]:
        """(x, y, w, h) of the upright bounding rectangle."""
        x, y, w, h = cv2.boundingRect(self.as_cv())
        return int(x), int(y), int(w), int(h)


@dataclass(frozen=True, eq=False)
class ContourSet:
    """Result of one detection pass.

    ``primary`` has the largest area; ``secondary`` holds the remaining
    contours in descending area order (ties keep trace order).
    """
    primary: Contour
    secondary: Tuple[Contour, ...]
    raster: GrayscaleRaster
    min_area_px: float
    machine: str = "router"

    @property
    def contours(self) -> Tuple[Contour, ...]:
        """Primary first, then secondaries in rank order."""
        return (self.primary,) + tuple(self.secondary)

    def __len__(self) -> int:
        return 1 + len(self.secondary)


def _as_raster(raster: Union[GrayscaleRaster, np.ndarray]) -> GrayscaleRaster:
    if isinstance(raster, GrayscaleRaster):
        return raster
    return GrayscaleRaster.from_array(raster)


# ============================================================================
# EDGE OPERATORS
# ============================================================================

def threshold_band(mean: float, sensitivity: float) -> Tuple[float, float]:
    """Canny thresholds ``((1-s)·mean, (1+s)·mean)`` clamped to [0, 255]."""
    lower = max(0.0, (1.0 - sensitivity) * mean)
    upper = min(255.0, (1.0 + sensitivity) * mean)
    return lower, upper


def _sobel_magnitude(blurred: np.ndarray) -> np.ndarray:
    grad_x = cv2.convertScaleAbs(cv2.Sobel(blurred, cv2.CV_16S, 1, 0, ksize=3))
    grad_y = cv2.convertScaleAbs(cv2.Sobel(blurred, cv2.CV_16S, 0, 1, ksize=3))
    return cv2.addWeighted(grad_x, 0.5, grad_y, 0.5, 0)


def _close(edges: np.ndarray, shape: int, size: Tuple[int, int]) -> np.ndarray:
    kernel = cv2.getStructuringElement(shape, size)
    return cv2.morphologyEx(edges, cv2.MORPH_CLOSE, kernel)


def _router_edges(gray: np.ndarray, settings: DetectionSettings) -> np.ndarray:
    blurred = cv2.GaussianBlur(gray, (5, 5), 0)
    lower, upper = threshold_band(float(cv2.mean(blurred)[0]), settings.sensitivity)
    logger.debug(f"Router operator '{settings.mode}', threshold band [{lower:.1f}, {upper:.1f}]")

    if settings.mode == "sobel":
        edges = _sobel_magnitude(blurred)
    elif settings.mode == "laplace":
        edges = cv2.convertScaleAbs(cv2.Laplacian(blurred, cv2.CV_16S, ksize=3))
    else:
        edges = cv2.Canny(blurred, lower, upper)

    return _close(edges, cv2.MORPH_RECT, (3, 3))


def _laser_edges(gray: np.ndarray, settings: DetectionSettings) -> np.ndarray:
    detail = settings.detail_level
    mode = settings.mode

    if mode == "adaptive":
        block_size = max(3, 2 * detail + 1)
        edges = cv2.adaptiveThreshold(
            gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, block_size, 2
        )
        edges = _close(edges, cv2.MORPH_ELLIPSE, (3, 3))
    elif mode == "morphological":
        blurred = cv2.GaussianBlur(gray, (3, 3), 0)
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (3, 3))
        gradient = cv2.subtract(cv2.dilate(blurred, kernel), cv2.erode(blurred, kernel))
        edges = cv2.normalize(gradient, None, 0, 255, cv2.NORM_MINMAX)
    elif mode == "gradient":
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = _close(_sobel_magnitude(blurred), cv2.MORPH_ELLIPSE, (2, 2))
    else:
        blurred = cv2.GaussianBlur(gray, (3, 3), 0)
        edges = cv2.Canny(blurred, 50, 150)

    if detail > 5:
        k = min(3, detail // 3)
        edges = _close(edges, cv2.MORPH_ELLIPSE, (k, k))

    return edges


def compute_edge_map(
    raster: Union[GrayscaleRaster, np.ndarray],
    settings: DetectionSettings
) -> np.ndarray:
    """Run the operator chain for ``settings.machine`` / ``settings.mode``.

    Returns
    -------
    np.ndarray
        uint8 (H, W) edge response; non-zero pixels are foreground
    """
    gray = np.array(_as_raster(raster).pixels)
    if settings.machine == "laser":
        return _laser_edges(gray, settings)
    return _router_edges(gray, settings)


# ============================================================================
# TRACING
# ============================================================================

def simplify_contour(contour: Contour, tolerance_px: float) -> Contour:
    """Douglas-Peucker simplification of a closed contour (shapely).

    Returns the input unchanged when the tolerance is not positive or the
    result would have fewer than 3 distinct vertices.
    """
    if tolerance_px <= 0 or len(contour) < 4:
        return contour
    ring = np.vstack([contour.points, contour.points[:1]]).astype(np.float64)
    simplified = LineString(ring).simplify(tolerance_px, preserve_topology=True)
    coords = np.asarray(simplified.coords)[:-1]
    if len(coords) < 3:
        return contour
    return Contour.from_points(np.rint(coords))


def trace_contours(
    edge_map: np.ndarray,
    min_area_px: float,
    simplify_px: float = 0.0
) -> List[Contour]:
    """Trace outer boundaries of edge components and filter by area.

    Parameters
    ----------
    edge_map : np.ndarray
        (H, W) operator output; non-zero = foreground
    min_area_px : float
        Contours with area <= this are dropped
    simplify_px : float
        Optional Douglas-Peucker tolerance, 0 disables

    Returns
    -------
    List[Contour]
        Surviving contours, largest area first; equal areas keep the
        tracer's order

    Notes
    -----
    Uses a two-level hierarchy and keeps only top-level boundaries. A
    closed 1-px edge ring therefore yields its outer boundary once, not a
    second "hole" contour for its inner rim.
    """
    binary = np.where(np.asarray(edge_map) > 0, 255, 0).astype(np.uint8)
    found, hierarchy = cv2.findContours(binary, cv2.RETR_CCOMP, cv2.CHAIN_APPROX_SIMPLE)
    if hierarchy is None or len(found) == 0:
        return []

    kept: List[Contour] = []
    for cnt, (_, _, _, parent) in zip(found, hierarchy[0]):
        if parent != -1:
            continue
        contour = Contour.from_points(cnt)
        if simplify_px > 0:
            contour = simplify_contour(contour, simplify_px)
        if contour.area > min_area_px:
            kept.append(contour)

    # sorted() is stable, also with reverse=True
    return sorted(kept, key=lambda c: c.area, reverse=True)


def detect(
    raster: Union[GrayscaleRaster, np.ndarray],
    settings: Optional[DetectionSettings] = None,
    machine: Optional[str] = None,
    simplify_px: float = 0.0,
    min_area_fraction: Optional[float] = None
) -> ContourSet:
    """Detect and rank closed contours in a raster.

    Parameters
    ----------
    raster : GrayscaleRaster or np.ndarray
        Source image (arrays are converted to a GrayscaleRaster)
    settings : Optional[DetectionSettings]
        Operator settings; None uses the defaults for ``machine``
    machine : Optional[str]
        "router" or "laser"; must agree with settings.machine when both
        are given. Defaults to settings.machine, else "router".
    simplify_px : float
        Optional contour simplification tolerance (px), 0 disables
    min_area_fraction : Optional[float]
        Override of the area threshold as a fraction of W*H; None uses
        1% (router) or 0.2% (laser)

    Returns
    -------
    ContourSet
        Primary (largest) and secondary contours plus the source raster

    Raises
    ------
    NoEdgesFound
        If no contour exceeds the machine's area threshold
    ValueError
        If ``machine`` contradicts ``settings.machine``
    """
    if settings is None:
        kind = machine or "router"
        settings = DetectionSettings(machine=kind, mode=validators.DEFAULT_MODES[kind])
    elif machine is not None and machine != settings.machine:
        raise ValueError(f"machine '{machine}' does not match settings for '{settings.machine}'")

    raster = _as_raster(raster)
    if min_area_fraction is None:
        min_area_fraction = MIN_AREA_FRACTIONS[settings.machine]
    min_area_px = min_area_fraction * raster.width * raster.height

    edges = compute_edge_map(raster, settings)
    contours = trace_contours(edges, min_area_px, simplify_px=simplify_px)

    if not contours:
        raise NoEdgesFound(
            f"No contour larger than {min_area_px:.0f} px² found "
            f"({settings.machine}/{settings.mode}, sensitivity={settings.sensitivity:.2f}). "
            "Try lowering the sensitivity or load a clearer image."
        )

    logger.info(
        f"Detected {len(contours)} contour(s) ({settings.machine}/{settings.mode}), "
        f"primary area {contours[0].area:.0f} px²"
    )
    return ContourSet(
        primary=contours[0],
        secondary=tuple(contours[1:]),
        raster=raster,
        min_area_px=min_area_px,
        machine=settings.machine,
    )


# ============================================================================
# VISUALISATION / DIAGNOSTICS
# ============================================================================

def render_overlay(
    contour_set: ContourSet,
    primary_color: Tuple[int, int, int] = (0, 255, 0),
    secondary_color: Tuple[int, int, int] = (0, 255, 255),
    thickness: int = 2
) -> np.ndarray:
    """Draw contours over a BGR copy of the raster.

    Primary in green, secondaries in yellow (BGR defaults).
    """
    canvas = cv2.cvtColor(np.array(contour_set.raster.pixels), cv2.COLOR_GRAY2BGR)
    if contour_set.secondary:
        cv2.polylines(
            canvas, [c.as_cv() for c in contour_set.secondary], True, secondary_color, thickness
        )
    cv2.polylines(canvas, [contour_set.primary.as_cv()], True, primary_color, thickness)
    return canvas


def edge_stats(edge_map: np.ndarray) -> Dict[str, float]:
    """Mean, standard deviation and non-zero count of an edge map."""
    edges = np.asarray(edge_map, dtype=np.uint8)
    mean, stddev = cv2.meanStdDev(edges)
    return {
        'mean': float(mean[0][0]),
        'stddev': float(stddev[0][0]),
        'nonzero': int(cv2.countNonZero(edges)),
        'coverage': float(cv2.countNonZero(edges)) / edges.size if edges.size else 0.0,
    }
