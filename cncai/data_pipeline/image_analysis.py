"""Image statistics and starting-point machining settings.

Measures a raster and proposes router settings for it:
    1. Downscale so the longest side is at most 1024 px (INTER_AREA)
    2. brightness / contrast: mean and standard deviation of the pixels
    3. sharpness: standard deviation of the 64-bit Laplacian
    4. texture: mean |pixels - GaussianBlur 7×7|
    5. edge_density: percentage of Canny(80, 160) edge pixels
    6. Classify the likely material from the metrics
    7. Start from the material's feed / depth / sensitivity / step-over,
       then nudge for high contrast, blur and busy edges

All metrics are rounded half-up to integers before classification, so the
thresholds below compare whole numbers.

Public API:
    analyze_image(raster, max_dim=1024) → ImageAnalysis
    classify_material(brightness, contrast, sharpness, texture) → str
    recommend_settings(analysis) → Recommendations

The result is advisory: ``Recommendations.as_raw()`` feeds the same
validators as the settings form, so out-of-bounds values are clamped there.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np

from .preprocess import GrayscaleRaster

logger = logging.getLogger(__name__)

ANALYSIS_MAX_DIM = 1024

SOFTWOOD = "softwood"
METAL = "metal"
LIGHT_PLASTIC = "light_plastic"
HARDWOOD = "hardwood"
PLASTIC_OR_HARDWOOD = "plastic_or_hardwood"

MATERIALS = (SOFTWOOD, METAL, LIGHT_PLASTIC, HARDWOOD, PLASTIC_OR_HARDWOOD)


@dataclass(frozen=True)
class MaterialProfile:
    """Baseline router settings for one material.

    ``None`` keeps the generic default for that field.
    """
    feed_rate: float
    max_depth: float
    sensitivity: float
    step_over: Optional[float] = None
    note: str = ""


DEFAULT_PROFILE = MaterialProfile(feed_rate=1200.0, max_depth=0.8, sensitivity=0.5, step_over=5.0)

MATERIAL_PROFILES: Dict[str, MaterialProfile] = {
    SOFTWOOD: MaterialProfile(2000.0, 1.5, 0.7, 6.0, "Soft wood: fast feed, deeper passes"),
    METAL: MaterialProfile(700.0, 0.4, 0.2, 3.0, "Metal: slow feed, shallow passes, fine step-over"),
    LIGHT_PLASTIC: MaterialProfile(1500.0, 1.0, 0.6, None, "Light plastic: moderate feed"),
    HARDWOOD: MaterialProfile(1000.0, 1.2, 0.5, None, "Hard wood: reduced feed"),
}

# Adjustments applied after the material baseline
HIGH_CONTRAST = 60
HIGH_CONTRAST_SENSITIVITY_STEP = 0.1
MAX_SENSITIVITY = 0.9
LOW_SHARPNESS = 30
BLUR_FEED_REDUCTION = 200.0
MIN_FEED_RATE = 500.0
BUSY_EDGE_DENSITY = 50
MIN_STEP_OVER = 2.0


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True)
class ImageAnalysis:
    """Whole-image statistics of the (downscaled) raster.

    Attributes
    ----------
    brightness : int
        Mean intensity, 0-255
    contrast : int
        Intensity standard deviation
    sharpness : int
        Laplacian standard deviation
    texture : int
        Mean absolute difference from a 7×7 Gaussian blur
    edge_density : int
        Canny edge pixels as a percentage of the image
    material : str
        One of ``MATERIALS``
    width, height : int
        Size of the analysed (downscaled) raster in px
    """
    brightness: int
    contrast: int
    sharpness: int
    texture: int
    edge_density: int
    material: str
    width: int
    height: int

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


@dataclass(frozen=True)
class Recommendations:
    """Suggested router/detection settings plus human-readable notes."""
    material: str
    feed_rate: float
    max_depth: float
    sensitivity: float
    step_over: float
    notes: Tuple[str, ...] = field(default_factory=tuple)

    def as_raw(self) -> Dict[str, Any]:
        """Settings-form mapping accepted by RouterSettings / DetectionSettings."""
        return {
            'feed_rate': self.feed_rate,
            'max_depth': self.max_depth,
            'sensitivity': self.sensitivity,
            'step_over': self.step_over,
        }


# ============================================================================
# ANALYSIS
# ============================================================================

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _downscale(pixels: np.ndarray, max_dim: int) -> np.ndarray:
    h, w = pixels.shape
    longest = max(h, w)
    if longest <= max_dim:
        return pixels
    scale = max_dim / longest
    size = (max(1, int(w * scale)), max(1, int(h * scale)))
    logger.debug(f"Analysis downscale {w}x{h} -> {size[0]}x{size[1]}")
    return cv2.resize(pixels, size, interpolation=cv2.INTER_AREA)


def analyze_image(raster: GrayscaleRaster, max_dim: int = ANALYSIS_MAX_DIM) -> ImageAnalysis:
    """Measure brightness, contrast, sharpness, texture and edge density.

    Parameters
    ----------
    raster : GrayscaleRaster
        Image to measure
    max_dim : int
        Longest side of the raster the metrics are computed on

    Returns
    -------
    ImageAnalysis
        Rounded metrics and the classified material

    Raises
    ------
    ValueError
        If ``max_dim`` is not positive
    """
    if max_dim <= 0:
        raise ValueError(f"max_dim must be > 0, got {max_dim}")

    gray = _downscale(np.ascontiguousarray(raster.pixels), max_dim)
    h, w = gray.shape

    mean, stddev = cv2.meanStdDev(gray)
    brightness = _round_half_up(float(mean[0][0]))
    contrast = _round_half_up(float(stddev[0][0]))

    laplacian = cv2.Laplacian(gray, cv2.CV_64F)
    sharpness = _round_half_up(float(laplacian.std()))

    blurred = cv2.GaussianBlur(gray, (7, 7), 0)
    texture = _round_half_up(float(cv2.absdiff(gray, blurred).mean()))

    edges = cv2.Canny(gray, 80, 160)
    edge_density = _round_half_up(cv2.countNonZero(edges) / float(h * w) * 100.0)

    material = classify_material(brightness, contrast, sharpness, texture)
    logger.info(
        f"Image analysis: brightness={brightness} contrast={contrast} "
        f"sharpness={sharpness} texture={texture} edges={edge_density}% -> {material}"
    )
    return ImageAnalysis(
        brightness=brightness,
        contrast=contrast,
        sharpness=sharpness,
        texture=texture,
        edge_density=edge_density,
        material=material,
        width=w,
        height=h,
    )


def classify_material(brightness: float, contrast: float, sharpness: float, texture: float) -> str:
    """First matching rule wins.

    - softwood: contrast < 40 and texture < 30
    - metal: contrast > 70 and sharpness > 80
    - light_plastic: brightness > 180 and contrast < 50
    - hardwood: brightness < 80 and contrast > 60
    - plastic_or_hardwood: anything else
    """
    if contrast < 40 and texture < 30:
        return SOFTWOOD
    if contrast > 70 and sharpness > 80:
        return METAL
    if brightness > 180 and contrast < 50:
        return LIGHT_PLASTIC
    if brightness < 80 and contrast > 60:
        return HARDWOOD
    return PLASTIC_OR_HARDWOOD


# ============================================================================
# RECOMMENDATIONS
# ============================================================================

def recommend_settings(analysis: ImageAnalysis) -> Recommendations:
    """Material baseline plus contrast / sharpness / edge-density nudges."""
    profile = MATERIAL_PROFILES.get(analysis.material)
    notes = []

    feed_rate = DEFAULT_PROFILE.feed_rate
    max_depth = DEFAULT_PROFILE.max_depth
    sensitivity = DEFAULT_PROFILE.sensitivity
    step_over = DEFAULT_PROFILE.step_over
    if profile is not None:
        feed_rate = profile.feed_rate
        max_depth = profile.max_depth
        sensitivity = profile.sensitivity
        if profile.step_over is not None:
            step_over = profile.step_over
        notes.append(profile.note)

    if analysis.contrast > HIGH_CONTRAST:
        sensitivity = min(round(sensitivity + HIGH_CONTRAST_SENSITIVITY_STEP, 2), MAX_SENSITIVITY)
        notes.append("High contrast: edge sensitivity raised")
    if analysis.sharpness < LOW_SHARPNESS:
        feed_rate = max(feed_rate - BLUR_FEED_REDUCTION, MIN_FEED_RATE)
        notes.append("Blurry image: feed reduced for cleaner edges")
    if analysis.edge_density > BUSY_EDGE_DENSITY:
        step_over = max(step_over - 1.0, MIN_STEP_OVER)
        notes.append("Dense detail: step-over reduced")

    return Recommendations(
        material=analysis.material,
        feed_rate=feed_rate,
        max_depth=max_depth,
        sensitivity=sensitivity,
        step_over=step_over,
        notes=tuple(notes),
    )
