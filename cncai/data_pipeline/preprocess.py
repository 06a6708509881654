"""Image decoding: file path, bytes or array → GrayscaleRaster.

Converts user-provided images into the single raster type the pipeline
works on:
    1. Decode with Pillow (path, raw bytes, PIL image) or accept an array
    2. Convert to 8-bit luma (ITU-R 601-2, alpha ignored)
    3. Downscale (LANCZOS, aspect preserved) when width*height exceeds
       max_image_pixels
    4. Freeze the pixel buffer (read-only)

Public API:
    load_raster(source, max_pixels=2_000_000) → GrayscaleRaster
    GrayscaleRaster.from_array(pixels)

Rasters are replaced wholesale, never edited: every consumer holding an old
raster keeps a fully valid object after a new image is loaded.
"""

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import cv2
import numpy as np
from PIL import Image

from ..utils import validators

logger = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes, bytearray, np.ndarray, Image.Image]


@dataclass(frozen=True, eq=False)
class GrayscaleRaster:
    """Immutable (H, W) uint8 intensity image.

    Attributes
    ----------
    pixels : np.ndarray
        Read-only uint8 array, shape (H, W), values 0-255
    """
    pixels: np.ndarray

    def __post_init__(self):
        pixels = np.asarray(self.pixels)
        if pixels.ndim != 2:
            raise ValueError(f"Raster must be 2-D (H, W), got shape {pixels.shape}")
        if pixels.size == 0:
            raise ValueError("Raster must not be empty")
        if pixels.dtype != np.uint8:
            pixels = np.clip(pixels, 0, 255).astype(np.uint8)
        # Own the buffer so callers can't mutate it through another view
        pixels = np.array(pixels, dtype=np.uint8, copy=True, order='C')
        pixels.setflags(write=False)
        object.__setattr__(self, 'pixels', pixels)

    @classmethod
    def from_array(cls, pixels: np.ndarray) -> 'GrayscaleRaster':
        """Build from a gray (H, W), RGB/RGBA (H, W, 3|4) or float array."""
        arr = np.asarray(pixels)
        if arr.ndim == 3:
            if arr.dtype != np.uint8:
                arr = np.clip(arr, 0, 255).astype(np.uint8)
            if arr.shape[2] == 4:
                arr = cv2.cvtColor(arr, cv2.COLOR_RGBA2GRAY)
            elif arr.shape[2] == 3:
                arr = cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)
            elif arr.shape[2] == 1:
                arr = arr[:, :, 0]
            else:
                raise ValueError(f"Unsupported channel count: {arr.shape[2]}")
        return cls(arr)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) in pixels."""
        return self.width, self.height

    def mean(self) -> float:
        return float(self.pixels.mean())


def _open_image(source: ImageSource) -> Image.Image:
    if isinstance(source, (bytes, bytearray)):
        return Image.open(io.BytesIO(bytes(source)))
    path = Path(source)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")
    return Image.open(path)


def load_raster(
    source: ImageSource,
    max_pixels: int = validators.DEFAULT_MAX_IMAGE_PIXELS
) -> GrayscaleRaster:
    """Decode an image into a GrayscaleRaster.

    Parameters
    ----------
    source : str, Path, bytes, np.ndarray or PIL.Image.Image
        Image file path, encoded image bytes, decoded pixel array or image
    max_pixels : int
        Pixel budget; larger images are downscaled preserving aspect ratio

    Returns
    -------
    GrayscaleRaster
        Read-only 8-bit raster

    Raises
    ------
    FileNotFoundError
        If a path source doesn't exist
    PIL.UnidentifiedImageError
        If the bytes/file cannot be decoded
    ValueError
        If an array source has an unsupported shape
    """
    if isinstance(source, np.ndarray):
        raster = GrayscaleRaster.from_array(source)
        target = validators.validate_image_size(raster.width, raster.height, max_pixels)
        if target == raster.size:
            return raster
        logger.info(f"Downscaling image from {raster.width}x{raster.height} to {target[0]}x{target[1]}")
        resized = cv2.resize(np.array(raster.pixels), target, interpolation=cv2.INTER_AREA)
        return GrayscaleRaster(resized)

    if isinstance(source, Image.Image):
        gray = source.convert("L")
    else:
        with _open_image(source) as img:
            gray = img.convert("L")

    target = validators.validate_image_size(gray.width, gray.height, max_pixels)
    if target != (gray.width, gray.height):
        logger.info(f"Downscaling image from {gray.width}x{gray.height} to {target[0]}x{target[1]}")
        gray = gray.resize(target, Image.Resampling.LANCZOS)

    raster = GrayscaleRaster(np.asarray(gray, dtype=np.uint8))
    logger.debug(f"Loaded raster {raster.width}x{raster.height}, mean={raster.mean():.1f}")
    return raster
