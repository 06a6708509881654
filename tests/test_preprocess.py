"""Tests for image decoding into grayscale rasters.

Verifies:
    - Path, bytes, PIL image and array sources decode to (H, W) uint8
    - RGB/RGBA inputs are converted to luminance
    - Oversized images are downscaled within the pixel budget
    - Rasters are immutable and own their buffer
    - Missing files raise FileNotFoundError

Run: pytest tests/test_preprocess.py -v
"""
import io
import tempfile
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from cncai.data_pipeline.preprocess import GrayscaleRaster, load_raster


@pytest.fixture
def temp_dir():
    """Create temporary directory for test inputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def rgb_image():
    """Synthetic 64x48 RGB image: left half red, right half white."""
    arr = np.full((48, 64, 3), 255, dtype=np.uint8)
    arr[:, :32] = (255, 0, 0)
    return Image.fromarray(arr)


class TestGrayscaleRaster:
    """Tests for the raster container."""

    def test_dimensions(self):
        raster = GrayscaleRaster(np.zeros((30, 40), dtype=np.uint8))
        assert raster.width == 40
        assert raster.height == 30
        assert raster.size == (40, 30)
        assert raster.pixels.size == raster.width * raster.height

    def test_read_only(self):
        raster = GrayscaleRaster(np.zeros((5, 5), dtype=np.uint8))
        with pytest.raises(ValueError):
            raster.pixels[0, 0] = 1

    def test_owns_buffer(self):
        source = np.zeros((5, 5), dtype=np.uint8)
        raster = GrayscaleRaster(source)
        source[0, 0] = 200
        assert raster.pixels[0, 0] == 0

    def test_float_input_clipped(self):
        raster = GrayscaleRaster(np.array([[-5.0, 300.0]]))
        assert raster.pixels.dtype == np.uint8
        assert raster.pixels.tolist() == [[0, 255]]

    def test_rejects_non_2d(self):
        with pytest.raises(ValueError):
            GrayscaleRaster(np.zeros((4, 4, 3), dtype=np.uint8))

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            GrayscaleRaster(np.zeros((0, 10), dtype=np.uint8))

    def test_from_array_rgb(self):
        arr = np.zeros((4, 4, 3), dtype=np.uint8)
        arr[..., 1] = 255
        raster = GrayscaleRaster.from_array(arr)
        # ITU-R 601 luma of pure green
        assert raster.pixels[0, 0] == pytest.approx(150, abs=1)

    def test_from_array_rgba_ignores_alpha(self):
        arr = np.full((4, 4, 4), 255, dtype=np.uint8)
        arr[..., 3] = 0
        raster = GrayscaleRaster.from_array(arr)
        assert raster.pixels[0, 0] == 255

    def test_mean(self):
        raster = GrayscaleRaster(np.array([[0, 100], [200, 100]], dtype=np.uint8))
        assert raster.mean() == pytest.approx(100.0)


class TestLoadRaster:
    """Tests for load_raster sources and size guard."""

    def test_from_path(self, rgb_image, temp_dir):
        path = temp_dir / "input.png"
        rgb_image.save(path)
        raster = load_raster(path)
        assert raster.size == (64, 48)
        assert raster.pixels[0, 63] == 255
        assert raster.pixels[0, 0] < 100

    def test_from_str_path(self, rgb_image, temp_dir):
        path = temp_dir / "input.png"
        rgb_image.save(path)
        assert load_raster(str(path)).size == (64, 48)

    def test_from_bytes(self, rgb_image):
        buf = io.BytesIO()
        rgb_image.save(buf, format="PNG")
        raster = load_raster(buf.getvalue())
        assert raster.size == (64, 48)

    def test_from_pil_image_leaves_caller_image_open(self, rgb_image):
        raster = load_raster(rgb_image)
        assert raster.size == (64, 48)
        # Still usable after loading
        assert rgb_image.getpixel((63, 0)) == (255, 255, 255)

    def test_from_array(self):
        arr = np.full((10, 20), 77, dtype=np.uint8)
        raster = load_raster(arr)
        assert raster.size == (20, 10)
        assert int(raster.pixels[5, 5]) == 77

    def test_downscale_path(self, temp_dir):
        img = Image.new("L", (400, 300), color=90)
        path = temp_dir / "big.png"
        img.save(path)
        raster = load_raster(path, max_pixels=10_000)
        assert raster.width * raster.height <= 10_000
        assert raster.size == (115, 86)
        assert int(raster.pixels[40, 50]) == 90

    def test_downscale_array(self):
        arr = np.full((300, 400), 200, dtype=np.uint8)
        raster = load_raster(arr, max_pixels=10_000)
        assert raster.size == (115, 86)
        assert int(raster.pixels[0, 0]) == 200

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_raster(temp_dir / "missing.png")
