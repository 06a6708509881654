"""Image-side pipeline stages.

Modules:
    - preprocess: image decoding (path/bytes/array → GrayscaleRaster) with
      the max-pixel guard
    - edge_tracer: edge operators, contour tracing, area filter and ranking
    - image_analysis: whole-image statistics and recommended router settings

Workflow:
    1. load_raster(path) → GrayscaleRaster
    2. detect(raster, settings) → ContourSet (primary + secondary)
    3. Hand the ContourSet to cnc_control.toolpath for synthesis
"""

from .edge_tracer import Contour, ContourSet, NoEdgesFound, detect, render_overlay
from .image_analysis import ImageAnalysis, Recommendations, analyze_image, recommend_settings
from .preprocess import GrayscaleRaster, load_raster

__all__ = [
    'Contour',
    'ContourSet',
    'GrayscaleRaster',
    'ImageAnalysis',
    'NoEdgesFound',
    'Recommendations',
    'analyze_image',
    'detect',
    'load_raster',
    'recommend_settings',
    'render_overlay',
]
