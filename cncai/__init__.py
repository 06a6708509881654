"""CNC AI: raster image to machine toolpaths.

This package contains the image-side layers of the pipeline: grayscale
sampling, settings validation, image decoding and contour extraction.
Machine-side code (toolpath synthesis, G-code emission, session
orchestration) lives in the sibling ``cnc_control`` package.

Architecture layers (strict one-way dependency):
    scripts/ → cnc_control/ → cncai/data_pipeline/ → cncai/utils/

Key invariants:
    - Grayscale rasters are uint8, (H, W), immutable once built
    - Pixel coordinates are (x, y) with the origin at the image top-left
    - Machine geometry in millimeters end-to-end
    - Feed rates in mm/min (the G-code ``F`` unit)
    - YAML-only configs
"""

__version__ = "2.5.0"
