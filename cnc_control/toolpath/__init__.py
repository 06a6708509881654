"""
Toolpath synthesis.

Turns a detected contour set and its raster into an ordered list of
machine-space points (raster scan, contour following, laser scan).
"""

from cnc_control.toolpath.operations import SynthesisStats, ToolpathPoint, split_segments
from cnc_control.toolpath.synthesis import (
    synthesize_contour,
    synthesize_laser,
    synthesize_raster,
)

__all__ = [
    "SynthesisStats",
    "ToolpathPoint",
    "split_segments",
    "synthesize_contour",
    "synthesize_laser",
    "synthesize_raster",
]
