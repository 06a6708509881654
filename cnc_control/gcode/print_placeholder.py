"""Minimal placeholder 3D print program.

**This is not a slicer.**  The loaded image and any model geometry are
ignored: every layer is the same rectangular perimeter, inset from the
work area, plus horizontal infill lines whose spacing depends only on the
fill density.  It exists so that the print machine kind produces a
syntactically valid program for export and simulation.

Layer count is ``floor(work_depth / layer_height)``; the time estimate is
a flat ``seconds_per_layer`` per layer.
"""

from __future__ import annotations

import logging
import math
from io import StringIO

from cncai.utils.validators import PrintSettings

from cnc_control.gcode.generator import GeneratedProgram

logger = logging.getLogger(__name__)

PERIMETER_INSET_MM = 10.0
MIN_INFILL_STEP_MM = 5.0
SECONDS_PER_LAYER = 2.0
TRAVEL_FEED_MM_MIN = 3000
PERIMETER_FEED_MM_MIN = 2400
FINAL_LIFT_Z_MM = 15.0


def infill_step_mm(fill_density: float, min_step: float = MIN_INFILL_STEP_MM) -> float:
    """Infill line spacing: ``max(min_step, 20 * (100 - density) / 100)``."""
    return max(min_step, 20.0 * (100.0 - fill_density) / 100.0)


def generate_placeholder_print(
    settings: PrintSettings,
    *,
    perimeter_inset_mm: float = PERIMETER_INSET_MM,
    min_infill_step_mm: float = MIN_INFILL_STEP_MM,
    seconds_per_layer: float = SECONDS_PER_LAYER,
) -> GeneratedProgram:
    """Build the placeholder print program.

    Parameters
    ----------
    settings : PrintSettings
        Validated print settings.
    perimeter_inset_mm : float
        Distance of the perimeter rectangle from the work-area edges.
    min_infill_step_mm : float
        Lower bound of the infill spacing.
    seconds_per_layer : float
        Flat per-layer time used for the estimate.

    Returns
    -------
    GeneratedProgram
        ``machine="print"``; ``point_count`` counts emitted moves.
    """
    inset = perimeter_inset_mm
    x0, y0 = inset, inset
    x1 = settings.work_width - inset
    y1 = settings.work_height - inset
    layers = int(math.floor(settings.work_depth / settings.layer_height + 1e-9))
    step = infill_step_mm(settings.fill_density, min_infill_step_mm)
    if step <= 0:
        raise ValueError(f"Infill step must be positive, got {step}")
    print_feed = settings.print_speed * 60.0

    warnings: list[str] = []
    if x1 <= x0 or y1 <= y0:
        warnings.append(
            f"work area {settings.work_width:g}x{settings.work_height:g} mm is smaller "
            f"than twice the {inset:g} mm perimeter inset"
        )

    infill_ys: list[float] = []
    y = y0 + 5.0
    while y < y1 - 5.0:
        infill_ys.append(y)
        y += step

    buf = StringIO()
    buf.write("; Minimal placeholder print program (not sliced from a model)\n")
    buf.write("G21 G90 G94\n")
    buf.write("M82\n")
    buf.write("M107\n")
    buf.write("G28\n")

    moves = 0
    for layer in range(layers):
        z = layer * settings.layer_height
        buf.write(f"; Layer {layer + 1}\n")
        buf.write(f"G0 Z{z:.2f} F{TRAVEL_FEED_MM_MIN}\n")
        buf.write(f"G1 X{x0:.2f} Y{y0:.2f} F{PERIMETER_FEED_MM_MIN}\n")
        buf.write(f"G1 X{x1:.2f} Y{y0:.2f}\n")
        buf.write(f"G1 X{x1:.2f} Y{y1:.2f}\n")
        buf.write(f"G1 X{x0:.2f} Y{y1:.2f}\n")
        buf.write(f"G1 X{x0:.2f} Y{y0:.2f}\n")
        moves += 5
        for iy in infill_ys:
            buf.write(f"G0 X{x0:.2f} Y{iy:.2f} F{TRAVEL_FEED_MM_MIN}\n")
            buf.write(f"G1 X{x1:.2f} Y{iy:.2f} F{print_feed:.0f}\n")
            moves += 2

    buf.write(f"G0 Z{FINAL_LIFT_Z_MM:.2f} F{TRAVEL_FEED_MM_MIN}\n")
    buf.write("M84\n")
    buf.write("M30\n")

    width = max(0.0, x1 - x0)
    height = max(0.0, y1 - y0)
    per_layer = 2.0 * (width + height) + len(infill_ys) * width
    minutes = layers * seconds_per_layer / 60.0

    logger.info(
        "Placeholder print program: %d layers, %d infill lines per layer, ~%.1f min",
        layers,
        len(infill_ys),
        minutes,
    )
    return GeneratedProgram(
        text=buf.getvalue(),
        estimated_time_minutes=minutes,
        total_path_length_mm=per_layer * layers,
        point_count=moves,
        warnings=tuple(warnings),
        machine="print",
    )
