#!/usr/bin/env python3
"""Convert an image into a router, laser or placeholder print program.

Runs the full pipeline once:
    1. Load the image (downscaled to the configured pixel budget)
    2. Detect contours (router/laser only)
    3. Synthesise the toolpath and emit G-code
    4. Write the program atomically, plus an optional contour overlay

Usage::

    # Router raster program with defaults from machine.yaml:
    python scripts/generate_gcode.py photo.png -o photo.gcode

    # Contour-following router program, all contours, deeper cut:
    python scripts/generate_gcode.py photo.png -o out.gcode --mode contour \\
        --set contour_mode=all --set max_depth=4.5

    # Laser engraving, adaptive edges, 2 passes, overlay preview:
    python scripts/generate_gcode.py logo.png -o logo.gcode --machine laser \\
        --set mode=adaptive --set laser_passes=2 --overlay logo_edges.png

    # Start from settings recommended for the image:
    python scripts/generate_gcode.py photo.png -o photo.gcode --analyze

    # Mirror X and shift the origin for a machine homed at the far corner:
    python scripts/generate_gcode.py photo.png -o photo.gcode \\
        --post reverse_x=1 --post origin_x=300

    # Placeholder print program (image is still loaded, geometry ignored):
    python scripts/generate_gcode.py part.png -o part.gcode --machine print

Overrides accept the same keys as the settings form (``feed_rate``,
``safe_z``, ``mode``, ``sensitivity``, ``laser_power``, ...); values
outside their bounds are clamped and reported as warnings.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

_PROJECT_ROOT = str(Path(__file__).resolve().parents[1])
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

import cv2
from PIL import UnidentifiedImageError

from cncai.data_pipeline.edge_tracer import NoEdgesFound, render_overlay
from cncai.utils.fs import atomic_save_image, atomic_write_text
from cncai.utils.logging_config import install_excepthook, setup_logging

from cnc_control.configs.loader import ConfigError, load_config
from cnc_control.gcode.generator import GCodeError
from cnc_control.gcode.library import MachineTransform, transform_program
from cnc_control.pipeline.session import PipelineError, PipelineProgress, Session

logger = logging.getLogger(__name__)


def _parse_overrides(items: list[str]) -> dict[str, str]:
    """``["key=value", ...]`` → dict; values stay strings for validation."""
    overrides: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"Expected key=value, got '{item}'")
        overrides[key.strip()] = value.strip()
    return overrides


def _print_progress(progress: PipelineProgress) -> None:
    logger.debug(
        "%s %3.0f%% %s", progress.stage.name, progress.fraction * 100, progress.message
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Convert an image into G-code",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("image", type=Path, help="Input image (PNG, JPEG, ...)")
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        required=True,
        help="Output G-code path",
    )
    parser.add_argument(
        "--machine",
        "-m",
        choices=["router", "laser", "print"],
        default="router",
        help="Target machine (default: router)",
    )
    parser.add_argument(
        "--mode",
        choices=["raster", "quick", "contour"],
        default="raster",
        help="Router strategy (default: raster)",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Settings override, repeatable",
    )
    parser.add_argument(
        "--post",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Machine correction applied to the written program "
        "(origin_x/y/z, cal_x/y, reverse_x/y), repeatable",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to machine.yaml (default: bundled config)",
    )
    parser.add_argument(
        "--overlay",
        type=Path,
        help="Write a PNG with detected contours drawn over the image",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument(
        "--analyze",
        action="store_true",
        help="Use settings recommended from the image statistics as defaults "
        "(--set still wins)",
    )
    parser.add_argument("--log-file", help="Also log to this file")

    args = parser.parse_args()

    setup_logging(log_level=args.log_level, log_file=args.log_file, context={"app": "cli"})
    install_excepthook()

    try:
        overrides = _parse_overrides(args.overrides)
        post = _parse_overrides(args.post)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        logger.error("Error loading config: %s", e)
        sys.exit(1)

    session = Session(config, progress_cb=_print_progress)

    try:
        session.load_image(args.image)
        if args.analyze:
            analysis, recommendations = session.analyze()
            logger.info(
                "Image looks like %s: brightness=%d contrast=%d sharpness=%d",
                analysis.material,
                analysis.brightness,
                analysis.contrast,
                analysis.sharpness,
            )
            for note in recommendations.notes:
                logger.info("Recommendation: %s", note)
            overrides = {**recommendations.as_raw(), **overrides}
        if args.machine != "print":
            contours = session.detect(overrides, machine=args.machine)
            if args.overlay:
                overlay = cv2.cvtColor(render_overlay(contours), cv2.COLOR_BGR2RGB)
                atomic_save_image(overlay, args.overlay)
                logger.info("Overlay written to %s", args.overlay)
        program = session.generate(args.machine, args.mode, overrides)
    except FileNotFoundError as e:
        logger.error("Image not found: %s", e)
        sys.exit(1)
    except UnidentifiedImageError as e:
        logger.error("Cannot decode image %s: %s", args.image, e)
        sys.exit(1)
    except (NoEdgesFound, PipelineError) as e:
        logger.error("%s", e)
        sys.exit(1)

    text = program.text
    if post:
        transform, report = MachineTransform.from_raw(post)
        for message in report.messages:
            logger.warning("Machine correction: %s", message)
        try:
            text = transform_program(text, transform)
        except GCodeError as e:
            logger.error("%s", e)
            sys.exit(1)

    atomic_write_text(args.output, text)

    check = session.check_program(program)
    if not check.syntax.is_valid:
        for error in check.syntax.errors:
            logger.warning("G-code check: %s", error)
    logger.debug(
        "Rate-based estimate: %.1f min (%.1f rapid, %.1f feed)",
        check.time.total_minutes,
        check.time.rapid_minutes,
        check.time.feed_minutes,
    )

    for warning in program.warnings:
        logger.warning("%s", warning)
    logger.info(
        "Wrote %s: %d lines, %d points, %.1f mm, ~%.1f min",
        args.output,
        len(program.lines),
        program.point_count,
        program.total_path_length_mm,
        program.estimated_time_minutes,
    )


if __name__ == "__main__":
    main()
