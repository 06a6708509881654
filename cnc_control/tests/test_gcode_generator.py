"""Tests for the router / laser G-code emitter.

Validates program structure (preamble, footer, token syntax), number
formatting, per-segment retract/plunge, laser passes and power words,
time estimates, and rejection of malformed point lists.
"""

from __future__ import annotations

import math
import re

import numpy as np
import pytest

from cncai.data_pipeline.edge_tracer import Contour, ContourSet
from cncai.data_pipeline.preprocess import GrayscaleRaster
from cncai.utils.validators import LaserSettings, PrintSettings, RouterSettings
from cnc_control.gcode.generator import (
    GCodeEmitter,
    GCodeError,
    emit,
    emit_laser,
    emit_router,
    router_time_minutes,
)
from cnc_control.toolpath.operations import ToolpathPoint
from cnc_control.toolpath.synthesis import synthesize_contour, synthesize_raster

TOKEN = re.compile(r"^[A-Z]-?\d+(\.\d+)?$")


def _tokens_ok(text: str) -> bool:
    for line in text.splitlines():
        for token in line.split():
            if not TOKEN.match(token):
                return False
    return True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def router() -> RouterSettings:
    return RouterSettings()


@pytest.fixture()
def laser() -> LaserSettings:
    return LaserSettings()


@pytest.fixture()
def two_segments() -> list[ToolpathPoint]:
    return [
        ToolpathPoint(0.0, 0.0, -1.0, rapid=True),
        ToolpathPoint(30.0, 40.0, -1.5),
        ToolpathPoint(100.0, 0.0, -0.25, rapid=True),
        ToolpathPoint(100.0, 10.0, -0.25),
    ]


@pytest.fixture()
def gray_set() -> ContourSet:
    raster = GrayscaleRaster(np.full((50, 50), 128, dtype=np.uint8))
    primary = Contour.from_points([[0, 0], [49, 0], [49, 49], [0, 49]])
    return ContourSet(primary=primary, secondary=(), raster=raster, min_area_px=25.0)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class TestRouterStructure:
    def test_preamble_and_footer(
        self, two_segments: list[ToolpathPoint], router: RouterSettings,
    ) -> None:
        lines = emit_router(two_segments, router).lines
        assert lines[0] == "G21 G90 G17"
        assert lines[1] == "G0 Z5.00"
        assert lines[-2:] == ["M5", "M30"]

    def test_token_syntax(
        self, two_segments: list[ToolpathPoint], router: RouterSettings,
    ) -> None:
        assert _tokens_ok(emit_router(two_segments, router).text)

    def test_exact_segment_layout(
        self, two_segments: list[ToolpathPoint], router: RouterSettings,
    ) -> None:
        lines = emit_router(two_segments, router).lines
        assert lines[2:7] == [
            "G0 X0.00 Y0.00 Z5.00",
            "G1 F800",
            "G1 X0.00 Y0.00 Z-1.000",
            "G1 X30.00 Y40.00 Z-1.500",
            "G0 Z5.00",
        ]
        assert lines[7:12] == [
            "G0 X100.00 Y0.00 Z5.00",
            "G1 F800",
            "G1 X100.00 Y0.00 Z-0.250",
            "G1 X100.00 Y10.00 Z-0.250",
            "G0 Z5.00",
        ]

    def test_white_depth_has_no_negative_zero(self, router: RouterSettings) -> None:
        raster = GrayscaleRaster(np.full((20, 20), 255, dtype=np.uint8))
        contour = Contour.from_points([[0, 0], [19, 0], [19, 19], [0, 19]])
        program = emit_router(synthesize_raster(contour, raster, router), router)
        assert "Z-0.000" not in program.text
        assert "Z0.000" in program.text

    def test_counts_and_length(
        self, two_segments: list[ToolpathPoint], router: RouterSettings,
    ) -> None:
        program = emit_router(two_segments, router)
        assert program.point_count == 4
        assert program.total_path_length_mm == pytest.approx(60.0)
        assert program.machine == "router"

    def test_time_estimate(
        self, two_segments: list[ToolpathPoint], router: RouterSettings,
    ) -> None:
        program = emit_router(two_segments, router)
        expected = 60.0 / 800.0 + (5.0 / 50.0) * (60.0 / 1000.0)
        assert program.estimated_time_minutes == pytest.approx(expected)

    def test_time_ignores_negative_safe_z(self) -> None:
        assert router_time_minutes(100.0, 500.0, -3.0) == pytest.approx(0.2)

    def test_emitter_overhead_constants(
        self, two_segments: list[ToolpathPoint], router: RouterSettings,
    ) -> None:
        emitter = GCodeEmitter(overhead_z_rate=25.0, overhead_path_unit_mm=500.0)
        program = emitter.router(two_segments, router)
        expected = 60.0 / 800.0 + (5.0 / 25.0) * (60.0 / 500.0)
        assert program.estimated_time_minutes == pytest.approx(expected)

    def test_empty_toolpath(self, router: RouterSettings) -> None:
        program = emit_router([], router)
        assert program.lines == ["G21 G90 G17", "G0 Z5.00", "M5", "M30"]
        assert program.total_path_length_mm == 0.0
        assert program.estimated_time_minutes == 0.0
        assert program.warnings


class TestRouterPipeline:
    def test_flat_gray_depth_in_program(
        self, gray_set: ContourSet, router: RouterSettings,
    ) -> None:
        program = emit_router(synthesize_raster(gray_set, settings=router), router)
        depths = {
            line.split()[-1]
            for line in program.lines
            if line.startswith("G1 X")
        }
        assert depths == {"Z-1.494"}

    def test_contour_outer_line_count(
        self, gray_set: ContourSet, router: RouterSettings,
    ) -> None:
        program = emit_router(synthesize_contour(gray_set, settings=router), router)
        cut_lines = [l for l in program.lines if l.startswith("G1 X")]
        assert len(cut_lines) == len(gray_set.primary) + 1

    def test_well_formed_raster_program(
        self, gray_set: ContourSet, router: RouterSettings,
    ) -> None:
        program = emit_router(synthesize_raster(gray_set, settings=router), router)
        assert program.lines[0] == "G21 G90 G17"
        assert program.lines[-2:] == ["M5", "M30"]
        assert _tokens_ok(program.text)


# ---------------------------------------------------------------------------
# Laser
# ---------------------------------------------------------------------------


class TestLaser:
    def test_structure(
        self, two_segments: list[ToolpathPoint], laser: LaserSettings,
    ) -> None:
        lines = emit_laser(two_segments, laser).lines
        assert lines[:3] == ["G21 G90", "G0 X0 Y0", "M3 S800"]
        assert lines[3:7] == [
            "G0 X0.00 Y0.00",
            "G1 F2000",
            "G1 X0.00 Y0.00",
            "G1 X30.00 Y40.00",
        ]
        assert lines[-2:] == ["M5", "M30"]

    def test_token_syntax(
        self, two_segments: list[ToolpathPoint], laser: LaserSettings,
    ) -> None:
        assert _tokens_ok(emit_laser(two_segments, laser).text)

    def test_passes_repeat_path(self, two_segments: list[ToolpathPoint]) -> None:
        once = emit_laser(two_segments, LaserSettings(passes=1))
        thrice = emit_laser(two_segments, LaserSettings(passes=3))
        body_once = once.lines[3:-2]
        assert thrice.lines[3:-2] == body_once * 3
        assert thrice.total_path_length_mm == pytest.approx(3 * once.total_path_length_mm)
        assert thrice.estimated_time_minutes == pytest.approx(3 * 60.0 / 2000.0)

    def test_no_inline_power_by_default(
        self, two_segments: list[ToolpathPoint],
    ) -> None:
        settings = LaserSettings(dynamic_power=True)
        program = emit_laser(two_segments, settings)
        assert not any(l.startswith("G1 X") and " S" in l for l in program.lines)

    def test_inline_power_words(self) -> None:
        points = [
            ToolpathPoint(0.0, 0.0, power=40.16, rapid=True),
            ToolpathPoint(1.0, 0.0, power=12.34),
        ]
        settings = LaserSettings(dynamic_power=True, per_point_power=True)
        lines = emit_laser(points, settings).lines
        assert "G1 X0.00 Y0.00 S402" in lines
        assert "G1 X1.00 Y0.00 S123" in lines

    @pytest.mark.parametrize(
        ("power", "word"),
        [(33.35, "S334"), (12.25, "S123"), (12.24, "S122"), (0.05, "S1"), (100.0, "S1000")],
    )
    def test_power_halves_round_up(
        self, two_segments: list[ToolpathPoint], power: float, word: str,
    ) -> None:
        program = emit_laser(two_segments, LaserSettings(power=power))
        assert program.lines[2] == f"M3 {word}"


# ---------------------------------------------------------------------------
# Dispatch and validation
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_emit_dispatches(
        self, two_segments: list[ToolpathPoint],
        router: RouterSettings, laser: LaserSettings,
    ) -> None:
        assert emit(two_segments, router).machine == "router"
        assert emit(two_segments, laser).machine == "laser"

    def test_emit_rejects_other_settings(self, two_segments: list[ToolpathPoint]) -> None:
        with pytest.raises(GCodeError):
            emit(two_segments, PrintSettings())  # type: ignore[arg-type]


class TestMalformedInput:
    def test_first_point_must_be_rapid(self, router: RouterSettings) -> None:
        with pytest.raises(GCodeError, match="rapid"):
            emit_router([ToolpathPoint(0.0, 0.0)], router)

    def test_non_finite_rejected(self, router: RouterSettings) -> None:
        points = [ToolpathPoint(0.0, 0.0, rapid=True), ToolpathPoint(math.nan, 1.0)]
        with pytest.raises(GCodeError, match="non-finite"):
            emit_router(points, router)

    def test_wrong_type_rejected(self, laser: LaserSettings) -> None:
        with pytest.raises(GCodeError):
            emit_laser([(0.0, 0.0)], laser)  # type: ignore[list-item]

    def test_program_is_immutable(
        self, two_segments: list[ToolpathPoint], router: RouterSettings,
    ) -> None:
        program = emit_router(two_segments, router)
        with pytest.raises(AttributeError):
            program.text = ""  # type: ignore[misc]
