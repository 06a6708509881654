"""Tests for the placeholder 3D print program."""

from __future__ import annotations

import pytest

from cncai.utils.validators import PrintSettings
from cnc_control.gcode.print_placeholder import (
    generate_placeholder_print,
    infill_step_mm,
)


@pytest.fixture()
def settings() -> PrintSettings:
    return PrintSettings()


class TestInfillStep:
    def test_low_density(self) -> None:
        assert infill_step_mm(20.0) == pytest.approx(16.0)

    def test_high_density_floors_at_minimum(self) -> None:
        assert infill_step_mm(90.0) == pytest.approx(5.0)
        assert infill_step_mm(100.0) == pytest.approx(5.0)

    def test_custom_minimum(self) -> None:
        assert infill_step_mm(100.0, min_step=2.0) == pytest.approx(2.0)


class TestProgram:
    def test_labelled_as_placeholder(self, settings: PrintSettings) -> None:
        program = generate_placeholder_print(settings)
        assert program.lines[0].startswith(";")
        assert "placeholder" in program.lines[0].lower()
        assert program.machine == "print"

    def test_header_and_footer(self, settings: PrintSettings) -> None:
        lines = generate_placeholder_print(settings).lines
        assert lines[1:5] == ["G21 G90 G94", "M82", "M107", "G28"]
        assert lines[-3:] == ["G0 Z15.00 F3000", "M84", "M30"]

    def test_layer_count(self, settings: PrintSettings) -> None:
        lines = generate_placeholder_print(settings).lines
        layers = [l for l in lines if l.startswith("; Layer")]
        # floor(10 / 0.2)
        assert len(layers) == 50
        assert "G0 Z0.00 F3000" in lines
        assert "G0 Z9.80 F3000" in lines

    def test_perimeter_inset(self, settings: PrintSettings) -> None:
        lines = generate_placeholder_print(settings).lines
        assert "G1 X10.00 Y10.00 F2400" in lines
        assert "G1 X290.00 Y10.00" in lines
        assert "G1 X290.00 Y190.00" in lines

    def test_infill_lines(self, settings: PrintSettings) -> None:
        lines = generate_placeholder_print(settings).lines
        first_layer = lines[lines.index("; Layer 1"):lines.index("; Layer 2")]
        infill = [l for l in first_layer if l.startswith("G0 X")]
        # y = 15, 31, ..., 175
        assert len(infill) == 11
        assert infill[0] == "G0 X10.00 Y15.00 F3000"
        assert "G1 X290.00 Y15.00 F3000" in first_layer

    def test_time_estimate(self, settings: PrintSettings) -> None:
        program = generate_placeholder_print(settings)
        assert program.estimated_time_minutes == pytest.approx(50 * 2 / 60)

    def test_image_independent(self) -> None:
        a = generate_placeholder_print(PrintSettings(fill_density=50.0))
        b = generate_placeholder_print(PrintSettings(fill_density=50.0))
        assert a.text == b.text

    def test_small_work_area_warns(self) -> None:
        program = generate_placeholder_print(
            PrintSettings(work_width=15.0, work_height=15.0)
        )
        assert program.warnings
