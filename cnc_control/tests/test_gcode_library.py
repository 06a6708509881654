"""Tests for the G-code text utilities (parse, extract, analyse, tidy)."""

from __future__ import annotations

import pytest

from cncai.utils.validators import PrintSettings, RouterSettings
from cnc_control.gcode import library
from cnc_control.gcode.generator import GCodeError, emit_router
from cnc_control.gcode.print_placeholder import generate_placeholder_print
from cnc_control.toolpath.operations import ToolpathPoint


@pytest.fixture()
def router_text() -> str:
    points = [
        ToolpathPoint(0.0, 0.0, -1.0, rapid=True),
        ToolpathPoint(30.0, 40.0, -1.5),
        ToolpathPoint(100.0, 0.0, -0.25, rapid=True),
        ToolpathPoint(100.0, 10.0, -0.25),
    ]
    return emit_router(points, RouterSettings()).text


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParse:
    def test_command_normalisation(self) -> None:
        line = library.parse_command("g00 x1.5 Y-2 z0.25", 3)
        assert line.commands == ("G0",)
        assert line.parameters == {"X": 1.5, "Y": -2.0, "Z": 0.25}
        assert line.line_number == 3
        assert line.invalid == ()

    def test_line_kinds(self) -> None:
        lines = library.parse("G21 G90\n\n; just a comment\nG1 X1 ; move")
        assert [l.kind for l in lines] == ["command", "empty", "comment", "command"]
        assert lines[2].comment == "just a comment"
        assert lines[3].comment == "move"
        assert lines[3].parameters == {"X": 1.0}

    def test_invalid_tokens_collected(self) -> None:
        line = library.parse_command("G1 Xabc Q5")
        assert line.invalid == ("Xabc", "Q5")

    @pytest.mark.parametrize("value", ["", None, 42])
    def test_non_text_input(self, value) -> None:
        assert library.parse(value) == []

    def test_stringify_round_trip(self, router_text: str) -> None:
        first = library.parse(router_text)
        second = library.parse(library.stringify(first))
        assert [l.commands for l in first] == [l.commands for l in second]
        assert [l.parameters for l in first] == [l.parameters for l in second]

    def test_stringify_precision(self) -> None:
        lines = library.parse("G1 X1.23456")
        assert library.stringify(lines, precision=2) == "G1 X1.23"


# ---------------------------------------------------------------------------
# Toolpath extraction
# ---------------------------------------------------------------------------


class TestExtract:
    def test_generated_program(self, router_text: str) -> None:
        path = library.extract_toolpath(library.parse(router_text))
        xy = [(p.x, p.y) for p in path if not p.rapid]
        assert (30.0, 40.0) in xy
        assert (100.0, 10.0) in xy
        stats = library.analyze_toolpath(path)
        assert stats.bounds == (0.0, 100.0, 0.0, 40.0, -1.5, 5.0)
        assert stats.total_distance == pytest.approx(
            stats.rapid_distance + stats.feed_distance
        )

    def test_modal_motion(self) -> None:
        path = library.extract_toolpath(library.parse("G1 X1\nX2\nY3"))
        assert [(p.x, p.y) for p in path] == [(1.0, 0.0), (2.0, 0.0), (2.0, 3.0)]
        assert not any(p.rapid for p in path)

    def test_relative_positioning(self) -> None:
        path = library.extract_toolpath(library.parse("G91\nG0 X5\nG1 X5 Y1\nG90\nG1 X0"))
        assert [(p.x, p.y) for p in path] == [(5.0, 0.0), (10.0, 1.0), (0.0, 1.0)]

    def test_feed_only_lines_skipped(self) -> None:
        path = library.extract_toolpath(library.parse("G1 F800\nG1 X0 Y0"))
        assert path == []

    def test_analyze_empty(self) -> None:
        stats = library.analyze_toolpath([])
        assert stats.total_points == 0
        assert stats.bounds == (0.0,) * 6


class TestTimeEstimate:
    def test_rapid_and_feed_rates(self) -> None:
        lines = library.parse("G0 Z1\nG0 X30 Y40\nG1 Z0\nG1 X30 Y0")
        est = library.estimate_machining_time(lines)
        assert est.rapid_distance == pytest.approx(50.0)
        assert est.feed_distance == pytest.approx(41.0)
        assert est.total_minutes == pytest.approx(50.0 / 3000.0 + 41.0 / 1000.0)

    def test_non_positive_rate_rejected(self) -> None:
        with pytest.raises(GCodeError):
            library.estimate_machining_time([], rapid_feed=0)


# ---------------------------------------------------------------------------
# Header / footer / optimise / validate / dialects
# ---------------------------------------------------------------------------


def test_header_and_footer_are_valid() -> None:
    header = library.generate_header(timestamp="2026-01-01T00:00:00+00:00")
    assert header.splitlines()[1] == "; 2026-01-01T00:00:00+00:00"
    text = header + "\n" + library.generate_footer(safe_z=7.5)
    assert "G0 Z7.50 ; safe Z" in text
    assert library.validate(text, strict=True).is_valid


def test_optimize_removes_redundancy() -> None:
    lines = library.parse("G1 F800\nG1 F800\nG1 X1 F800")
    text = library.stringify(library.optimize(lines), precision=0)
    assert text == "G1 F800\nG1 X1"


def test_optimize_keeps_comments() -> None:
    lines = library.parse("; start\nG0 Z5\nG0 Z5")
    assert [l.kind for l in library.optimize(lines)] == ["comment", "command"]


def test_optimize_keeps_repeated_relative_moves() -> None:
    lines = library.parse("G21 G91\nG1 X1\nG1 X1\nG1 X1")
    optimized = library.optimize(lines)
    assert len(optimized) == 4
    reparsed = library.parse(library.stringify(optimized, precision=0))
    assert library.extract_toolpath(reparsed)[-1].x == pytest.approx(3.0)


def test_optimize_forgets_position_after_relative_block() -> None:
    lines = library.parse("G90\nG1 X5\nG91\nG1 X5\nG90\nG1 X5")
    text = library.stringify(library.optimize(lines), precision=0)
    assert text.splitlines()[-1] == "G1 X5"
    final = library.extract_toolpath(library.parse(text))[-1]
    assert final.x == pytest.approx(5.0)


def test_optimize_keeps_per_block_words() -> None:
    lines = library.parse("G90 G1 X0 Y0\nG2 X0 Y0 I5 J0\nG2 X0 Y0 I5 J0\nG4 P1\nG4 P1")
    text = library.stringify(library.optimize(lines), precision=0).splitlines()
    assert text[1:3] == ["G2 I5 J0", "G2 I5 J0"]
    assert text[3:] == ["G4 P1", "G4 P1"]


class TestValidate:
    def test_generated_programs_are_valid(self, router_text: str) -> None:
        assert library.validate(router_text, strict=True).is_valid
        placeholder = generate_placeholder_print(PrintSettings()).text
        assert library.validate(placeholder, strict=True).is_valid

    def test_invalid_word(self) -> None:
        report = library.validate("G1 X1\nG1 Q2")
        assert not report.is_valid
        assert report.errors == ("line 2: invalid word 'Q2'",)
        assert report.command_count == 2

    def test_strict_rejects_unsupported(self) -> None:
        assert library.validate("G92 X0").is_valid
        report = library.validate("G92 X0", strict=True)
        assert not report.is_valid


def test_convert_dialect() -> None:
    lines = library.parse("G21 G90\nG0 X1")
    converted = library.convert_dialect(lines, "GRBL", "LinuxCNC")
    assert [l.commands for l in converted] == [l.commands for l in lines]
    with pytest.raises(GCodeError):
        library.convert_dialect(lines, "grbl", "fanuc")


# ---------------------------------------------------------------------------
# Machine post-transform
# ---------------------------------------------------------------------------


class TestMachineTransform:
    def test_identity_is_a_no_op(self, router_text: str) -> None:
        assert library.transform_program(router_text, library.MachineTransform()) == router_text

    def test_reverse_then_offset_then_scale(self) -> None:
        transform = library.MachineTransform(
            origin_x=10.0, origin_y=-5.0, origin_z=2.0, cal_x=0.1, reverse_y=True,
        )
        out = library.transform_program("G1 X20 Y3 Z-1 F800", transform)
        # X: (20 + 10) * 1.1, Y: -3 - 5, Z: -1 + 2
        assert out == "G1 X33.0000 Y-8.0000 Z1.0000 F800"

    def test_only_moves_are_rewritten(self) -> None:
        text = "G21 G90\n; X5 in a comment\nG28 X0\n  G0 X1 ; start\nM5"
        out = library.transform_program(text, library.MachineTransform(origin_x=1.0))
        assert out.splitlines() == [
            "G21 G90",
            "; X5 in a comment",
            "G28 X0",
            "  G0 X2.0000 ; start",
            "M5",
        ]

    def test_modal_continuation_lines(self) -> None:
        text = "G1 X0 Y0\nX5 Y5\nG2 X1 Y1 I1 J0\nX3"
        out = library.transform_program(text, library.MachineTransform(origin_y=1.0)).splitlines()
        assert out[1] == "X5.0000 Y6.0000"
        assert out[2:] == ["G2 X1 Y1 I1 J0", "X3"]

    def test_relative_moves_skip_origin(self) -> None:
        transform = library.MachineTransform(origin_x=100.0, cal_x=0.5, reverse_x=True)
        out = library.transform_program("G91\nG1 X2\nG90\nG1 X2", transform).splitlines()
        assert out[1] == "G1 X-3.0000"
        assert out[3] == "G1 X147.0000"

    def test_transformed_path_matches_apply(self, router_text: str) -> None:
        transform = library.MachineTransform(origin_x=5.0, origin_y=7.0, cal_y=-0.2)
        text = "G0 X1 Y1 Z9\n" + router_text
        before = library.extract_toolpath(library.parse(text))
        after = library.extract_toolpath(
            library.parse(library.transform_program(text, transform))
        )
        assert len(after) == len(before)
        for a, b in zip(after, before):
            assert a.x == pytest.approx(transform.apply("X", b.x), abs=1e-4)
            assert a.y == pytest.approx(transform.apply("Y", b.y), abs=1e-4)
            assert a.z == pytest.approx(b.z)

    @pytest.mark.parametrize(
        ("field", "value"),
        [("cal_x", 1.5), ("cal_y", -1.0), ("origin_x", 1000.5), ("origin_z", -2000.0)],
    )
    def test_out_of_range_rejected(self, field: str, value: float) -> None:
        transform = library.MachineTransform(**{field: value})
        assert any(field in e for e in transform.validate())
        with pytest.raises(GCodeError, match=field):
            library.transform_program("G1 X1", transform)

    def test_limit_values_accepted(self) -> None:
        transform = library.MachineTransform(cal_x=1.0, origin_y=-1000.0)
        assert transform.validate() == []

    def test_from_raw(self) -> None:
        with pytest.warns(UserWarning, match="cal_y"):
            transform, report = library.MachineTransform.from_raw(
                {"origin_x": "12.5", "rev_x": "on", "cal_y": "oops"}
            )
        assert transform.origin_x == 12.5
        assert transform.reverse_x is True
        assert transform.cal_y == 0.0
        assert any("cal_y" in m for m in report.messages)

    def test_limits_follow_mirroring(self) -> None:
        transform = library.MachineTransform(origin_x=10.0, origin_z=1.0, reverse_x=True)
        assert transform.limits((0.0, 100.0, 0.0, 50.0, -3.0, 5.0)) == (
            -90.0, 10.0, 0.0, 50.0, -2.0, 6.0,
        )
