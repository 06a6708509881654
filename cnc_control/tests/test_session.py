"""Tests for the pipeline session, detector readiness and request gate."""

from __future__ import annotations

from dataclasses import replace

import numpy as np
import pytest

from cncai.data_pipeline.edge_tracer import NoEdgesFound
from cnc_control.configs.loader import GCodeConfig, PipelineConfig, load_config
from cnc_control.gcode import library
from cnc_control.pipeline import (
    DetectorNotReady,
    GenerationFailure,
    ImageNotReady,
    PipelineProgress,
    RequestGate,
    Session,
    Stage,
    ensure_detector_ready,
)


def _square_image(size: int = 100, side: int = 40) -> np.ndarray:
    img = np.full((size, size), 255, dtype=np.uint8)
    start = (size - side) // 2
    img[start:start + side, start:start + side] = 0
    return img


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def config() -> PipelineConfig:
    return load_config()


@pytest.fixture()
def session(config: PipelineConfig) -> Session:
    return Session(config, detector_probe=lambda: True)


@pytest.fixture()
def detected(session: Session) -> Session:
    session.load_image(_square_image())
    session.detect()
    return session


# ---------------------------------------------------------------------------
# Detector readiness
# ---------------------------------------------------------------------------


class TestDetectorReadiness:
    def test_ready_first_time(self) -> None:
        sleeps: list[float] = []
        assert ensure_detector_ready(lambda: True, sleep=sleeps.append) == 1
        assert sleeps == []

    def test_retries_until_ready(self) -> None:
        results = iter([False, False, True])
        sleeps: list[float] = []
        attempt = ensure_detector_ready(
            lambda: next(results), max_attempts=5, poll_interval_s=0.25,
            sleep=sleeps.append,
        )
        assert attempt == 3
        assert sleeps == [0.25, 0.25]

    def test_gives_up_after_budget(self) -> None:
        sleeps: list[float] = []
        with pytest.raises(DetectorNotReady, match="3 attempts"):
            ensure_detector_ready(
                lambda: False, max_attempts=3, poll_interval_s=0.1,
                sleep=sleeps.append,
            )
        # no sleep after the last attempt
        assert len(sleeps) == 2

    def test_session_probes_once(self, config: PipelineConfig) -> None:
        calls: list[int] = []

        def probe() -> bool:
            calls.append(1)
            return True

        session = Session(config, detector_probe=probe)
        session.load_image(_square_image())
        session.detect()
        session.detect()
        assert len(calls) == 1

    def test_session_detect_not_ready(self, config: PipelineConfig) -> None:
        session = Session(config, detector_probe=lambda: False, sleep=lambda s: None)
        session.load_image(_square_image())
        with pytest.raises(DetectorNotReady):
            session.detect()
        assert session.state.contours is None


# ---------------------------------------------------------------------------
# Request gate
# ---------------------------------------------------------------------------


class TestRequestGate:
    def test_waits_for_quiet_period(self) -> None:
        clock = FakeClock()
        gate = RequestGate(debounce_s=0.3, clock=clock)
        gate.submit(lambda: "done")
        assert gate.poll() is None
        clock.now = 0.31
        result = gate.poll()
        assert result is not None
        assert result.value == "done"
        assert result.current
        assert not gate.has_pending

    def test_newer_request_supersedes_pending(self) -> None:
        clock = FakeClock()
        gate = RequestGate(debounce_s=0.3, clock=clock)
        calls: list[int] = []
        first = gate.submit(calls.append, 1)
        clock.now = 0.2
        second = gate.submit(calls.append, 2)
        assert second > first
        assert not gate.is_current(first)
        # quiet period restarts from the newer submit
        clock.now = 0.4
        assert gate.poll() is None
        clock.now = 0.6
        result = gate.poll()
        assert result is not None and result.ticket == second
        assert calls == [2]

    def test_flush_ignores_quiet_period(self) -> None:
        gate = RequestGate(debounce_s=10.0, clock=FakeClock())
        gate.submit(lambda x: x * 2, 21)
        result = gate.flush()
        assert result is not None and result.value == 42
        assert gate.flush() is None

    def test_stale_result_flagged(self) -> None:
        gate = RequestGate(debounce_s=0.0, clock=FakeClock())
        ticket = gate.submit(gate.submit, lambda: None)
        result = gate.flush()
        assert result is not None and result.ticket == ticket
        assert not result.current

    def test_cancel(self) -> None:
        gate = RequestGate(debounce_s=0.0, clock=FakeClock())
        gate.submit(lambda: 1)
        gate.cancel()
        assert gate.poll() is None

    def test_exception_propagates_and_clears(self) -> None:
        gate = RequestGate(debounce_s=0.0, clock=FakeClock())

        def boom() -> None:
            raise RuntimeError("boom")

        gate.submit(boom)
        with pytest.raises(RuntimeError):
            gate.poll()
        assert not gate.has_pending


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class TestSessionState:
    def test_initial_state(self, session: Session) -> None:
        assert not session.state.has_image
        assert not session.state.has_contours
        assert session.last_program is None

    def test_detect_without_image(self, session: Session) -> None:
        with pytest.raises(ImageNotReady):
            session.detect()

    def test_generate_without_contours(self, session: Session) -> None:
        with pytest.raises(ImageNotReady):
            session.generate("router")
        session.load_image(_square_image())
        with pytest.raises(ImageNotReady):
            session.generate("laser")

    def test_load_clears_contours(self, detected: Session) -> None:
        assert detected.state.has_contours
        revision = detected.state.revision
        detected.load_image(_square_image(size=80))
        assert detected.state.has_image
        assert not detected.state.has_contours
        assert detected.state.revision == revision + 1

    def test_old_snapshot_stays_valid(self, detected: Session) -> None:
        snapshot = detected.state
        detected.load_image(_square_image(size=80))
        assert snapshot.contours is not None
        assert snapshot.contours.raster is snapshot.raster
        assert snapshot.raster.width == 100

    def test_analyze_without_image(self, session: Session) -> None:
        with pytest.raises(ImageNotReady):
            session.analyze()

    def test_analyze_current_image(self, session: Session) -> None:
        session.load_image(_square_image())
        analysis, recommendations = session.analyze()
        assert (analysis.width, analysis.height) == (100, 100)
        assert analysis.brightness > 180
        assert recommendations.material == analysis.material
    def test_detect_records_machine(self, session: Session) -> None:
        session.load_image(_square_image())
        session.detect(machine="laser")
        assert session.state.machine == "laser"

    def test_uniform_image_has_no_edges(self, session: Session) -> None:
        session.load_image(np.full((60, 60), 200, dtype=np.uint8))
        with pytest.raises(NoEdgesFound):
            session.detect()
        assert not session.state.has_contours

    def test_unknown_machine(self, detected: Session) -> None:
        with pytest.raises(ValueError):
            detected.detect(machine="print")
        with pytest.raises(ValueError):
            detected.generate("plasma")
        with pytest.raises(ValueError):
            detected.generate("router", mode="spiral")


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.parametrize("mode", ["raster", "quick", "contour"])
    def test_router_modes(self, detected: Session, mode: str) -> None:
        program = detected.generate("router", mode)
        assert program.machine == "router"
        assert program.lines[0] == "G21 G90 G17"
        assert program.lines[-1] == "M30"
        assert program.point_count > 0
        assert detected.last_program is program

    def test_quick_is_lighter_than_raster(self, detected: Session) -> None:
        full = detected.generate("router", "raster")
        quick = detected.generate("router", "quick")
        assert quick.point_count < full.point_count

    def test_laser(self, session: Session) -> None:
        session.load_image(_square_image())
        session.detect(machine="laser")
        program = session.generate("laser", raw_settings={"laser_passes": 2})
        assert program.machine == "laser"
        assert program.lines[:2] == ["G21 G90", "G0 X0 Y0"]

    def test_laser_short_setting_names_override_defaults(self, session: Session) -> None:
        session.load_image(_square_image())
        session.detect(machine="laser")
        program = session.generate(
            "laser", raw_settings={"power": 30, "speed": 500, "passes": 2},
        )
        assert "M3 S300" in program.lines
        assert "G1 F500" in program.lines
        assert "M3 S800" not in program.lines
        single = session.generate("laser", raw_settings={"speed": 500, "passes": 1})
        assert program.lines.count("G1 F500") == 2 * single.lines.count("G1 F500")

    def test_print_needs_no_image(self, session: Session) -> None:
        program = session.generate("print")
        assert program.machine == "print"
        assert "placeholder" in program.lines[0].lower()

    def test_user_settings_override_defaults(self, detected: Session) -> None:
        program = detected.generate("router", raw_settings={"feed_rate": 1200})
        assert "G1 F1200" in program.lines

    def test_clamped_settings_become_warnings(self, detected: Session) -> None:
        with pytest.warns(UserWarning):
            program = detected.generate("router", raw_settings={"feed_rate": 99999})
        assert "G1 F5000" in program.lines
        assert any("feed_rate" in w for w in program.warnings)

    def test_unexpected_error_wrapped(
        self, detected: Session, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def broken(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr("cnc_control.pipeline.session.synthesize_raster", broken)
        with pytest.raises(GenerationFailure, match="disk on fire") as exc_info:
            detected.generate("router", "raster")
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert detected.last_program is None

    def test_request_generate_is_debounced(self, detected: Session) -> None:
        first = detected.request_generate("router", "quick")
        second = detected.request_generate("router", "contour")
        assert not detected.gate.is_current(first)
        result = detected.gate.flush()
        assert result is not None and result.ticket == second
        assert result.value is detected.last_program


# ---------------------------------------------------------------------------
# Program check
# ---------------------------------------------------------------------------


class TestProgramCheck:
    def test_needs_a_program(self, session: Session) -> None:
        with pytest.raises(ValueError, match="generate"):
            session.check_program()

    def test_checks_last_program(self, detected: Session) -> None:
        program = detected.generate("router", "contour")
        check = detected.check_program()
        assert check.syntax.is_valid
        assert check.time.feed_distance > 0
        gcode = detected.config.gcode
        expected = library.estimate_machining_time(
            library.parse(program.text),
            rapid_feed=gcode.rapid_feed_mm_min,
            default_feed=gcode.default_feed_mm_min,
        )
        assert check.time == expected

    def test_uses_configured_rates(self, config: PipelineConfig) -> None:
        slow = Session(config, detector_probe=lambda: True)
        fast_config = replace(
            config,
            gcode=GCodeConfig(
                rapid_feed_mm_min=config.gcode.rapid_feed_mm_min * 2,
                default_feed_mm_min=config.gcode.default_feed_mm_min * 2,
            ),
        )
        fast = Session(fast_config, detector_probe=lambda: True)
        program = slow.generate("print")
        assert fast.check_program(program).time.total_minutes == pytest.approx(
            slow.check_program(program).time.total_minutes / 2
        )
        assert slow.check_program(program).time.total_minutes > 0


# ---------------------------------------------------------------------------
# Progress callback
# ---------------------------------------------------------------------------


class TestProgress:
    def test_stages_reported(self, session: Session) -> None:
        events: list[PipelineProgress] = []
        session.set_progress_callback(events.append)
        session.load_image(_square_image())
        session.detect()
        session.generate("router")
        stages = [e.stage for e in events]
        assert stages[0] == Stage.LOAD
        assert Stage.DETECT in stages
        assert Stage.SYNTHESIZE in stages
        assert stages[-1] == Stage.DONE

    def test_callback_errors_are_logged_not_raised(
        self, session: Session, caplog: pytest.LogCaptureFixture,
    ) -> None:
        def broken(progress: PipelineProgress) -> None:
            raise RuntimeError("ui gone")

        session.set_progress_callback(broken)
        session.load_image(_square_image())
        assert session.state.has_image
        assert any("Progress callback error" in r.getMessage() for r in caplog.records)
