"""Pipeline session -- state slot, detector readiness, request gating.

The session is the thin orchestration layer around the pure core
(``detect`` → ``synthesize_*`` → ``emit``).  It owns:

State slot
    A frozen :class:`PipelineState` snapshot (raster, contour set,
    machine kind).  Loading or detecting builds a new snapshot and swaps
    it in with a single attribute assignment, so a reader holding the old
    snapshot keeps a fully valid object.

Detector readiness
    OpenCV is probed before the first detection with a bounded number of
    attempts (``max_attempts`` x ``poll_interval_s``).

Request gate
    :class:`RequestGate` debounces rapid requests (slider drags): a newer
    request replaces a pending one instead of queueing behind it, and
    tickets let the owner drop results that were superseded.

Progress and errors
    Progress is reported through an optional callback.  Typed pipeline
    errors (``ImageNotReady``, ``DetectorNotReady``, ``NoEdgesFound``)
    propagate unchanged; anything unexpected inside synthesis or emission
    is wrapped in :class:`GenerationFailure`.

Analysis and checks
    :meth:`Session.analyze` measures the current raster and recommends
    router settings; :meth:`Session.check_program` validates a program and
    times it at the `gcode` rates from the machine config.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import Any, Callable, Mapping

import cv2
import numpy as np

from cncai.data_pipeline.edge_tracer import ContourSet, NoEdgesFound, detect
from cncai.data_pipeline.image_analysis import (
    ImageAnalysis,
    Recommendations,
    analyze_image,
    recommend_settings,
)
from cncai.data_pipeline.preprocess import GrayscaleRaster, ImageSource, load_raster
from cncai.utils.logging_config import log_context
from cncai.utils.validators import (
    DetectionSettings,
    LaserSettings,
    PrintSettings,
    RouterSettings,
    ValidationReport,
    normalize_laser_keys,
)

from cnc_control.configs.loader import PipelineConfig, load_config
from cnc_control.gcode import library
from cnc_control.gcode.generator import GCodeEmitter, GeneratedProgram
from cnc_control.gcode.print_placeholder import generate_placeholder_print
from cnc_control.toolpath.operations import SynthesisStats, ToolpathPoint
from cnc_control.toolpath.synthesis import (
    synthesize_contour,
    synthesize_laser,
    synthesize_raster,
)

logger = logging.getLogger(__name__)

MACHINES = ("router", "laser", "print")
ROUTER_MODES = ("raster", "quick", "contour")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Base class for user-facing pipeline errors."""

    pass


class ImageNotReady(PipelineError):
    """Detection or generation requested before an image/contour exists."""

    pass


class DetectorNotReady(PipelineError):
    """OpenCV did not pass its readiness probe within the retry budget."""

    pass


class GenerationFailure(PipelineError):
    """Unexpected failure while synthesising or emitting a program."""

    pass


# ---------------------------------------------------------------------------
# State / progress
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineState:
    """Immutable snapshot of the current image and detection result."""

    raster: GrayscaleRaster | None = None
    contours: ContourSet | None = None
    machine: str = "router"
    revision: int = 0

    @property
    def has_image(self) -> bool:
        return self.raster is not None

    @property
    def has_contours(self) -> bool:
        return self.contours is not None


class Stage(Enum):
    """Pipeline stage reported to progress callbacks."""

    LOAD = auto()
    DETECT = auto()
    SYNTHESIZE = auto()
    EMIT = auto()
    DONE = auto()


@dataclass(frozen=True)
class PipelineProgress:
    """Progress snapshot passed to the callback."""

    stage: Stage
    fraction: float
    message: str = ""


ProgressCallback = Callable[[PipelineProgress], None]


@dataclass(frozen=True)
class ProgramCheck:
    """Syntax report and distance-based time estimate for a program."""

    syntax: library.SyntaxReport
    time: library.TimeEstimate


# ---------------------------------------------------------------------------
# Detector readiness
# ---------------------------------------------------------------------------


def probe_opencv() -> bool:
    """Run a tiny blur + Canny to confirm OpenCV is usable."""
    try:
        probe = np.zeros((8, 8), dtype=np.uint8)
        probe[2:6, 2:6] = 255
        edges = cv2.Canny(cv2.GaussianBlur(probe, (3, 3), 0), 50, 150)
    except cv2.error as exc:
        logger.warning("OpenCV probe failed: %s", exc)
        return False
    return edges.shape == probe.shape


def ensure_detector_ready(
    probe: Callable[[], bool] = probe_opencv,
    max_attempts: int = 10,
    poll_interval_s: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll ``probe`` until it succeeds.

    Returns
    -------
    int
        The attempt number that succeeded.

    Raises
    ------
    DetectorNotReady
        If every attempt fails.
    """
    for attempt in range(1, max_attempts + 1):
        if probe():
            if attempt > 1:
                logger.info("Detector ready after %d attempts", attempt)
            return attempt
        logger.warning("Detector not ready (attempt %d/%d)", attempt, max_attempts)
        if attempt < max_attempts:
            sleep(poll_interval_s)

    raise DetectorNotReady(
        f"Image detector not ready after {max_attempts} attempts "
        f"({max_attempts * poll_interval_s:.1f} s)"
    )


# ---------------------------------------------------------------------------
# Request gate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GateResult:
    """Outcome of a gated request."""

    ticket: int
    value: Any
    current: bool


class RequestGate:
    """Debounce requests; newer submissions supersede pending ones.

    Parameters
    ----------
    debounce_s : float
        Quiet period after the latest submit before it may run.
    clock : Callable[[], float]
        Monotonic time source (seconds).

    Notes
    -----
    Single-threaded: the owner calls :meth:`poll` from its event loop.
    Tickets increase monotonically with every submit; a result whose
    ticket is no longer :meth:`is_current` belongs to a superseded
    request and should be discarded.
    """

    def __init__(
        self,
        debounce_s: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._debounce_s = debounce_s
        self._clock = clock
        self._ticket = 0
        self._pending: tuple[int, float, Callable[..., Any], tuple, dict] | None = None

    @property
    def latest_ticket(self) -> int:
        return self._ticket

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> int:
        """Record ``fn`` as the latest request, replacing any pending one."""
        self._ticket += 1
        if self._pending is not None:
            logger.debug("Request %d superseded by %d", self._pending[0], self._ticket)
        self._pending = (self._ticket, self._clock(), fn, args, kwargs)
        return self._ticket

    def is_current(self, ticket: int) -> bool:
        return ticket == self._ticket

    def cancel(self) -> None:
        self._pending = None

    def poll(self) -> GateResult | None:
        """Run the pending request once its quiet period has elapsed.

        Returns ``None`` when nothing is due.  Exceptions raised by the
        request propagate; the request is cleared either way.
        """
        if self._pending is None:
            return None
        ticket, submitted_at, _, _, _ = self._pending
        if self._clock() - submitted_at < self._debounce_s:
            return None
        return self._run()

    def flush(self) -> GateResult | None:
        """Run the pending request now, ignoring the quiet period."""
        if self._pending is None:
            return None
        return self._run()

    def _run(self) -> GateResult:
        ticket, _, fn, args, kwargs = self._pending
        self._pending = None
        value = fn(*args, **kwargs)
        return GateResult(ticket=ticket, value=value, current=self.is_current(ticket))


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session:
    """One user's pipeline: current image, contours and last program.

    Parameters
    ----------
    config : PipelineConfig | None
        Machine defaults and constants; ``None`` loads ``machine.yaml``.
    progress_cb : ProgressCallback | None
        Called with a :class:`PipelineProgress` at each stage.
    detector_probe : Callable[[], bool] | None
        Readiness probe, defaults to :func:`probe_opencv`.
    sleep : Callable[[float], None]
        Used between readiness attempts.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        progress_cb: ProgressCallback | None = None,
        detector_probe: Callable[[], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cfg = config if config is not None else load_config()
        self._progress_cb = progress_cb
        self._probe = detector_probe or probe_opencv
        self._sleep = sleep
        self._detector_ready = False
        self._emitter = GCodeEmitter(
            overhead_z_rate=self._cfg.router.overhead_z_rate,
            overhead_path_unit_mm=self._cfg.router.overhead_path_unit_mm,
        )
        self.gate = RequestGate(debounce_s=self._cfg.session.debounce_s)
        self.state = PipelineState()
        self.last_program: GeneratedProgram | None = None

    @property
    def config(self) -> PipelineConfig:
        return self._cfg

    def set_progress_callback(self, fn: ProgressCallback | None) -> None:
        """Register (or clear) the progress callback."""
        self._progress_cb = fn

    def _notify(self, stage: Stage, fraction: float, message: str = "") -> None:
        if self._progress_cb is None:
            return
        try:
            self._progress_cb(PipelineProgress(stage, fraction, message))
        except Exception as exc:  # noqa: BLE001
            logger.error("Progress callback error: %s", exc)

    # ------------------------------------------------------------------
    # Image / detection
    # ------------------------------------------------------------------

    def load_image(self, source: ImageSource) -> GrayscaleRaster:
        """Decode ``source`` and replace the state (contours are cleared)."""
        self._notify(Stage.LOAD, 0.0, "Loading image")
        raster = load_raster(source, max_pixels=self._cfg.sampling.max_image_pixels)
        self.state = PipelineState(
            raster=raster,
            contours=None,
            machine=self.state.machine,
            revision=self.state.revision + 1,
        )
        self._notify(Stage.LOAD, 1.0, f"Loaded {raster.width}x{raster.height}")
        logger.info("Image loaded: %dx%d", raster.width, raster.height)
        return raster

    def ensure_detector(self) -> None:
        if self._detector_ready:
            return
        ensure_detector_ready(
            self._probe,
            max_attempts=self._cfg.session.detector_max_attempts,
            poll_interval_s=self._cfg.session.detector_poll_interval_s,
            sleep=self._sleep,
        )
        self._detector_ready = True

    def detect(
        self,
        raw_settings: Mapping[str, Any] | None = None,
        machine: str = "router",
    ) -> ContourSet:
        """Detect contours on the current raster and swap them in.

        Raises
        ------
        ImageNotReady
            If no image is loaded.
        DetectorNotReady
            If OpenCV fails its readiness probe.
        NoEdgesFound
            If nothing survives the area filter.
        """
        if machine not in ("router", "laser"):
            raise ValueError(f"Detection machine must be 'router' or 'laser', got '{machine}'")
        snapshot = self.state
        if snapshot.raster is None:
            raise ImageNotReady("Load an image before detecting edges")

        self.ensure_detector()
        det = self._cfg.detection
        raw = {**det.as_raw(machine), **dict(raw_settings or {})}
        settings, report = DetectionSettings.from_raw(raw, machine)

        self._notify(Stage.DETECT, 0.0, f"Detecting edges ({settings.mode})")
        with log_context(machine=machine):
            contours = detect(
                snapshot.raster,
                settings,
                simplify_px=det.simplify_px,
                min_area_fraction=det.min_area_fraction(machine),
            )

        self.state = replace(
            snapshot,
            contours=contours,
            machine=machine,
            revision=snapshot.revision + 1,
        )
        self._notify(Stage.DETECT, 1.0, f"{len(contours)} contour(s)")
        if not report.ok:
            logger.info("Detection settings corrected: %s", "; ".join(report.messages))
        return contours

    def analyze(self) -> tuple[ImageAnalysis, Recommendations]:
        """Measure the current raster and suggest router settings.

        Raises
        ------
        ImageNotReady
            If no image is loaded.
        """
        raster = self.state.raster
        if raster is None:
            raise ImageNotReady("Load an image before analysing it")
        analysis = analyze_image(raster)
        return analysis, recommend_settings(analysis)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(
        self,
        machine: str = "router",
        mode: str = "raster",
        raw_settings: Mapping[str, Any] | None = None,
    ) -> GeneratedProgram:
        """Build a program from the current snapshot.

        Parameters
        ----------
        machine : ``"router"`` | ``"laser"`` | ``"print"``
            Target machine.
        mode : ``"raster"`` | ``"quick"`` | ``"contour"``
            Router strategy; ignored for laser and print.
        raw_settings : Mapping | None
            User form values layered over the machine defaults.

        Raises
        ------
        ImageNotReady
            If router/laser generation has no detected contour.
        GenerationFailure
            On any unexpected error during synthesis or emission.
        """
        if machine not in MACHINES:
            raise ValueError(f"Unknown machine '{machine}', expected one of {MACHINES}")
        if machine == "router" and mode not in ROUTER_MODES:
            raise ValueError(f"Unknown router mode '{mode}', expected one of {ROUTER_MODES}")

        snapshot = self.state
        if machine != "print" and snapshot.contours is None:
            raise ImageNotReady("Load an image and detect edges before generating G-code")

        fields = {"machine": machine}
        if machine == "router":
            fields["mode"] = mode
        with log_context(**fields):
            try:
                program = self._generate(snapshot, machine, mode, raw_settings)
            except (PipelineError, NoEdgesFound):
                raise
            except Exception as exc:
                logger.error("Generation failed (%s/%s): %s", machine, mode, exc)
                raise GenerationFailure(
                    f"G-code generation failed for {machine} ({mode}): {exc}"
                ) from exc

        self.last_program = program
        self._notify(Stage.DONE, 1.0, f"~{program.estimated_time_minutes:.1f} min")
        return program

    def check_program(self, program: GeneratedProgram | None = None) -> ProgramCheck:
        """Validate ``program`` (default: the last one) and estimate its time.

        The estimate uses the ``gcode`` rapid and feed rates from the
        machine config rather than the program's ``F`` words.

        Raises
        ------
        ValueError
            If no program is given and none has been generated.
        """
        program = program if program is not None else self.last_program
        if program is None:
            raise ValueError("No program to check; generate one first")
        gcode = self._cfg.gcode
        syntax = library.validate(program.text)
        time_estimate = library.estimate_machining_time(
            library.parse(program.text),
            rapid_feed=gcode.rapid_feed_mm_min,
            default_feed=gcode.default_feed_mm_min,
        )
        return ProgramCheck(syntax=syntax, time=time_estimate)

    def request_generate(
        self,
        machine: str = "router",
        mode: str = "raster",
        raw_settings: Mapping[str, Any] | None = None,
    ) -> int:
        """Queue a debounced :meth:`generate`; returns the request ticket.

        The owner drives it with ``session.gate.poll()``; a later request
        replaces this one if it has not run yet.
        """
        return self.gate.submit(self.generate, machine, mode, raw_settings)

    def _generate(
        self,
        snapshot: PipelineState,
        machine: str,
        mode: str,
        raw_settings: Mapping[str, Any] | None,
    ) -> GeneratedProgram:
        user = dict(raw_settings or {})

        if machine == "print":
            settings, report = PrintSettings.from_raw({**self._cfg.print.as_raw(), **user})
            self._notify(Stage.EMIT, 0.0, "Building placeholder print program")
            program = generate_placeholder_print(
                settings,
                perimeter_inset_mm=self._cfg.print.perimeter_inset_mm,
                min_infill_step_mm=self._cfg.print.min_infill_step_mm,
                seconds_per_layer=self._cfg.print.seconds_per_layer,
            )
            return program.with_warnings(report.messages)

        stats = SynthesisStats()
        self._notify(Stage.SYNTHESIZE, 0.0, "Synthesising toolpath")
        points: list[ToolpathPoint]
        report: ValidationReport

        if machine == "laser":
            laser, report = LaserSettings.from_raw(
                {**self._cfg.laser.as_raw(), **normalize_laser_keys(user)}
            )
            points = synthesize_laser(
                snapshot.contours,
                settings=laser,
                scan_spacing_px=self._cfg.laser.scan_spacing_px,
                sample_spacing_px=self._cfg.laser.sample_spacing_px,
                max_points=self._cfg.laser.max_points,
                stats=stats,
            )
            self._notify(Stage.EMIT, 0.0, "Writing G-code")
            program = self._emitter.laser(points, laser)
        else:
            router, report = RouterSettings.from_raw({**self._cfg.router.as_raw(), **user})
            if mode == "contour":
                points = synthesize_contour(snapshot.contours, settings=router, stats=stats)
            else:
                points = synthesize_raster(
                    snapshot.contours,
                    settings=router,
                    quick=mode == "quick",
                    sample_spacing_px=self._cfg.router.sample_spacing_px,
                    quick_step_multiplier=self._cfg.router.quick_step_multiplier,
                    stats=stats,
                )
            self._notify(Stage.EMIT, 0.0, "Writing G-code")
            program = self._emitter.router(points, router)

        return program.with_warnings(list(report.messages) + stats.notes)
