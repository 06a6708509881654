"""Configuration loader for the CNC pipeline.

Loads and validates ``machine.yaml`` into typed, frozen dataclasses:
machine defaults for router, laser and the print placeholder, detection
constants, the image pixel budget, G-code library timing constants and
session timing.

Router and laser feeds are stored in **mm/min** (the G-code ``F`` unit);
the print placeholder speed is in mm/s like a slicer setting.

Usage::

    from cnc_control.configs.loader import load_config
    cfg = load_config()                       # default path
    cfg = load_config("/custom/machine.yaml") # explicit path
    raw = {**cfg.router.as_raw(), **user_form_values}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from cncai.utils import validators
from cncai.utils.fs import load_yaml

logger = logging.getLogger(__name__)

SCHEMA = "cnc_ai.machine.v1"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RouterDefaults:
    """Router defaults and raster synthesis constants."""

    feed_rate_mm_min: float
    safe_z_mm: float
    max_depth_mm: float
    step_over_px: float
    work_width_mm: float
    work_height_mm: float
    fixed_z_mm: float
    sample_spacing_px: int
    quick_step_multiplier: int
    overhead_z_rate: float
    overhead_path_unit_mm: float

    def as_raw(self) -> dict[str, Any]:
        """Defaults as a raw settings dict for ``RouterSettings.from_raw``."""
        return {
            "feed_rate": self.feed_rate_mm_min,
            "safe_z": self.safe_z_mm,
            "max_depth": self.max_depth_mm,
            "step_over": self.step_over_px,
            "work_width": self.work_width_mm,
            "work_height": self.work_height_mm,
            "fixed_z_value": self.fixed_z_mm,
        }


@dataclass(frozen=True)
class LaserDefaults:
    """Laser defaults and scan constants."""

    power_pct: float
    speed_mm_min: float
    passes: int
    scan_spacing_px: int
    sample_spacing_px: int
    max_points: int

    def as_raw(self) -> dict[str, Any]:
        return {
            "laser_power": self.power_pct,
            "laser_speed": self.speed_mm_min,
            "laser_passes": self.passes,
        }


@dataclass(frozen=True)
class PrintDefaults:
    """Placeholder 3D print program constants."""

    layer_height_mm: float
    fill_density_pct: float
    print_speed_mm_s: float
    work_depth_mm: float
    perimeter_inset_mm: float
    min_infill_step_mm: float
    seconds_per_layer: float

    def as_raw(self) -> dict[str, Any]:
        return {
            "layer_height": self.layer_height_mm,
            "fill_density": self.fill_density_pct,
            "print_speed": self.print_speed_mm_s,
            "work_depth": self.work_depth_mm,
        }


@dataclass(frozen=True)
class DetectionConfig:
    """Edge operator defaults and area thresholds (fractions of W*H)."""

    router_mode: str
    laser_mode: str
    sensitivity: float
    detail_level: int
    router_min_area_fraction: float
    laser_min_area_fraction: float
    simplify_px: float = 0.0

    def min_area_fraction(self, machine: str) -> float:
        if machine == "laser":
            return self.laser_min_area_fraction
        return self.router_min_area_fraction

    def as_raw(self, machine: str) -> dict[str, Any]:
        return {
            "mode": self.laser_mode if machine == "laser" else self.router_mode,
            "sensitivity": self.sensitivity,
            "detail_level": self.detail_level,
        }


@dataclass(frozen=True)
class SamplingConfig:
    """Image intake limits."""

    max_image_pixels: int


@dataclass(frozen=True)
class GCodeConfig:
    """Timing constants for G-code analysis (mm/min)."""

    rapid_feed_mm_min: float
    default_feed_mm_min: float


@dataclass(frozen=True)
class SessionConfig:
    """Request debounce and detector readiness polling."""

    debounce_s: float
    detector_max_attempts: int
    detector_poll_interval_s: float


@dataclass(frozen=True)
class PipelineConfig:
    """Top-level configuration object."""

    router: RouterDefaults
    laser: LaserDefaults
    print: PrintDefaults
    detection: DetectionConfig
    sampling: SamplingConfig
    gcode: GCodeConfig
    session: SessionConfig


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_bounds(section: str, key: str, field_name: str, value: float) -> None:
    bounds = validators.BOUNDS[field_name]
    if not bounds.min <= value <= bounds.max:
        raise ConfigError(
            f"{section}.{key} = {value} outside allowed range "
            f"[{bounds.min:g}, {bounds.max:g}]"
        )


def _check_positive(section: str, key: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{section}.{key} must be > 0, got {value}")


def _validate_config(cfg: PipelineConfig) -> None:
    """Validate ranges and cross-field consistency.

    Raises
    ------
    ConfigError
        On any invalid value or combination.
    """
    # -- Defaults must survive user-settings validation unchanged ----------
    r = cfg.router
    _check_bounds("router", "feed_rate_mm_min", "feed_rate", r.feed_rate_mm_min)
    _check_bounds("router", "safe_z_mm", "safe_z", r.safe_z_mm)
    _check_bounds("router", "max_depth_mm", "max_depth", r.max_depth_mm)
    _check_bounds("router", "step_over_px", "step_over", r.step_over_px)
    _check_bounds("router", "work_width_mm", "work_width", r.work_width_mm)
    _check_bounds("router", "work_height_mm", "work_height", r.work_height_mm)

    la = cfg.laser
    _check_bounds("laser", "power_pct", "laser_power", la.power_pct)
    _check_bounds("laser", "speed_mm_min", "laser_speed", la.speed_mm_min)
    _check_bounds("laser", "passes", "laser_passes", la.passes)

    p = cfg.print
    _check_bounds("print", "layer_height_mm", "layer_height", p.layer_height_mm)
    _check_bounds("print", "fill_density_pct", "fill_density", p.fill_density_pct)
    _check_bounds("print", "print_speed_mm_s", "print_speed", p.print_speed_mm_s)
    _check_bounds("print", "work_depth_mm", "work_depth", p.work_depth_mm)

    d = cfg.detection
    _check_bounds("detection", "sensitivity", "sensitivity", d.sensitivity)
    _check_bounds("detection", "detail_level", "detail_level", d.detail_level)

    # -- Sampling / scan constants -----------------------------------------
    _check_positive("router", "sample_spacing_px", r.sample_spacing_px)
    _check_positive("router", "quick_step_multiplier", r.quick_step_multiplier)
    _check_positive("router", "overhead_z_rate", r.overhead_z_rate)
    _check_positive("router", "overhead_path_unit_mm", r.overhead_path_unit_mm)
    _check_positive("laser", "scan_spacing_px", la.scan_spacing_px)
    _check_positive("laser", "sample_spacing_px", la.sample_spacing_px)
    _check_positive("laser", "max_points", la.max_points)
    _check_positive("print", "seconds_per_layer", p.seconds_per_layer)
    _check_positive("print", "min_infill_step_mm", p.min_infill_step_mm)

    if p.perimeter_inset_mm < 0:
        raise ConfigError(
            f"print.perimeter_inset_mm must be >= 0, got {p.perimeter_inset_mm}"
        )

    # -- Detection operators ------------------------------------------------
    if d.router_mode not in validators.ROUTER_MODES:
        raise ConfigError(
            f"detection.router_mode must be one of "
            f"{list(validators.ROUTER_MODES)}, got '{d.router_mode}'"
        )
    if d.laser_mode not in validators.LASER_MODES:
        raise ConfigError(
            f"detection.laser_mode must be one of "
            f"{list(validators.LASER_MODES)}, got '{d.laser_mode}'"
        )
    for key in ("router_min_area_fraction", "laser_min_area_fraction"):
        frac = getattr(d, key)
        if not 0.0 <= frac < 1.0:
            raise ConfigError(f"detection.{key} must be in [0, 1), got {frac}")
    if d.laser_min_area_fraction > d.router_min_area_fraction:
        logger.warning(
            "Laser area threshold (%.4f) is coarser than router (%.4f); "
            "laser engraving normally keeps finer detail",
            d.laser_min_area_fraction,
            d.router_min_area_fraction,
        )
    if d.simplify_px < 0:
        raise ConfigError(f"detection.simplify_px must be >= 0, got {d.simplify_px}")

    # -- Image budget, timing ----------------------------------------------
    _check_positive("sampling", "max_image_pixels", cfg.sampling.max_image_pixels)
    _check_positive("gcode", "rapid_feed_mm_min", cfg.gcode.rapid_feed_mm_min)
    _check_positive("gcode", "default_feed_mm_min", cfg.gcode.default_feed_mm_min)

    s = cfg.session
    if s.debounce_s < 0:
        raise ConfigError(f"session.debounce_s must be >= 0, got {s.debounce_s}")
    _check_positive("session", "detector_max_attempts", s.detector_max_attempts)
    if s.detector_poll_interval_s < 0:
        raise ConfigError(
            f"session.detector_poll_interval_s must be >= 0, "
            f"got {s.detector_poll_interval_s}"
        )


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> PipelineConfig:
    """Load and validate pipeline configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to ``machine.yaml``.  ``None`` loads the default shipped
        alongside this module.

    Returns
    -------
    PipelineConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If the YAML is malformed or any field is missing or invalid.
    FileNotFoundError
        If *path* does not exist.
    """
    if path is None:
        path = Path(__file__).parent / "machine.yaml"
    else:
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)

    try:
        data: Any = load_yaml(path)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Malformed YAML: {exc}") from exc
    if data is None:
        raise ConfigError(f"Empty configuration file: {path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")

    schema = data.get("schema", SCHEMA)
    if schema != SCHEMA:
        raise ConfigError(f"Expected schema '{SCHEMA}', got '{schema}'")

    try:
        # -- router ---------------------------------------------------------
        rd = data["router"]
        router = RouterDefaults(
            feed_rate_mm_min=float(rd["feed_rate_mm_min"]),
            safe_z_mm=float(rd["safe_z_mm"]),
            max_depth_mm=float(rd["max_depth_mm"]),
            step_over_px=float(rd["step_over_px"]),
            work_width_mm=float(rd["work_width_mm"]),
            work_height_mm=float(rd["work_height_mm"]),
            fixed_z_mm=float(rd.get("fixed_z_mm", -1.0)),
            sample_spacing_px=int(rd.get("sample_spacing_px", 2)),
            quick_step_multiplier=int(rd.get("quick_step_multiplier", 4)),
            overhead_z_rate=float(rd.get("overhead_z_rate", 50.0)),
            overhead_path_unit_mm=float(rd.get("overhead_path_unit_mm", 1000.0)),
        )

        # -- laser ----------------------------------------------------------
        ld = data["laser"]
        laser = LaserDefaults(
            power_pct=float(ld["power_pct"]),
            speed_mm_min=float(ld["speed_mm_min"]),
            passes=int(ld.get("passes", 1)),
            scan_spacing_px=int(ld.get("scan_spacing_px", 3)),
            sample_spacing_px=int(ld.get("sample_spacing_px", 3)),
            max_points=int(ld.get("max_points", 2000)),
        )

        # -- print placeholder ----------------------------------------------
        pd = data["print"]
        print_defaults = PrintDefaults(
            layer_height_mm=float(pd["layer_height_mm"]),
            fill_density_pct=float(pd["fill_density_pct"]),
            print_speed_mm_s=float(pd["print_speed_mm_s"]),
            work_depth_mm=float(pd["work_depth_mm"]),
            perimeter_inset_mm=float(pd.get("perimeter_inset_mm", 10.0)),
            min_infill_step_mm=float(pd.get("min_infill_step_mm", 5.0)),
            seconds_per_layer=float(pd.get("seconds_per_layer", 2.0)),
        )

        # -- detection ------------------------------------------------------
        dd = data["detection"]
        detection = DetectionConfig(
            router_mode=str(dd.get("router_mode", "auto")),
            laser_mode=str(dd.get("laser_mode", "adaptive")),
            sensitivity=float(dd.get("sensitivity", 0.33)),
            detail_level=int(dd.get("detail_level", 5)),
            router_min_area_fraction=float(dd["router_min_area_fraction"]),
            laser_min_area_fraction=float(dd["laser_min_area_fraction"]),
            simplify_px=float(dd.get("simplify_px", 0.0)),
        )

        # -- sampling / gcode / session -------------------------------------
        sd = data.get("sampling", {})
        sampling = SamplingConfig(
            max_image_pixels=int(
                sd.get("max_image_pixels", validators.DEFAULT_MAX_IMAGE_PIXELS)
            ),
        )

        gd = data.get("gcode", {})
        gcode = GCodeConfig(
            rapid_feed_mm_min=float(gd.get("rapid_feed_mm_min", 3000.0)),
            default_feed_mm_min=float(gd.get("default_feed_mm_min", 1000.0)),
        )

        sess = data.get("session", {})
        session = SessionConfig(
            debounce_s=float(sess.get("debounce_s", 0.3)),
            detector_max_attempts=int(sess.get("detector_max_attempts", 10)),
            detector_poll_interval_s=float(
                sess.get("detector_poll_interval_s", 0.5)
            ),
        )

        config = PipelineConfig(
            router=router,
            laser=laser,
            print=print_defaults,
            detection=detection,
            sampling=sampling,
            gcode=gcode,
            session=session,
        )

        _validate_config(config)
        logger.info("Configuration loaded successfully")
        return config

    except KeyError as exc:
        raise ConfigError(
            f"Missing required configuration key: {exc}"
        ) from exc
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(
            f"Invalid configuration value: {exc}"
        ) from exc
