"""User settings validation: clamping, defaults and pydantic models.

Settings arrive as raw form input (strings, numbers, NaN, missing keys) and
are rebuilt into validated models at the start of every generation call:
    - Router: feed rate, safe Z, depth, step-over, work area, Z mapping
    - Laser: power, speed, passes, power modulation
    - 3D print placeholder: layer height, fill density, speed, depth
    - Detection: operator mode, sensitivity, detail level

Validation never raises on user input. Out-of-range numbers are clamped to
the nearest bound, unparsable numbers and NaN fall back to the field
default, unknown enum values fall back to their default. Each correction
emits an InvalidSettingsWarning (routed to logging by setup_logging) and is
recorded in the returned ValidationReport.

Raw keys may be snake_case (``feed_rate``) or the camelCase form-control
ids (``feedRate``).

Usage:
    from cncai.utils import validators

    router, report = validators.RouterSettings.from_raw({"feedRate": "12000"})
    router.feed_rate  # 5000.0
    report.messages   # ["feed_rate: 12000.0 above maximum 5000, clamped"]
"""

import math
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class InvalidSettingsWarning(UserWarning):
    """A user setting was clamped or replaced by its default."""
    pass


class Bounds(NamedTuple):
    min: float
    max: float
    default: float


# ============================================================================
# BOUNDS TABLE
# ============================================================================

BOUNDS: Dict[str, Bounds] = {
    'feed_rate': Bounds(10.0, 5000.0, 800.0),
    'safe_z': Bounds(0.0, 100.0, 5.0),
    'max_depth': Bounds(0.1, 50.0, 3.0),
    'step_over': Bounds(0.1, 50.0, 5.0),
    'laser_power': Bounds(0.0, 100.0, 80.0),
    'laser_speed': Bounds(100.0, 10000.0, 2000.0),
    'laser_passes': Bounds(1.0, 10.0, 1.0),
    'layer_height': Bounds(0.05, 1.0, 0.2),
    'fill_density': Bounds(0.0, 100.0, 20.0),
    'print_speed': Bounds(10.0, 200.0, 50.0),
    'work_depth': Bounds(0.1, 100.0, 10.0),
    'work_width': Bounds(1.0, 2000.0, 300.0),
    'work_height': Bounds(1.0, 2000.0, 200.0),
    'sensitivity': Bounds(0.0, 1.0, 0.33),
    'detail_level': Bounds(1.0, 10.0, 5.0),
}

INTEGER_FIELDS = frozenset({'laser_passes', 'detail_level'})

ROUTER_MODES = ("auto", "sobel", "laplace", "canny")
LASER_MODES = ("canny", "adaptive", "morphological", "gradient")
DEFAULT_MODES = {"router": "auto", "laser": "adaptive"}

DEFAULT_MAX_IMAGE_PIXELS = 2_000_000

# camelCase form ids → snake_case field names
_ALIASES = {
    'feedRate': 'feed_rate',
    'safeZ': 'safe_z',
    'maxDepth': 'max_depth',
    'stepOver': 'step_over',
    'workWidth': 'work_width',
    'workHeight': 'work_height',
    'originX': 'origin_x',
    'originY': 'origin_y',
    'useFixedZ': 'use_fixed_z',
    'fixedZValue': 'fixed_z_value',
    'invertZ': 'invert_z',
    'scanDirection': 'scan_direction',
    'contourMode': 'contour_mode',
    'laserPower': 'laser_power',
    'laserSpeed': 'laser_speed',
    'laserPasses': 'laser_passes',
    'dynamicPower': 'dynamic_power',
    'perPointPower': 'per_point_power',
    'layerHeight': 'layer_height',
    'fillDensity': 'fill_density',
    'printSpeed': 'print_speed',
    'workDepth': 'work_depth',
    'edgeMode': 'mode',
    'laserMode': 'mode',
    'edgeSensitivity': 'sensitivity',
    'laserDetail': 'detail_level',
    'detailLevel': 'detail_level',
}

_TRUE_STRINGS = frozenset({'1', 'true', 'yes', 'on'})
_FALSE_STRINGS = frozenset({'0', 'false', 'no', 'off', ''})


# ============================================================================
# REPORT
# ============================================================================

@dataclass
class ValidationReport:
    """Corrections applied while rebuilding a settings model."""
    messages: List[str] = field(default_factory=list)
    fields: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.messages

    def add(self, field_name: str, message: str) -> None:
        self.fields.append(field_name)
        self.messages.append(f"{field_name}: {message}")

    def extend(self, other: 'ValidationReport') -> None:
        self.fields.extend(other.fields)
        self.messages.extend(other.messages)


def _warn(field_name: str, message: str, report: Optional[ValidationReport]) -> None:
    warnings.warn(f"{field_name}: {message}", InvalidSettingsWarning, stacklevel=3)
    if report is not None:
        report.add(field_name, message)


def normalize_keys(raw: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Map camelCase form ids to field names; snake_case keys pass through."""
    if not raw:
        return {}
    return {_ALIASES.get(key, key): value for key, value in raw.items()}


_LASER_SHORT_KEYS = (('power', 'laser_power'), ('speed', 'laser_speed'), ('passes', 'laser_passes'))


def normalize_laser_keys(raw: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """normalize_keys, plus the short laser names folded into the form ids.

    ``{"power": 30}`` becomes ``{"laser_power": 30}``.  The short key is
    removed so that a later merge over machine defaults cannot be
    shadowed by the default's prefixed key; an explicit prefixed key in
    the same mapping still wins.
    """
    data = normalize_keys(raw)
    for short, prefixed in _LASER_SHORT_KEYS:
        if short in data:
            value = data.pop(short)
            data.setdefault(prefixed, value)
    return data


# ============================================================================
# SCALAR VALIDATION
# ============================================================================

def _parse_number(raw: Any) -> float:
    if isinstance(raw, str):
        raw = raw.strip()
    return float(raw)


def clamp_value(
    field_name: str,
    raw: Any,
    report: Optional[ValidationReport] = None
) -> float:
    """Clamp a raw numeric setting into its bounds.

    Parameters
    ----------
    field_name : str
        Key into BOUNDS (e.g. "feed_rate")
    raw : Any
        User input: number, numeric string, None or NaN
    report : Optional[ValidationReport]
        Collects the correction message, if any

    Returns
    -------
    float
        Value within [min, max]; integral for laser_passes and detail_level

    Raises
    ------
    KeyError
        If field_name has no bounds entry (programming error, not user input)

    Notes
    -----
    Missing (None) input takes the default silently. Unparsable or NaN input
    takes the default with a warning. Out-of-range input (including ±inf)
    is clamped with a warning.
    """
    bounds = BOUNDS[field_name]
    if raw is None:
        return bounds.default

    try:
        value = _parse_number(raw)
    except (TypeError, ValueError):
        _warn(field_name, f"invalid value {raw!r}, using default {bounds.default:g}", report)
        return bounds.default

    if math.isnan(value):
        _warn(field_name, f"NaN, using default {bounds.default:g}", report)
        return bounds.default

    if value < bounds.min:
        _warn(field_name, f"{value} below minimum {bounds.min:g}, clamped", report)
        value = bounds.min
    elif value > bounds.max:
        _warn(field_name, f"{value} above maximum {bounds.max:g}, clamped", report)
        value = bounds.max

    if field_name in INTEGER_FIELDS:
        value = float(round(value))
    return value


def parse_float(
    field_name: str,
    raw: Any,
    default: float,
    report: Optional[ValidationReport] = None
) -> float:
    """Parse an unbounded float (origins, fixed Z); non-finite → default."""
    if raw is None:
        return default
    try:
        value = _parse_number(raw)
    except (TypeError, ValueError):
        _warn(field_name, f"invalid value {raw!r}, using default {default:g}", report)
        return default
    if not math.isfinite(value):
        _warn(field_name, f"non-finite value {value}, using default {default:g}", report)
        return default
    return value


def parse_bool(
    field_name: str,
    raw: Any,
    default: bool,
    report: Optional[ValidationReport] = None
) -> bool:
    """Parse a checkbox-style flag (bool, 0/1, "true"/"off", ...)."""
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)) and not (isinstance(raw, float) and math.isnan(raw)):
        return raw != 0
    if isinstance(raw, str):
        token = raw.strip().lower()
        if token in _TRUE_STRINGS:
            return True
        if token in _FALSE_STRINGS:
            return False
    _warn(field_name, f"invalid flag {raw!r}, using default {default}", report)
    return default


def parse_choice(
    field_name: str,
    raw: Any,
    choices: Tuple[str, ...],
    default: str,
    report: Optional[ValidationReport] = None
) -> str:
    """Validate an enum setting; unknown values fall back to ``default``."""
    if raw is None:
        return default
    token = str(raw).strip().lower()
    if token in choices:
        return token
    _warn(field_name, f"unknown value {raw!r} (expected one of {list(choices)}), using {default!r}", report)
    return default


def validate_image_size(
    width: int,
    height: int,
    max_pixels: int = DEFAULT_MAX_IMAGE_PIXELS
) -> Tuple[int, int]:
    """Target size for an image so that width*height <= max_pixels.

    Parameters
    ----------
    width, height : int
        Source size in pixels (must be positive)
    max_pixels : int
        Pixel budget, default 2,000,000

    Returns
    -------
    Tuple[int, int]
        Unchanged size when within budget, otherwise both sides scaled by
        sqrt(max_pixels / (width*height)) and floored (never below 1)

    Raises
    ------
    ValueError
        If any argument is not positive
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image size must be positive, got {width}x{height}")
    if max_pixels <= 0:
        raise ValueError(f"max_pixels must be positive, got {max_pixels}")
    if width * height <= max_pixels:
        return int(width), int(height)
    ratio = math.sqrt(max_pixels / (width * height))
    return max(1, int(math.floor(width * ratio))), max(1, int(math.floor(height * ratio)))


# ============================================================================
# SETTINGS MODELS
# ============================================================================

class RouterSettings(BaseModel):
    """CNC router generation settings (mm, mm/min; step_over in pixels)."""
    model_config = ConfigDict(frozen=True)

    feed_rate: float = Field(800.0, ge=10.0, le=5000.0, description="Cutting feed (mm/min)")
    safe_z: float = Field(5.0, ge=0.0, le=100.0, description="Travel height (mm)")
    max_depth: float = Field(3.0, ge=0.1, le=50.0, description="Depth at black (mm)")
    step_over: float = Field(5.0, ge=0.1, le=50.0, description="Scan-line spacing (px)")
    work_width: float = Field(300.0, ge=1.0, le=2000.0, description="Work area X (mm)")
    work_height: float = Field(200.0, ge=1.0, le=2000.0, description="Work area Y (mm)")
    origin_x: float = Field(0.0, description="Machine X of pixel x=0 (mm)")
    origin_y: float = Field(0.0, description="Machine Y of pixel y=0 (mm)")
    use_fixed_z: bool = Field(False, description="Constant depth instead of intensity")
    fixed_z_value: float = Field(-1.0, description="Constant depth (mm)")
    invert_z: bool = Field(False, description="Negate computed depths")
    scan_direction: str = Field("x", description="Scan lines run along this axis")
    contour_mode: str = Field("outer", description="outer: primary only, all: every contour")

    @field_validator('scan_direction')
    @classmethod
    def validate_scan_direction(cls, v: str) -> str:
        if v not in ("x", "y"):
            raise ValueError(f"scan_direction must be 'x' or 'y', got '{v}'")
        return v

    @field_validator('contour_mode')
    @classmethod
    def validate_contour_mode(cls, v: str) -> str:
        if v not in ("outer", "all"):
            raise ValueError(f"contour_mode must be 'outer' or 'all', got '{v}'")
        return v

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]] = None) -> Tuple['RouterSettings', ValidationReport]:
        data = normalize_keys(raw)
        report = ValidationReport()
        values = {
            name: clamp_value(name, data.get(name), report)
            for name in ('feed_rate', 'safe_z', 'max_depth', 'step_over', 'work_width', 'work_height')
        }
        values['origin_x'] = parse_float('origin_x', data.get('origin_x'), 0.0, report)
        values['origin_y'] = parse_float('origin_y', data.get('origin_y'), 0.0, report)
        values['use_fixed_z'] = parse_bool('use_fixed_z', data.get('use_fixed_z'), False, report)
        values['fixed_z_value'] = parse_float('fixed_z_value', data.get('fixed_z_value'), -1.0, report)
        values['invert_z'] = parse_bool('invert_z', data.get('invert_z'), False, report)
        values['scan_direction'] = parse_choice(
            'scan_direction', data.get('scan_direction'), ("x", "y"), "x", report)
        values['contour_mode'] = parse_choice(
            'contour_mode', data.get('contour_mode'), ("outer", "all"), "outer", report)
        return cls(**values), report


class LaserSettings(BaseModel):
    """Laser engraving settings (power in %, speed in mm/min)."""
    model_config = ConfigDict(frozen=True)

    power: float = Field(80.0, ge=0.0, le=100.0, description="Laser power (%)")
    speed: float = Field(2000.0, ge=100.0, le=10000.0, description="Engraving feed (mm/min)")
    passes: int = Field(1, ge=1, le=10, description="Repetitions of the whole path")
    dynamic_power: bool = Field(False, description="Scale power by intensity")
    per_point_power: bool = Field(False, description="Emit inline S words per move")
    work_width: float = Field(300.0, ge=1.0, le=2000.0, description="Work area X (mm)")
    work_height: float = Field(200.0, ge=1.0, le=2000.0, description="Work area Y (mm)")
    origin_x: float = Field(0.0, description="Machine X of pixel x=0 (mm)")
    origin_y: float = Field(0.0, description="Machine Y of pixel y=0 (mm)")

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]] = None) -> Tuple['LaserSettings', ValidationReport]:
        data = normalize_laser_keys(raw)
        report = ValidationReport()
        values = {
            'power': clamp_value('laser_power', data.get('laser_power'), report),
            'speed': clamp_value('laser_speed', data.get('laser_speed'), report),
            'passes': int(clamp_value('laser_passes', data.get('laser_passes'), report)),
            'dynamic_power': parse_bool('dynamic_power', data.get('dynamic_power'), False, report),
            'per_point_power': parse_bool('per_point_power', data.get('per_point_power'), False, report),
            'work_width': clamp_value('work_width', data.get('work_width'), report),
            'work_height': clamp_value('work_height', data.get('work_height'), report),
            'origin_x': parse_float('origin_x', data.get('origin_x'), 0.0, report),
            'origin_y': parse_float('origin_y', data.get('origin_y'), 0.0, report),
        }
        return cls(**values), report


class PrintSettings(BaseModel):
    """Placeholder 3D print settings."""
    model_config = ConfigDict(frozen=True)

    layer_height: float = Field(0.2, ge=0.05, le=1.0, description="Layer height (mm)")
    fill_density: float = Field(20.0, ge=0.0, le=100.0, description="Infill density (%)")
    print_speed: float = Field(50.0, ge=10.0, le=200.0, description="Print speed (mm/s)")
    work_width: float = Field(300.0, ge=1.0, le=2000.0, description="Bed X (mm)")
    work_height: float = Field(200.0, ge=1.0, le=2000.0, description="Bed Y (mm)")
    work_depth: float = Field(10.0, ge=0.1, le=100.0, description="Part height (mm)")

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]] = None) -> Tuple['PrintSettings', ValidationReport]:
        data = normalize_keys(raw)
        report = ValidationReport()
        values = {
            name: clamp_value(name, data.get(name), report)
            for name in ('layer_height', 'fill_density', 'print_speed', 'work_width', 'work_height', 'work_depth')
        }
        return cls(**values), report


class DetectionSettings(BaseModel):
    """Edge operator selection for contour extraction."""
    model_config = ConfigDict(frozen=True)

    machine: str = Field("router", description="router or laser operator family")
    mode: str = Field("auto", description="Operator name within the family")
    sensitivity: float = Field(0.33, ge=0.0, le=1.0, description="Threshold band width")
    detail_level: int = Field(5, ge=1, le=10, description="Laser closing strength")

    @field_validator('machine')
    @classmethod
    def validate_machine(cls, v: str) -> str:
        if v not in DEFAULT_MODES:
            raise ValueError(f"machine must be one of {list(DEFAULT_MODES)}, got '{v}'")
        return v

    @model_validator(mode='after')
    def validate_mode_for_machine(self) -> 'DetectionSettings':
        allowed = ROUTER_MODES if self.machine == "router" else LASER_MODES
        if self.mode not in allowed:
            raise ValueError(f"{self.machine} mode must be one of {list(allowed)}, got '{self.mode}'")
        return self

    @classmethod
    def from_raw(
        cls,
        raw: Optional[Mapping[str, Any]] = None,
        machine: str = "router"
    ) -> Tuple['DetectionSettings', ValidationReport]:
        data = normalize_keys(raw)
        report = ValidationReport()
        if machine not in DEFAULT_MODES:
            raise ValueError(f"Unknown machine kind: {machine}")
        allowed = ROUTER_MODES if machine == "router" else LASER_MODES
        values = {
            'machine': machine,
            'mode': parse_choice('mode', data.get('mode'), allowed, DEFAULT_MODES[machine], report),
            'sensitivity': clamp_value('sensitivity', data.get('sensitivity'), report),
            'detail_level': int(clamp_value('detail_level', data.get('detail_level'), report)),
        }
        return cls(**values), report
