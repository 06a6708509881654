"""Pipeline configuration loading and validation."""

from cnc_control.configs.loader import (
    ConfigError,
    DetectionConfig,
    LaserDefaults,
    PipelineConfig,
    PrintDefaults,
    RouterDefaults,
    SessionConfig,
    load_config,
)

__all__ = [
    "ConfigError",
    "DetectionConfig",
    "LaserDefaults",
    "PipelineConfig",
    "PrintDefaults",
    "RouterDefaults",
    "SessionConfig",
    "load_config",
]
