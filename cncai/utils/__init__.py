"""Cross-cutting utilities (lowest dependency layer).

This package provides shared primitives for:
    - Settings validation and clamping (validators)
    - Raster sampling and coordinate/depth mapping (geometry)
    - Atomic I/O and YAML loading (fs)
    - Unified logging (logging_config)

No module in utils/ may import from upper layers (data_pipeline, cnc_control).

Convenience imports:
    from cncai.utils import geometry, validators, fs
    from cncai.utils.logging_config import setup_logging, get_logger
"""

from . import fs
from . import geometry
from . import logging_config
from . import validators

from .logging_config import get_logger, log_context, setup_logging

__all__ = [
    # Modules
    'fs',
    'geometry',
    'logging_config',
    'validators',
    # Direct exports
    'setup_logging',
    'get_logger',
    'log_context',
]
