"""
G-code generation module.

Serialises toolpath points into router and laser programs, builds the
placeholder print program, and parses/inspects G-code text.
"""

from cnc_control.gcode.generator import (
    GCodeEmitter,
    GCodeError,
    GeneratedProgram,
    emit,
    emit_laser,
    emit_router,
)
from cnc_control.gcode.print_placeholder import generate_placeholder_print

__all__ = [
    "GCodeEmitter",
    "GCodeError",
    "GeneratedProgram",
    "emit",
    "emit_laser",
    "emit_router",
    "generate_placeholder_print",
]
