"""
CNC Control Package.

Machine side of the image-to-G-code pipeline. Consumes contour sets and
rasters from ``cncai`` and produces G-code programs.

Subpackages:
    configs: Machine defaults and pipeline constants (machine.yaml)
    toolpath: Toolpath points and synthesis strategies
    gcode: Router/laser emission, placeholder print program, G-code library
    pipeline: Session state, request gating and orchestration
"""

__all__ = ["configs", "toolpath", "gcode", "pipeline"]
