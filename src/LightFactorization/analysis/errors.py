"""
Error taxonomy for the light probe pipeline.

The degenerate azimuth at the centre of the probe is not listed here: the
coordinate mapper substitutes 0 for it and never raises.
"""


class ProbeError(Exception):
    """Base class for every caller-visible failure of the probe pipeline."""


class InvalidDimensionError(ProbeError, ValueError):
    """Width or height is not a positive integer."""


class BufferSizeMismatchError(ProbeError, ValueError):
    """A loaded image does not hold exactly width * height * 3 values."""


class DegenerateNormalizationError(ProbeError, ArithmeticError):
    """A band-1 magnitude or the color denominator is ~0, the estimate is undefined."""


class StageOrderViolationError(ProbeError, RuntimeError):
    """A stage ran before the stage that populates its inputs, or after release."""


class AllocationError(ProbeError, MemoryError):
    """A probe buffer could not be allocated."""
