"""
Spherical harmonic lighting and dominant light extraction from angular map light probes.
"""

from .analysis.core.execution import ExecutionStrategy, ParallelStrategy, SequentialStrategy, make_strategy
from .analysis.core.probe import ProbeImage
from .analysis.datatypes import DominantLight, DominantLightCPU
from .analysis.errors import (
    AllocationError,
    BufferSizeMismatchError,
    DegenerateNormalizationError,
    InvalidDimensionError,
    ProbeError,
    StageOrderViolationError,
)

__all__ = [
    'ProbeImage',
    'ExecutionStrategy',
    'SequentialStrategy',
    'ParallelStrategy',
    'make_strategy',
    'DominantLight',
    'DominantLightCPU',
    'ProbeError',
    'InvalidDimensionError',
    'BufferSizeMismatchError',
    'DegenerateNormalizationError',
    'StageOrderViolationError',
    'AllocationError',
]
