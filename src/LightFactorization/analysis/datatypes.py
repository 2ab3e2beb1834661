"""
Common data types for light probe analysis.
"""

from dataclasses import dataclass
from typing import List, Optional
import torch


@dataclass
class DominantLight:
    """The single directional light extracted from the SH lighting."""
    direction: torch.Tensor  # Unit direction vector [x, y, z]
    color: torch.Tensor  # Light color [r, g, b]


@dataclass
class DominantLightCPU:
    """The dominant light with CPU/serializable data."""
    direction: List[float]  # Unit direction vector [x, y, z] as list
    color: List[float]  # Light color [r, g, b] as list
    sph_coeffs: List[List[float]]  # Coefficients the light was extracted from (9, 3)
    pixel: Optional[List[int]] = None  # Pixel [x, y] of the direction on the probe

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'direction': self.direction,
            'color': self.color,
            'sph_coeffs': self.sph_coeffs,
            'pixel': self.pixel
        }
