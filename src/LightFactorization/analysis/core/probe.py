import logging
import math
import operator
import time

import torch

from LightFactorization.analysis.core.buffers import ProbeBuffer
from LightFactorization.analysis.core.execution import ExecutionStrategy, SequentialStrategy
from LightFactorization.analysis.core.sph import (
    N_CHANNELS,
    N_TERMS,
    compute_basis_weights,
    get_dominant_light,
    project_coefficients,
    project_direction_into_coefficients,
    reconstruct_irradiance,
)
from LightFactorization.analysis.datatypes import DominantLight
from LightFactorization.analysis.errors import (
    AllocationError,
    BufferSizeMismatchError,
    InvalidDimensionError,
)
from LightFactorization.analysis.utils.transforms import generate_pixel_grid, pixel_to_angular

logger = logging.getLogger(__name__)


def _check_dimension(name: str, value) -> int:
    try:
        value = operator.index(value)
    except TypeError:
        raise InvalidDimensionError(f'{name} must be an integer, got {value!r}') from None
    if value <= 0:
        raise InvalidDimensionError(f'{name} must be positive, got {value}')
    return value


class ProbeImage:
    """
    A light probe of fixed resolution and everything derived from it.

    Stages and what they need:

        compute_coordinates()      -> direction, angular
        compute_basis_weights()    needs direction, angular       -> basis_weight
        load(image)                                               -> radiance
        project(scale)             needs basis_weight, radiance   -> coefficients
        reconstruct()              needs direction, coefficients  -> reconstruction
        compute_dominant_light()   needs coefficients             -> dominant light
        reinject_dominant_light()  needs dominant light           -> new coefficients

    Geometry and weights depend only on the resolution, compute them once and
    load as many probes of that size as needed. Running a stage before its
    inputs exist raises StageOrderViolationError.

    :param width: probe width in pixels
    :param height: probe height in pixels
    :param strategy: how the per-pixel stages run, SequentialStrategy by default
    """

    def __init__(self, width: int, height: int, strategy: ExecutionStrategy = None):
        self._width = _check_dimension("width", width)
        self._height = _check_dimension("height", height)
        self.strategy = strategy if strategy is not None else SequentialStrategy()

        H, W = self._height, self._width
        layout = (
            ("direction", (H, W, 3)),
            ("angular", (H, W, 2)),
            ("basis_weight", (H, W, N_TERMS)),
            ("radiance", (H, W, N_CHANNELS)),
            ("reconstruction", (H, W, N_CHANNELS)),
            ("coefficients", (N_TERMS, N_CHANNELS)),
            ("dominant_direction", (3,)),
            ("dominant_color", (N_CHANNELS,)),
        )

        self._buffers = {}
        self._released = False
        try:
            for name, shape in layout:
                self._buffers[name] = ProbeBuffer(name, shape, device=self.strategy.device)
        except AllocationError:
            self.release()
            raise

        logger.debug(f"Allocated {W}x{H} probe with {self.strategy}")

    # -----------------------------
    # Properties
    # -----------------------------

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def released(self) -> bool:
        return self._released

    @property
    def direction(self) -> torch.Tensor:
        """(H, W, 3) unit directions, zero outside the probe."""
        return self._read("direction")

    @property
    def angular(self) -> torch.Tensor:
        """(H, W, 2) (theta, phi), zero outside the probe."""
        return self._read("angular")

    @property
    def basis_weight(self) -> torch.Tensor:
        """(H, W, 9) solid angle weighted basis."""
        return self._read("basis_weight")

    @property
    def radiance(self) -> torch.Tensor:
        """(H, W, 3) the last loaded probe."""
        return self._read("radiance")

    @property
    def reconstruction(self) -> torch.Tensor:
        """(H, W, 3) the last synthesized irradiance image."""
        return self._read("reconstruction")

    @property
    def coefficients(self) -> torch.Tensor:
        """(9, 3) copy of the current coefficients, safe to keep as a snapshot."""
        return self._read("coefficients")

    @property
    def dominant_direction(self) -> torch.Tensor:
        return self._read("dominant_direction")

    @property
    def dominant_color(self) -> torch.Tensor:
        return self._read("dominant_color")

    @property
    def dominant_light(self) -> DominantLight:
        return DominantLight(direction=self.dominant_direction, color=self.dominant_color)

    def _read(self, name: str) -> torch.Tensor:
        buffer = self._buffers[name]
        buffer.require(f'Reading {name}')
        return buffer.read()

    # -----------------------------
    # Stages
    # -----------------------------

    def compute_coordinates(self):
        """Map every pixel to its direction and angles."""
        start_time = time.time()
        pixel_coordinates = generate_pixel_grid(self._height, self._width)
        spherical_coordinates, cartesian_coordinates = self.strategy.map(
            pixel_to_angular, (pixel_coordinates,), H=self._height, W=self._width)

        self._buffers["angular"].store(spherical_coordinates)
        self._buffers["direction"].store(cartesian_coordinates)
        logger.debug(f"Coordinates computed in {time.time() - start_time:.3f}s")

    def compute_basis_weights(self):
        """Evaluate the solid angle weighted basis of every pixel."""
        spherical_coordinates = self._buffers["angular"].require("Basis weights")
        cartesian_coordinates = self._buffers["direction"].require("Basis weights")

        start_time = time.time()
        weights = compute_basis_weights(spherical_coordinates, cartesian_coordinates, self.strategy)
        self._buffers["basis_weight"].store(weights)
        logger.debug(f"Basis weights computed in {time.time() - start_time:.3f}s")

    def load(self, image):
        """
        Copy a probe image in.

        :param image: array-like with exactly width * height * 3 values, either
            flat and row-major or (H, W, 3); origin top-left, x to the right, y down
        """
        image = torch.as_tensor(image, dtype=torch.float32)
        expected = self._width * self._height * N_CHANNELS
        if image.numel() != expected:
            raise BufferSizeMismatchError(
                f'Probe is {self._width}x{self._height}x{N_CHANNELS} = {expected} values, got {image.numel()} ({tuple(image.shape)})')

        self._buffers["radiance"].upload(image.reshape(self._height, self._width, N_CHANNELS))

    def project(self, scale: float) -> torch.Tensor:
        """
        Project the loaded probe onto the 9 term basis.

        :param scale: normalization of the coefficients, supplied by the caller
        :returns sph_coeffs: (9, 3) copy of the new coefficients
        """
        if not math.isfinite(scale):
            raise ValueError(f'scale must be a finite number, got {scale}')

        weights = self._buffers["basis_weight"].require("Projection")
        radiance = self._buffers["radiance"].require("Projection")

        start_time = time.time()
        sph_coeffs = project_coefficients(radiance, weights, scale, self.strategy)
        self._buffers["coefficients"].store(sph_coeffs)

        # Any earlier reconstruction and dominant light belong to the previous coefficients
        self._buffers["reconstruction"].populated = False
        self._buffers["dominant_direction"].populated = False
        self._buffers["dominant_color"].populated = False

        logger.debug(f"Projection computed in {time.time() - start_time:.3f}s")
        return self.coefficients

    def reconstruct(self) -> torch.Tensor:
        """
        Irradiance image of the current coefficients.

        :returns irradiance_map: (H, W, 3) host copy
        """
        cartesian_coordinates = self._buffers["direction"].require("Reconstruction")
        sph_coeffs = self._buffers["coefficients"].require("Reconstruction")

        start_time = time.time()
        irradiance_map = reconstruct_irradiance(cartesian_coordinates, sph_coeffs, self.strategy)
        self._buffers["reconstruction"].store(irradiance_map)
        logger.debug(f"Reconstruction computed in {time.time() - start_time:.3f}s")

        return self._buffers["reconstruction"].read()

    def compute_dominant_light(self) -> DominantLight:
        """
        Estimate the dominant light of the current coefficients.

        :raises DegenerateNormalizationError: band 1 carries no usable direction
        """
        sph_coeffs = self._buffers["coefficients"].require("Dominant light")
        light = get_dominant_light(sph_coeffs)

        self._buffers["dominant_direction"].store(light.direction)
        self._buffers["dominant_color"].store(light.color)
        return self.dominant_light

    def dominant_light_coefficients(self) -> torch.Tensor:
        """
        Coefficients of an environment holding only the dominant light.

        :returns sph_coeffs: (9, 3) new matrix, the probe is left untouched
        """
        direction = self._buffers["dominant_direction"].require("Dominant light coefficients")
        color = self._buffers["dominant_color"].require("Dominant light coefficients")
        return project_direction_into_coefficients(direction, color).cpu()

    def reinject_dominant_light(self, *, replace: bool) -> torch.Tensor:
        """
        Re-express the lighting as the dominant light alone.

        With replace=True the single light coefficients take the place of the
        measured ones (take a copy of `coefficients` first to keep them). With
        replace=False nothing changes and the matrix is only returned.

        :returns sph_coeffs: (9, 3) single light coefficients
        """
        sph_coeffs = self.dominant_light_coefficients()
        if replace:
            self.set_coefficients(sph_coeffs)
        return sph_coeffs

    def set_coefficients(self, sph_coeffs):
        """
        Install a (9, 3) coefficient matrix, e.g. one saved earlier.

        The last reconstruction belonged to the old matrix, run reconstruct() again.
        """
        sph_coeffs = torch.as_tensor(sph_coeffs, dtype=torch.float32)
        if tuple(sph_coeffs.shape) != (N_TERMS, N_CHANNELS):
            raise ValueError(f'Coefficients must be ({N_TERMS}, {N_CHANNELS}), got {tuple(sph_coeffs.shape)}')
        self._buffers["coefficients"].upload(sph_coeffs)
        self._buffers["reconstruction"].populated = False

    # -----------------------------
    # Lifetime
    # -----------------------------

    def release(self):
        """Free every host and device buffer. The probe is unusable afterwards."""
        for buffer in self._buffers.values():
            buffer.release()
        self._released = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False

    def __repr__(self) -> str:
        return f"ProbeImage(width={self._width}, height={self._height}, strategy={self.strategy}, released={self._released})"
