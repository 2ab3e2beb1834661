import logging
import math
from typing import Union

import cv2
import numpy as np
import torch
from einops import einsum

from LightFactorization.analysis.datatypes import DominantLight, DominantLightCPU
from LightFactorization.analysis.errors import DegenerateNormalizationError
from LightFactorization.analysis.utils.transforms import cartesian_to_pixel, pixel_solid_angles

logger = logging.getLogger(__name__)

# -----------------------------
# Constants
# -----------------------------

N_TERMS = 9  # 3 bands: 1 + 3 + 5
N_CHANNELS = 3

# Real SH normalization constants (l <= 2), see [2] Appendix A2
SH_C0 = 0.282095  # 0.5 * sqrt(1/pi)
SH_C1 = 0.488603  # sqrt(3/(4*pi))
SH_C2 = 1.092548  # 0.5 * sqrt(15/pi)
SH_C3 = 0.315392  # 0.25 * sqrt(5/pi)
SH_C4 = 0.546274  # 0.25 * sqrt(15/pi)

# Irradiance reconstruction constants, [12] equation 13.
# The clamped cosine convolves band l by A_0 = pi, A_1 = 2pi/3, A_2 = pi/4.
IRRADIANCE_K0 = 0.429043  # SH_C4 * A_2 (equally SH_C2 * A_2 / 2)
IRRADIANCE_K1 = 0.511664  # SH_C1 * A_1 / 2
IRRADIANCE_K2 = 0.743125  # 3 * SH_C3 * A_2
IRRADIANCE_K3 = 0.886227  # SH_C0 * A_0
IRRADIANCE_K4 = 0.247708  # SH_C3 * A_2

# sqrt(3/(4*pi)) at full precision, used by the dominant color fit [8]
DOMINANT_SH_C1 = 0.488602511

# Normalization of a single directional light so that its order-2 SH
# projection, seen through a Lambertian response, keeps its intensity [8].
DIFFUSE_CONVOLUTION = 16.0 * math.pi / 17.0

# Rec. 601 luma weights used to merge the per-channel direction candidates.
RGB_COLOR_DIFFERENCE_WEIGHTS = (0.3, 0.59, 0.11)

NORMALIZATION_EPS = 1e-8


# -----------------------------
# Basis
# -----------------------------

def sh9_basis(cartesian_coordinates: torch.Tensor) -> torch.Tensor:
    """
    Evaluate the 9 real SH basis functions (bands 0..2).

    Term order: 1, y, z, x, xy, yz, 3z^2-1, xz, x^2-y^2.

    :params cartesian_coordinates (..., 3)
    :returns Ylm (..., 9)

    Source:
    [2] Appendix A2 Polynomial Forms of SH Basis
    """
    x, y, z = cartesian_coordinates[..., 0], cartesian_coordinates[..., 1], cartesian_coordinates[..., 2]

    return torch.stack([
        SH_C0 * torch.ones_like(x),
        SH_C1 * y,
        SH_C1 * z,
        SH_C1 * x,
        SH_C2 * x * y,
        SH_C2 * y * z,
        SH_C3 * (3.0 * z * z - 1.0),
        SH_C2 * x * z,
        SH_C4 * (x * x - y * y),
    ], dim=-1)


def _valid_mask(cartesian_coordinates: torch.Tensor) -> torch.Tensor:
    # Zero direction marks pixels outside the probe
    return torch.any(cartesian_coordinates != 0.0, dim=-1)


def basis_weights(spherical_coordinates: torch.Tensor, cartesian_coordinates: torch.Tensor, W: int) -> tuple[torch.Tensor]:
    """
    Solid angle weighted basis of each pixel, the table the projection sums against.

    :params spherical_coordinates: (..., 2)
    :params cartesian_coordinates: (..., 3)
    :params W: width
    :returns weights: (..., 9), zero outside the probe

    Source:
    [6] ProjectEnvironment function
    """
    domega = pixel_solid_angles(spherical_coordinates, W)  # (...)
    valid = _valid_mask(cartesian_coordinates)

    weights = sh9_basis(cartesian_coordinates) * domega[..., None]
    weights = torch.where(valid[..., None], weights, torch.zeros_like(weights))
    return (weights,)


def compute_basis_weights(spherical_coordinates: torch.Tensor, cartesian_coordinates: torch.Tensor, strategy) -> torch.Tensor:
    """
    Build the (H, W, 9) weight table with the given execution strategy.
    """
    _, W, _ = cartesian_coordinates.shape
    (weights,) = strategy.map(basis_weights, (spherical_coordinates, cartesian_coordinates), W=W)
    return weights


# -----------------------------
# Project Environment Map to Coefficients
# -----------------------------

def accumulate_coefficients(radiance: torch.Tensor, weights: torch.Tensor) -> torch.Tensor:
    """
    Partial projection sum over every pixel of the given block.

    :params radiance: (..., 3)
    :params weights: (..., 9)
    :returns partial_coeffs: (9, 3)
    """
    radiance = radiance.reshape(-1, N_CHANNELS)  # (P, 3)
    weights = weights.reshape(-1, N_TERMS)       # (P, 9)
    return einsum(radiance, weights, "p c, p n_terms -> n_terms c")


def project_coefficients(radiance: torch.Tensor, weights: torch.Tensor, scale: float, strategy) -> torch.Tensor:
    """
    Project the probe onto the SH basis.

    coeffs[n, c] = scale * sum_p radiance[p, c] * weights[p, n]

    :params radiance: (H, W, 3)
    :params weights: (H, W, 9)
    :params scale: normalization supplied by the caller
    :params strategy: execution strategy doing the reduction
    :returns sph_coeffs: (9, 3)

    Source:
    [4] Equation 10
    [6] ProjectEnvironment function
    """
    sph_coeffs = strategy.reduce(accumulate_coefficients, (radiance, weights))
    return sph_coeffs * scale


# -----------------------------
# Reconstruction
# -----------------------------

def irradiance(cartesian_coordinates: torch.Tensor, sph_coeffs: torch.Tensor) -> tuple[torch.Tensor]:
    """
    Closed form irradiance of order 2 lighting, clamped to be non-negative.

    :params cartesian_coordinates: (..., 3)
    :params sph_coeffs: (9, 3)
    :returns irradiance: (..., 3), zero outside the probe

    Source:
    [12] equation 13.
    """
    x = cartesian_coordinates[..., 0:1]
    y = cartesian_coordinates[..., 1:2]
    z = cartesian_coordinates[..., 2:3]
    L = sph_coeffs

    value = (IRRADIANCE_K0 * L[8] * (x * x - y * y)
             + IRRADIANCE_K2 * L[6] * z * z
             + IRRADIANCE_K3 * L[0]
             - IRRADIANCE_K4 * L[6]
             + 2.0 * IRRADIANCE_K0 * (L[4] * x * y + L[7] * x * z + L[5] * y * z)
             + 2.0 * IRRADIANCE_K1 * (L[3] * x + L[1] * y + L[2] * z))
    value = torch.clamp(value, min=0.0)

    valid = _valid_mask(cartesian_coordinates)
    return (torch.where(valid[..., None], value, torch.zeros_like(value)),)


def reconstruct_irradiance(cartesian_coordinates: torch.Tensor, sph_coeffs: torch.Tensor, strategy) -> torch.Tensor:
    """
    Synthesize the (H, W, 3) irradiance image of the coefficients.
    """
    (irradiance_map,) = strategy.map(irradiance, (cartesian_coordinates,), sph_coeffs=sph_coeffs)
    return irradiance_map


def evaluate_sh_radiance(sph_coeffs: torch.Tensor, cartesian_coordinates: torch.Tensor) -> torch.Tensor:
    """
    Band limited radiance sum_n L_n Y_n(w), without the cosine convolution and without clamping.

    :params sph_coeffs: (9, 3)
    :params cartesian_coordinates: (..., 3)
    :returns radiance: (..., 3), zero outside the probe

    Source:
    [5] shReconstructSignal function.
    """
    sph_basis = sh9_basis(cartesian_coordinates)
    radiance = einsum(sph_basis, sph_coeffs.to(sph_basis.dtype), "... n_terms, n_terms c -> ... c")
    valid = _valid_mask(cartesian_coordinates)
    return torch.where(valid[..., None], radiance, torch.zeros_like(radiance))


# ------------------------------------------------------------
# Dominant Light Direction and Color
# ------------------------------------------------------------

def get_dominant_direction(sph_coeffs: torch.Tensor) -> torch.Tensor:
    """
    Get the dominant direction from the band 1 coefficients.

    Every channel's band 1 triplet is normalized on its own before the three
    candidates are merged with the luma weights. Merging first and normalizing
    once gives a different answer, keep the per-channel order.

    The final x and y negation is an axis convention correction of the probe
    layout, it is not derived.

    :params sph_coeffs: (9, 3) where each column is r, g, b
    :return dominant_direction: (3) unit vector

    Source:
    [7] Section 3.3
    [8] Extracting dominant light direction section
    """
    band_1 = sph_coeffs[1:4, :]  # (3, 3) rows are y, z, x
    norms = torch.sqrt(torch.sum(band_1 * band_1, dim=0))  # (3) one per channel

    if torch.any(norms < NORMALIZATION_EPS):
        raise DegenerateNormalizationError(f'Band 1 magnitude is ~0 for at least one channel: {norms.tolist()}')

    band_aligned_xyz = torch.stack([-band_1[2], -band_1[0], band_1[1]], dim=0) / norms  # (xyz, rgb)

    rgb_weights = torch.tensor(RGB_COLOR_DIFFERENCE_WEIGHTS, device=sph_coeffs.device, dtype=sph_coeffs.dtype)
    dominant_direction = torch.sum(band_aligned_xyz * rgb_weights, dim=1)  # (3)

    # 0.59 outweighs 0.3 + 0.11, unit candidates can never cancel out
    dominant_direction = dominant_direction / torch.linalg.norm(dominant_direction)

    # some correction
    axis_flip = torch.tensor([-1.0, -1.0, 1.0], device=sph_coeffs.device, dtype=sph_coeffs.dtype)
    return dominant_direction * axis_flip


def get_dominant_color(dominant_direction: torch.Tensor, sph_coeffs: torch.Tensor) -> torch.Tensor:
    """
    Least squares color of a directional light along dominant_direction matching band 1.

    :params dominant_direction: (3)
    :params sph_coeffs: (9, 3)
    :returns dominant_color: (3)

    Source:
    [8] Extracting dominant light intensity section.
    """
    dx, dy, dz = dominant_direction[0], dominant_direction[1], dominant_direction[2]
    direction_sh = DOMINANT_SH_C1 * DIFFUSE_CONVOLUTION * torch.stack([dy, dz, dx])  # (3) sh1, sh2, sh3

    denominator = torch.dot(direction_sh, direction_sh)
    if denominator < NORMALIZATION_EPS:
        raise DegenerateNormalizationError(f'Color denominator is ~0 ({denominator.item():.3e})')

    return einsum(sph_coeffs[1:4, :], direction_sh, "n_terms c, n_terms -> c") / denominator


def project_direction_into_coefficients(direction: torch.Tensor, color: torch.Tensor) -> torch.Tensor:
    """
    Coefficients of an environment made of a single directional light.

    The basis is evaluated once at the light direction, weighted by the light
    color and normalized by 16 pi / 17.

    :params direction: (3) unit vector
    :params color: (3)
    :returns sph_coeffs: (9, 3), a new matrix
    """
    sph_basis = sh9_basis(direction)  # (9)
    return einsum(sph_basis, color.to(sph_basis.dtype), "n_terms, c -> n_terms c") * DIFFUSE_CONVOLUTION


def get_dominant_light(sph_coeffs: torch.Tensor) -> DominantLight:
    """
    Extract the single light (direction and color) best matching the band 1 lighting.
    """
    direction = get_dominant_direction(sph_coeffs)
    color = get_dominant_color(direction, sph_coeffs)
    logger.debug(f"Dominant light direction {direction.tolist()} color {color.tolist()}")
    return DominantLight(direction=direction, color=color)


def get_dominant_light_cpu(sph_coeffs: torch.Tensor, H: int = None, W: int = None, light: DominantLight = None) -> DominantLightCPU:
    """
    Same as get_dominant_light with the results converted to lists.

    When the probe size is given the pixel of the light on the probe is filled in too.
    A light already extracted from sph_coeffs can be passed in to skip the estimation.
    """
    if light is None:
        light = get_dominant_light(sph_coeffs)

    pixel = None
    if H is not None and W is not None:
        pixel = cartesian_to_pixel(light.direction, H, W).cpu().numpy().tolist()

    return DominantLightCPU(
        direction=light.direction.cpu().numpy().tolist(),
        color=light.color.cpu().numpy().tolist(),
        sph_coeffs=sph_coeffs.cpu().numpy().tolist(),
        pixel=pixel)


def visualize_dominant_light(radiance: torch.Tensor, dominant_light: Union[DominantLight, DominantLightCPU]) -> torch.Tensor:
    """
    Draw the dominant light on top of the probe.

    :params radiance: (H, W, 3) probe, clipped to [0, 1] for the background
    :params dominant_light: DominantLight or DominantLightCPU
    :returns vis_hdri: (H, W, 3) same device and dtype as radiance
    """
    H, W, _ = radiance.shape

    direction = torch.as_tensor(dominant_light.direction, dtype=torch.float32).cpu()
    color = torch.as_tensor(dominant_light.color, dtype=torch.float32).cpu()
    pixel_x, pixel_y = cartesian_to_pixel(direction, H, W).tolist()

    # Brightest channel at 1 so the marker stays visible for any intensity
    peak = torch.max(torch.abs(color))
    marker = torch.clamp(color / peak, 0.0, 1.0) if peak > 0 else torch.ones(3)
    marker_bgr = tuple(int(c * 255) for c in marker.numpy()[::-1])

    vis_image = (np.clip(radiance.detach().cpu().numpy(), 0.0, 1.0) * 255).astype('uint8')
    vis_image = np.ascontiguousarray(vis_image[..., ::-1])  # RGB to BGR

    circle_radius = max(2, min(H, W) // 64)
    cv2.circle(vis_image, (pixel_x, pixel_y), circle_radius + 2, (255, 255, 255), -1)
    cv2.circle(vis_image, (pixel_x, pixel_y), circle_radius, marker_bgr, -1)

    # Legend
    font = cv2.FONT_HERSHEY_SIMPLEX
    cv2.circle(vis_image, (20, 25), 8, marker_bgr, -1)
    cv2.putText(vis_image, "Dominant Light", (45, 30), font, 0.6, (255, 255, 255), 2)

    vis_image = vis_image[..., ::-1].astype('float32') / 255.0
    return torch.from_numpy(np.ascontiguousarray(vis_image)).to(device=radiance.device, dtype=radiance.dtype)
