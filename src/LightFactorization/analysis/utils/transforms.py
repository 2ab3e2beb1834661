import numpy as np
import torch
from einops import repeat


# Below this magnitude sin(x)/x is replaced by its limit.
SINC_THRESHOLD = 1.0e-4


def sinc(x: torch.Tensor) -> torch.Tensor:
    """
    sin(x)/x with the removable singularity at 0 filled in.

    :param x: (...)
    :return: (...)
    """
    return torch.where(torch.abs(x) < SINC_THRESHOLD, torch.ones_like(x), torch.sin(x) / x)


def generate_pixel_grid(H: int, W: int, device: torch.device = None) -> torch.Tensor:
    """
    Create map of size (H, W, 2) holding the (x, y) pixel coordinate of every pixel.

                Numpy/OpenCV:
                                (0,0)       (0,W)
                                    +-------+
                                    |       |
                                    +-------+
                                (H,0)       (H,W)

    x grows to the right and y grows downwards, the same convention used by the
    loaded probe buffer.

    :params H: height
    :params W: width
    :return pixel_coordinates: (H, W, 2) float32
    """
    x_s = torch.arange(W, device=device, dtype=torch.float32)  # (W)
    y_s = torch.arange(H, device=device, dtype=torch.float32)  # (H)

    x_map = repeat(x_s, "w -> h w", h=H)  # (H, W)
    y_map = repeat(y_s, "h -> h w", w=W)  # (H, W)

    return torch.stack([x_map, y_map], dim=-1)


def pixel_to_angular(pixel_coordinates: torch.Tensor, H: int, W: int) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Angular map (light probe) mapping from pixel to direction.

    The probe disk is inscribed in the image. The distance r from the centre,
    normalized so the disk edge is r = 1, is proportional to the polar angle:

        theta = pi * r         (0 looking into the probe, pi at the rim)
        phi   = atan2(v, u)

    Pixels with r > 1 lie outside the probe and get zero angles and the zero
    direction. At the exact centre the azimuth is undefined, any NaN produced
    there is replaced with 0.

    Works on a single pixel (2,) as well as on any block (..., 2).

    :params pixel_coordinates: (..., 2) (x, y) pixel coordinates
    :params H: height
    :params W: width
    :returns spherical_coordinates: (..., 2) (theta, phi)
    :returns cartesian_coordinates: (..., 3) unit direction or zero
    """
    # Integer halves, the centre pixel sits at (W // 2, H // 2)
    mid_w = float(W // 2)
    mid_h = float(H // 2)

    x, y = pixel_coordinates[..., 0], pixel_coordinates[..., 1]
    u = (x - mid_w) / mid_w
    v = (y - mid_h) / mid_h
    r = torch.sqrt(u * u + v * v)

    theta = torch.pi * r
    phi = torch.atan2(v, u)
    theta = torch.where(torch.isnan(theta), torch.zeros_like(theta), theta)
    phi = torch.where(torch.isnan(phi), torch.zeros_like(phi), phi)

    outside = r > 1.0
    theta = torch.where(outside, torch.zeros_like(theta), theta)
    phi = torch.where(outside, torch.zeros_like(phi), phi)

    spherical_coordinates = torch.stack([theta, phi], dim=-1)
    cartesian_coordinates = spherical_to_cartesian(spherical_coordinates)
    cartesian_coordinates = torch.where(outside[..., None], torch.zeros_like(cartesian_coordinates), cartesian_coordinates)

    return spherical_coordinates, cartesian_coordinates


def spherical_to_cartesian(spherical_coordinates: torch.Tensor) -> torch.Tensor:
    """
    Convert from (polar, azimuth) to cartesian coordinates.

    :params spherical_coordinates (..., 2): theta measured from +Z, phi around +Z from +X
    :returns cartesian_coordinates (..., 3)
    """
    theta, phi = spherical_coordinates[..., 0], spherical_coordinates[..., 1]
    sin_theta = torch.sin(theta)

    x = sin_theta * torch.cos(phi)
    y = sin_theta * torch.sin(phi)
    z = torch.cos(theta)

    return torch.stack([x, y, z], dim=-1)


def cartesian_to_spherical(cartesian_coordinates: torch.Tensor) -> torch.Tensor:
    """
    Convert from unit cartesian coordinates to (polar, azimuth).

    :params cartesian_coordinates (..., 3)
    :returns spherical_coordinates (..., 2)
    """
    x, y, z = cartesian_coordinates[..., 0], cartesian_coordinates[..., 1], cartesian_coordinates[..., 2]

    theta = torch.atan2(torch.sqrt(x * x + y * y), z)
    phi = torch.atan2(y, x)

    return torch.stack([theta, phi], dim=-1)


def cartesian_to_pixel(cartesian_coordinates: torch.Tensor, H: int, W: int) -> torch.Tensor:
    """
    Undo the mapping from pixel_to_angular.

    :params cartesian_coordinates (..., 3) unit directions
    :params H: height
    :params W: width
    :returns pixel_coordinates (..., 2) int32 (x, y), clamped to the image
    """
    spherical_coordinates = cartesian_to_spherical(cartesian_coordinates)
    theta, phi = spherical_coordinates[..., 0], spherical_coordinates[..., 1]

    mid_w = float(W // 2)
    mid_h = float(H // 2)

    r = theta / np.pi
    x = r * torch.cos(phi) * mid_w + mid_w
    y = r * torch.sin(phi) * mid_h + mid_h

    x = torch.clamp(torch.round(x), 0, W - 1).to(torch.int32)
    y = torch.clamp(torch.round(y), 0, H - 1).to(torch.int32)

    return torch.stack([x, y], dim=-1)


def pixel_solid_angles(spherical_coordinates: torch.Tensor, W: int) -> torch.Tensor:
    """
    Differential solid angle of each pixel of an angular map.

    With theta = pi * r, the sphere element sin(theta) dtheta dphi becomes
    pi^2 * sinc(theta) * du dv, and one pixel covers du dv = (2/W)^2:

        domega = (2 pi / W)^2 * sinc(theta)

    Summed over the disk of a square probe this converges to 4 pi.

    :params spherical_coordinates: (..., 2)
    :params W: width
    :return domega: (...)
    """
    theta = spherical_coordinates[..., 0]
    pixel_area = (2.0 * np.pi / W) * (2.0 * np.pi / W)
    return pixel_area * sinc(theta)
