import os

os.environ['OPENCV_IO_ENABLE_OPENEXR'] = '1'

import cv2
import numpy as np
import torch


def read_exr(exr_path: str) -> torch.Tensor:
    """
    Read in an exr light probe as rgb.

    : return image: (H, W, 3) float32
    """
    image = cv2.imread(str(exr_path), cv2.IMREAD_ANYCOLOR | cv2.IMREAD_ANYDEPTH)
    if image is None:
        raise ValueError(f"Could not read EXR file: {exr_path}")

    if image.ndim == 2:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    H, W, C = image_rgb.shape
    assert(C == 3), f'The number of channels C:{C} >3 which is not possible...'
    return torch.from_numpy(image_rgb.astype(np.float32))


def write_exr(image: torch.Tensor, exr_path: str):
    """
    Write an image to an exr file.

    :param image: (H, W, 3)
    :param exr_path: path to write the exr file to
    """
    image_np = image.detach().cpu().numpy().astype(np.float32)
    if not cv2.imwrite(str(exr_path), cv2.cvtColor(image_np, cv2.COLOR_RGB2BGR)):
        raise ValueError(f"Could not write EXR file: {exr_path}")


def exr_to_png_tensor(image: torch.Tensor, png_path: str, gamma: float = 2.2, exposure: float = 0.0):
    """
    Convert a tensor image to PNG for web display.

    :param image: (H, W, 3) tensor
    :param png_path: path to write the PNG file to
    :param gamma: gamma correction value (default 2.2)
    :param exposure: exposure adjustment in stops (default 0.0)
    """
    image_np = image.detach().cpu().numpy()

    # Apply exposure adjustment
    if exposure != 0.0:
        image_np = image_np * (2.0 ** exposure)

    # Simple tone mapping: clamp and gamma correct
    image_np = np.clip(image_np, 0.0, 1.0)
    image_np = np.power(image_np, 1.0 / gamma)

    image_8bit = (image_np * 255).astype(np.uint8)
    image_bgr = cv2.cvtColor(image_8bit, cv2.COLOR_RGB2BGR)

    if not cv2.imwrite(str(png_path), image_bgr):
        raise ValueError(f"Could not write PNG file: {png_path}")
