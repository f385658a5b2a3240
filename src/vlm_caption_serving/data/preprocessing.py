"""
Image preprocessing for BLIP inputs (sniff, decode, resize-to-fill, normalize).
"""

import io
import logging
import struct
from typing import Optional, Union

import numpy as np
import torch
from PIL import Image, ImageOps

from vlm_caption_serving.errors import DecodeError, UnsupportedFormat

logger = logging.getLogger(__name__)

IMAGE_SIZE = 384

# Normalization statistics the pretrained BLIP vision encoder was trained with.
IMAGE_MEAN = (0.48145466, 0.4578275, 0.40821073)
IMAGE_STD = (0.26862954, 0.2613026, 0.2757771)

# Pillow's open() hands the same 16-byte prefix to each plugin's check.
_PREFIX_LEN = 16


def guess_format(data: bytes) -> Optional[str]:
    """
    Identify the image container from its leading bytes.

    Uses the signature checks registered by Pillow's image plugins, so the
    result depends on the content only, never on a filename.

    Returns:
        The Pillow format id (e.g. ``"PNG"``), or None when nothing matches.

    Raises:
        UnsupportedFormat: If a plugin recognises the signature but reports
            that this Pillow build cannot read it.
    """
    Image.init()
    prefix = data[:_PREFIX_LEN]
    for fmt in Image.ID:
        _, accept = Image.OPEN[fmt]
        if accept is None:
            continue
        try:
            result = accept(prefix)
        except (IndexError, TypeError, struct.error):
            continue
        if isinstance(result, str):
            raise UnsupportedFormat(result)
        if result:
            return fmt
    return None


def load_image(data: bytes, size: int = IMAGE_SIZE) -> Image.Image:
    """
    Decode image bytes and resize-to-fill a ``size`` x ``size`` RGB grid.

    The shorter side is scaled to ``size`` preserving aspect ratio and the
    overflow on the longer side is center-cropped away. Resampling uses
    Pillow's bilinear (triangle) filter.

    Args:
        data: Raw bytes of an image in any format Pillow can sniff.
        size: Target edge length in pixels.

    Returns:
        RGB PIL Image of exactly (size, size).

    Raises:
        UnsupportedFormat: If the byte signature matches no known format.
        DecodeError: If the signature matches but the payload is invalid.
    """
    fmt = guess_format(data)
    if fmt is None:
        raise UnsupportedFormat("The image format could not be determined")

    try:
        with Image.open(io.BytesIO(data), formats=[fmt]) as image:
            image.load()
            rgb = image.convert("RGB")
    except Image.DecompressionBombError as e:
        raise DecodeError(f"Image too large to decode: {e}") from e
    except (OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"Failed to decode {fmt} image: {e}") from e

    logger.debug("Decoded %s image %dx%d", fmt, rgb.width, rgb.height)
    return ImageOps.fit(
        rgb,
        (size, size),
        method=Image.Resampling.BILINEAR,
        centering=(0.5, 0.5),
    )


def create_tensor(
    pixels: Union[Image.Image, np.ndarray, bytes],
    size: int = IMAGE_SIZE,
) -> torch.Tensor:
    """
    Build the normalized (3, size, size) float tensor from RGB pixels.

    Args:
        pixels: RGB image, (size, size, 3) uint8 array, or the raw
            row-major RGB byte buffer of the same shape.
        size: Edge length of the pixel grid.

    Returns:
        float32 tensor with values ((pixel / 255) - mean[c]) / std[c].
    """
    if isinstance(pixels, Image.Image):
        array = np.asarray(pixels.convert("RGB"), dtype=np.uint8)
    elif isinstance(pixels, (bytes, bytearray)):
        array = np.frombuffer(pixels, dtype=np.uint8)
    else:
        array = np.asarray(pixels, dtype=np.uint8)

    if array.size != size * size * 3:
        raise DecodeError(
            f"Expected {size * size * 3} pixel bytes for a {size}x{size} RGB image, got {array.size}"
        )
    array = array.reshape(size, size, 3)

    # (H, W, C) -> (C, H, W)
    tensor = torch.from_numpy(array.copy()).permute(2, 0, 1).float() / 255.0
    mean = torch.tensor(IMAGE_MEAN).view(3, 1, 1)
    std = torch.tensor(IMAGE_STD).view(3, 1, 1)
    return (tensor - mean) / std


def preprocess(data: bytes) -> torch.Tensor:
    """Decode image bytes into the normalized (3, 384, 384) model input."""
    return create_tensor(load_image(data))
