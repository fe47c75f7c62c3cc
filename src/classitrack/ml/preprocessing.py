"""Image preprocessing: decoding, resizing, and tensor normalization.

The model expects an NHWC float32 tensor shaped ``[1, H, W, 3]`` with
values in ``[0, 1]``. Images are stretched to the model resolution in a
single bilinear resize; there is no cropping or letterboxing, which
matches how the classifier was trained.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from classitrack.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more pixels than this.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ImageDecodeError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image payload")
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            if max_pixels is not None and image.width * image.height > max_pixels:
                raise ImageDecodeError(f"Image has {image.width * image.height} pixels, limit is {max_pixels}")
            rgb = image.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc
    return np.asarray(rgb, dtype=np.uint8)


def resize_bilinear(raster: NDArray[np.uint8], height: int, width: int) -> NDArray[np.uint8]:
    """Stretch an RGB raster to ``height`` x ``width`` with bilinear resampling."""
    if raster.shape[0] == height and raster.shape[1] == width:
        return raster
    image = Image.fromarray(np.ascontiguousarray(raster))
    return np.asarray(image.resize((width, height), Image.Resampling.BILINEAR), dtype=np.uint8)


def to_input_tensor(raster: NDArray[np.uint8], height: int, width: int) -> NDArray[np.float32]:
    """Resize and rescale an RGB raster into a ``[1, H, W, 3]`` model input."""
    resized = resize_bilinear(raster, height, width)
    tensor = resized.astype(np.float32) / np.float32(255.0)
    return tensor[np.newaxis, ...]
