"""Raw camera frame to RGB conversion.

Supports the two layouts camera drivers commonly hand out:

- ``yuv420``: three planes (Y, U, V) with chroma subsampled 2x2.
- ``bgra8888``: one interleaved plane, 4 bytes per pixel.

Every converter returns an HxWx3 RGB uint8 array of the frame's size.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from classitrack.errors import FrameConversionError, UnsupportedFrameFormatError

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray


class FrameFormat(StrEnum):
    YUV420 = "yuv420"
    BGRA8888 = "bgra8888"


@dataclass(frozen=True)
class FramePlane:
    """One memory plane of a camera frame."""

    data: bytes
    bytes_per_row: int
    bytes_per_pixel: int | None = None


@dataclass(frozen=True)
class CameraFrame:
    """A raw frame as delivered by the camera driver."""

    width: int
    height: int
    format: FrameFormat | str
    planes: tuple[FramePlane, ...]


def _gather(plane: FramePlane, index: NDArray[np.int64]) -> NDArray[np.float64]:
    buffer = np.frombuffer(plane.data, dtype=np.uint8)
    if int(index.max()) >= buffer.size:
        raise FrameConversionError(f"Plane too short: need {int(index.max()) + 1} bytes, have {buffer.size}")
    return buffer[index].astype(np.float64)


def _pixel_grid(frame: CameraFrame) -> tuple[NDArray[np.int64], NDArray[np.int64]]:
    if frame.width <= 0 or frame.height <= 0:
        raise FrameConversionError(f"Invalid frame size {frame.width}x{frame.height}")
    ys = np.arange(frame.height, dtype=np.int64)[:, None]
    xs = np.arange(frame.width, dtype=np.int64)[None, :]
    return ys, xs


def yuv420_to_rgb(frame: CameraFrame) -> NDArray[np.uint8]:
    """Convert a tri-planar 4:2:0 frame using the full-range BT.601 transform."""
    if len(frame.planes) < 3:
        raise FrameConversionError(f"YUV420 frame needs 3 planes, got {len(frame.planes)}")
    y_plane, u_plane, v_plane = frame.planes[:3]
    ys, xs = _pixel_grid(frame)

    y_index = ys * y_plane.bytes_per_row + xs * (y_plane.bytes_per_pixel or 1)
    # U and V share the same strides on every driver we target.
    uv_index = (ys // 2) * u_plane.bytes_per_row + (xs // 2) * (u_plane.bytes_per_pixel or 1)

    luma = _gather(y_plane, y_index)
    u = _gather(u_plane, uv_index) - 128.0
    v = _gather(v_plane, uv_index) - 128.0

    rgb = np.stack(
        (
            luma + 1.402 * v,
            luma - 0.344136 * u - 0.714136 * v,
            luma + 1.772 * u,
        ),
        axis=-1,
    )
    # Round half away from zero; negatives clamp to 0 either way.
    return np.clip(np.floor(rgb + 0.5), 0, 255).astype(np.uint8)


def bgra8888_to_rgb(frame: CameraFrame) -> NDArray[np.uint8]:
    """Reorder an interleaved BGRA frame into RGB, dropping alpha."""
    if not frame.planes:
        raise FrameConversionError("BGRA8888 frame has no planes")
    plane = frame.planes[0]
    ys, xs = _pixel_grid(frame)

    base = ys * plane.bytes_per_row + xs * 4
    rgb = np.stack(
        (_gather(plane, base + 2), _gather(plane, base + 1), _gather(plane, base)),
        axis=-1,
    )
    return rgb.astype(np.uint8)


_CONVERTERS: dict[FrameFormat, Callable[[CameraFrame], NDArray[np.uint8]]] = {
    FrameFormat.YUV420: yuv420_to_rgb,
    FrameFormat.BGRA8888: bgra8888_to_rgb,
}


def convert_frame(frame: CameraFrame) -> NDArray[np.uint8]:
    """Convert a camera frame to an HxWx3 RGB array.

    Raises:
        UnsupportedFrameFormatError: If the frame layout has no converter.
        FrameConversionError: If the planes do not match the declared size.
    """
    try:
        frame_format = FrameFormat(frame.format)
    except ValueError:
        raise UnsupportedFrameFormatError(f"Unsupported frame format: {frame.format}") from None
    return _CONVERTERS[frame_format](frame)
