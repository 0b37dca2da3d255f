"""Image preprocessing: validation, decoding, network input batches, face crops.

Images are HxWx3 RGB arrays. Network inputs are float32 NCHW batches.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from faceapix.errors import InvalidImageInput
from faceapix.ml.geometry import Point, Rect
from faceapix.ml.tensors import Tensor

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


def validate_image(image: NDArray[np.generic] | Tensor) -> NDArray[np.float32]:
    """Return the image as a contiguous float32 HxWx3 array.

    Raises:
        InvalidImageInput: If the image is empty or not three-channel.
    """
    arr = image.data if isinstance(image, Tensor) else np.asarray(image)
    if arr.ndim != 3:
        raise InvalidImageInput(f"Expected an HxWx3 image, got shape {arr.shape}")
    if arr.shape[2] != 3:
        raise InvalidImageInput(f"Expected 3 channels, got {arr.shape[2]}")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise InvalidImageInput("Image is empty")
    if not (np.issubdtype(arr.dtype, np.integer) or np.issubdtype(arr.dtype, np.floating)):
        raise InvalidImageInput(f"Unsupported image dtype {arr.dtype}")
    return np.ascontiguousarray(arr, dtype=np.float32)


def decode_image(image_bytes: bytes, *, max_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 array.

    Raises:
        InvalidImageInput: If the bytes cannot be decoded or the image exceeds ``max_pixels``.
    """
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    decoded = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    if decoded is None:
        raise InvalidImageInput("Could not decode image")
    height, width = decoded.shape[:2]
    if height * width > max_pixels:
        raise InvalidImageInput(f"Image has {height * width} pixels, limit is {max_pixels}")
    return cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB)


def pad_to_square(image: NDArray[np.float32], *, center: bool = False) -> tuple[NDArray[np.float32], Point]:
    """Zero-pad an image to a square.

    Returns:
        The padded image and the offset of the original image inside it.
    """
    height, width = image.shape[:2]
    side = max(height, width)
    if height == width:
        return image, Point(0, 0)
    pad_x = (side - width) // 2 if center else 0
    pad_y = (side - height) // 2 if center else 0
    padded = np.zeros((side, side, image.shape[2]), dtype=image.dtype)
    padded[pad_y : pad_y + height, pad_x : pad_x + width] = image
    return padded, Point(pad_x, pad_y)


def to_batch(
    images: Sequence[NDArray[np.float32]],
    *,
    mean_rgb: tuple[float, float, float] = (0.0, 0.0, 0.0),
    scale: float = 1.0,
    shift: float = 0.0,
) -> NDArray[np.float32]:
    """Stack equally sized HxWx3 images into a normalized NCHW float32 batch.

    Each pixel becomes ``(value - mean_rgb) * scale + shift``.
    """
    stacked = np.stack([np.asarray(img, dtype=np.float32) for img in images], axis=0)
    normalized = (stacked - np.asarray(mean_rgb, dtype=np.float32)) * scale + shift
    return np.ascontiguousarray(normalized.transpose(0, 3, 1, 2), dtype=np.float32)


def square_input(image: NDArray[np.float32], input_size: int) -> tuple[NDArray[np.float32], int]:
    """Pad an image to a square at its bottom/right and resize it to ``input_size``.

    Returns:
        The resized image and the side length of the padded square, which maps
        relative network coordinates back to image pixels.
    """
    padded, _ = pad_to_square(image)
    side = padded.shape[0]
    resized = cv2.resize(padded, (input_size, input_size), interpolation=cv2.INTER_LINEAR)
    return resized, side


def extract_patch(image: NDArray[np.float32], rect: Rect, width: int, height: int) -> NDArray[np.float32]:
    """Resample ``rect`` of the image into a ``width x height`` patch.

    Parts of ``rect`` outside the image are filled with zeros.

    Raises:
        ValueError: If ``rect`` is empty or not finite.
    """
    values = (rect.x, rect.y, rect.width, rect.height)
    if not all(math.isfinite(v) for v in values) or rect.is_empty:
        raise ValueError(f"Cannot extract a patch from {rect}")
    sx = width / rect.width
    sy = height / rect.height
    transform = np.array(
        [[sx, 0.0, -rect.x * sx], [0.0, sy, -rect.y * sy]],
        dtype=np.float64,
    )
    return cv2.warpAffine(
        image,
        transform,
        (width, height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )


@dataclass(frozen=True)
class FaceCrop:
    """A face region resampled to a square patch.

    ``region`` is the (padded) face box in image coordinates; ``square`` is the
    centered square around it that the patch spans. The part of the square
    outside ``region`` is zero padding.
    """

    patch: NDArray[np.float32]
    region: Rect
    square: Rect

    def to_image_points(self, relative: NDArray[np.floating]) -> list[Point]:
        """Map ``(K, 2)`` patch-relative coordinates to image points inside ``region``."""
        relative = np.asarray(relative, dtype=np.float64).reshape(-1, 2)
        xs = np.clip(self.square.x + relative[:, 0] * self.square.width, self.region.left, self.region.right)
        ys = np.clip(self.square.y + relative[:, 1] * self.square.height, self.region.top, self.region.bottom)
        return [Point(float(x), float(y)) for x, y in zip(xs, ys, strict=True)]


def crop_face(image: NDArray[np.float32], rect: Rect, size: int, *, padding_factor: float = 0.0) -> FaceCrop:
    """Cut a padded face box out of the image as a ``size x size`` patch.

    The box is grown by ``padding_factor`` and then zero-padded to a centered
    square, so the face keeps its aspect ratio.
    """
    region = rect.pad(padding_factor) if padding_factor else rect
    square = region.to_square()
    patch = extract_patch(image, square, size, size)

    # zero the square padding outside the face region
    left = round((region.left - square.left) / square.width * size)
    right = round((region.right - square.left) / square.width * size)
    top = round((region.top - square.top) / square.height * size)
    bottom = round((region.bottom - square.top) / square.height * size)
    patch[:, :left] = 0
    patch[:, right:] = 0
    patch[:top, :] = 0
    patch[bottom:, :] = 0
    return FaceCrop(patch=patch, region=region, square=square)


def align_face(image: NDArray[np.float32], rect: Rect, angle: float, size: int) -> NDArray[np.float32]:
    """Rotate the image by ``angle`` degrees around ``rect`` and resample it to ``size x size``.

    Positive angles rotate counter-clockwise, levelling an eye line that
    slopes down to the right by the same angle.

    Raises:
        ValueError: If ``rect`` is empty or not finite.
    """
    values = (rect.x, rect.y, rect.width, rect.height, angle)
    if not all(math.isfinite(v) for v in values) or rect.is_empty:
        raise ValueError(f"Cannot align a face in {rect}")
    center = rect.center
    side = max(rect.width, rect.height)
    transform = cv2.getRotationMatrix2D((center.x, center.y), angle, size / side)
    transform[0, 2] += size / 2 - center.x
    transform[1, 2] += size / 2 - center.y
    return cv2.warpAffine(
        image,
        transform,
        (size, size),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )
