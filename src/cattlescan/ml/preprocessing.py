"""Image preprocessing pipeline.

Decodes uploaded bytes (format detection, EXIF orientation, RGB
conversion, size validation) into numpy arrays, and prepares those arrays
as model input tensors.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from cattlescan.config import Settings
    from cattlescan.ml.model_manager import ModelSpec


@dataclass(frozen=True)
class DecodedImage:
    """A decoded RGB image with known pixel dimensions."""

    pixels: NDArray[np.uint8]

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


class PillowPreprocessor:
    """Decodes image uploads with Pillow, enforcing the configured limits."""

    def __init__(self, settings: Settings) -> None:
        self._max_file_size = settings.max_file_size
        self._max_image_pixels = settings.max_image_pixels

    @property
    def max_file_size(self) -> int:
        return self._max_file_size

    def decode_image(self, image_bytes: bytes) -> DecodedImage:
        """Decode raw image bytes into an RGB image.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).

        Returns:
            The decoded image.

        Raises:
            ValueError: If the image cannot be decoded or exceeds size limits.
        """
        if not image_bytes:
            raise ValueError("Empty image upload")
        if len(image_bytes) > self._max_file_size:
            raise ValueError(f"Image file exceeds {self._max_file_size} bytes")

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise ValueError(f"Image has {width * height} pixels, limit is {self._max_image_pixels}")
                rgb = ImageOps.exif_transpose(img).convert("RGB")
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            raise ValueError(f"Could not decode image: {exc}") from exc

        return DecodedImage(pixels=np.asarray(rgb, dtype=np.uint8))


def preprocess_for_classification(image: NDArray[np.uint8], spec: ModelSpec) -> NDArray[np.float32]:
    """Prepare an image for an ImageNet-style classifier.

    Resizes the shortest edge to ``image_size / crop_pct``, center-crops to
    ``image_size``, rescales to [0, 1] and normalizes with the model's
    mean/std.

    Args:
        image: HxWx3 RGB uint8 array.
        spec: Model metadata carrying the preprocessing constants.

    Returns:
        1x3xSxS float32 tensor.
    """
    size = spec.image_size
    resize_to = int(size / spec.crop_pct)

    img = Image.fromarray(image)
    width, height = img.size
    scale = resize_to / min(width, height)
    new_width = max(size, round(width * scale))
    new_height = max(size, round(height * scale))
    img = img.resize((new_width, new_height), Image.Resampling.BILINEAR)

    left = (new_width - size) // 2
    top = (new_height - size) // 2
    img = img.crop((left, top, left + size, top + size))

    arr = np.asarray(img, dtype=np.float32) / 255.0
    arr = (arr - np.asarray(spec.mean, dtype=np.float32)) / np.asarray(spec.std, dtype=np.float32)
    return np.ascontiguousarray(arr.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
