"""Image preprocessing pipeline.

Decodes uploaded bytes into RGB numpy arrays (applying EXIF orientation and
size limits) and turns those arrays into the input tensors each model expects.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

CLASSIFIER_INPUT_SIZE: int = 224

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


class ImageDecodeError(ValueError):
    """Raised when uploaded bytes cannot be turned into an RGB image."""


class ImagePreprocessor:
    """Decodes images and prepares model input tensors."""

    def __init__(self, max_image_pixels: int) -> None:
        self._max_image_pixels = max_image_pixels

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            ImageDecodeError: If the image cannot be decoded or exceeds size limits.
        """
        if not image_bytes:
            raise ImageDecodeError("Empty image payload")

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise ImageDecodeError(
                        f"Image has {width * height} pixels, limit is {self._max_image_pixels}"
                    )
                img = ImageOps.exif_transpose(img)
                rgb = img.convert("RGB")
                array = np.asarray(rgb, dtype=np.uint8)
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            raise ImageDecodeError(f"Could not decode image: {exc}") from exc

        logger.debug("Decoded image %dx%d", array.shape[1], array.shape[0])
        return array

    @staticmethod
    def preprocess_for_classification(
        image: NDArray[np.uint8], size: int = CLASSIFIER_INPUT_SIZE
    ) -> NDArray[np.float32]:
        """Resize, normalize with ImageNet statistics, and lay out as NCHW.

        Args:
            image: HxWx3 RGB uint8 array.
            size: Square input edge length.

        Returns:
            Float32 tensor of shape (1, 3, size, size).
        """
        resized = Image.fromarray(image).resize((size, size), Image.Resampling.BILINEAR)
        scaled = np.asarray(resized, dtype=np.float32) / 255.0
        normalized = (scaled - IMAGENET_MEAN) / IMAGENET_STD
        return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

    @staticmethod
    def preprocess_for_detection(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
        """Wrap an image as a batch of one for the SSD detector.

        The detector graph resizes internally and takes raw uint8 pixels.

        Returns:
            Uint8 tensor of shape (1, H, W, 3).
        """
        return np.ascontiguousarray(image[np.newaxis, ...], dtype=np.uint8)
