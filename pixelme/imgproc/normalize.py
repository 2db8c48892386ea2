"""Image normalisation helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from PIL import Image, UnidentifiedImageError

from pixelme.imgproc.orientation import DEFAULT_ORIENTATION, read_orientation
from pixelme.imgproc.raster import RasterRef, bytes_to_data_uri, decode_image, image_to_data_uri, mime_type_for

logger = logging.getLogger(__name__)

Transpose = Image.Transpose

# EXIF orientation code -> transform that brings the stored pixels upright.
ORIENTATION_TRANSFORMS: dict[int, Transpose | None] = {
    1: None,
    2: Transpose.FLIP_LEFT_RIGHT,
    3: Transpose.ROTATE_180,
    4: Transpose.FLIP_TOP_BOTTOM,
    5: Transpose.TRANSPOSE,
    6: Transpose.ROTATE_270,
    7: Transpose.TRANSVERSE,
    8: Transpose.ROTATE_90,
}

_INVERSE_TRANSFORMS: dict[Transpose, Transpose] = {
    Transpose.ROTATE_270: Transpose.ROTATE_90,
    Transpose.ROTATE_90: Transpose.ROTATE_270,
}

QUARTER_TURN_QUALITY = 75
LARGE_UPLOAD_QUALITY = 70
DEFAULT_UPLOAD_QUALITY = 85


class UploadDecodeError(ValueError):
    """Raised when uploaded bytes cannot be decoded as an image."""


def swaps_dimensions(orientation: int) -> bool:
    """Return ``True`` for the codes that imply a 90/270 degree rotation."""

    return orientation in (5, 6, 7, 8)


def apply_orientation(image: Image.Image, orientation: int) -> Image.Image:
    """
    Return an upright copy of ``image`` for the given EXIF orientation code.

    The transforms only permute pixel positions, so the result is exact. When the
    destination buffer cannot be produced the unrotated source is returned.
    """

    method = ORIENTATION_TRANSFORMS.get(orientation)
    if method is None:
        return image.copy()
    try:
        return image.transpose(method)
    except (MemoryError, OSError, ValueError) as exc:
        logger.warning("Orientation %s could not be applied, keeping source raster: %s", orientation, exc)
        return image.copy()


def invert_orientation(image: Image.Image, orientation: int) -> Image.Image:
    """Undo :func:`apply_orientation`, recovering the stored pixel layout."""

    method = ORIENTATION_TRANSFORMS.get(orientation)
    if method is None:
        return image.copy()
    return image.transpose(_INVERSE_TRANSFORMS.get(method, method))


def fit_within(image: Image.Image, max_dimension: int) -> Image.Image:
    """Downscale ``image`` so neither side exceeds ``max_dimension``."""

    width, height = image.size
    if width <= max_dimension and height <= max_dimension:
        return image
    scale = min(max_dimension / width, max_dimension / height)
    target = (max(1, round(width * scale)), max(1, round(height * scale)))
    logger.info("Resizing image from %sx%s to %sx%s", width, height, *target)
    return image.resize(target, Image.Resampling.LANCZOS)


@dataclass(slots=True, frozen=True)
class NormalizedUpload:
    """Upright upload ready to be stored as the session's source raster."""

    ref: RasterRef
    width: int
    height: int
    orientation: int = DEFAULT_ORIENTATION


class ImageNormalizer:
    """Ensures consistent orientation and size of uploaded photos."""

    def __init__(self, max_dimension: int = 1024, compression_threshold: int = 2 * 1024 * 1024) -> None:
        self._max_dimension = max_dimension
        self._compression_threshold = compression_threshold

    def normalize(self, image_bytes: bytes) -> NormalizedUpload:
        """Return the canonical upright raster for raw upload bytes."""

        orientation = read_orientation(image_bytes)
        try:
            image = decode_image(image_bytes)
        except (UnidentifiedImageError, OSError) as exc:
            raise UploadDecodeError("Uploaded file is not a supported image.") from exc

        is_large = len(image_bytes) > self._compression_threshold
        if orientation == DEFAULT_ORIENTATION and not is_large:
            logger.debug("Small upright upload, embedding original bytes")
            ref = bytes_to_data_uri(image_bytes, mime_type_for(image_bytes))
            return NormalizedUpload(ref=ref, width=image.width, height=image.height)

        upright = fit_within(apply_orientation(image, orientation), self._max_dimension)
        quality = LARGE_UPLOAD_QUALITY if is_large else DEFAULT_UPLOAD_QUALITY
        ref = image_to_data_uri(upright, "JPEG", quality=quality)
        logger.info(
            "Normalized upload: orientation=%s size=%sx%s quality=%s",
            orientation,
            upright.width,
            upright.height,
            quality,
        )
        return NormalizedUpload(ref=ref, width=upright.width, height=upright.height, orientation=orientation)

    def rotate(self, image: Image.Image, direction: Literal["left", "right"]) -> NormalizedUpload:
        """Rotate an already normalized raster by a quarter turn."""

        method = Transpose.ROTATE_270 if direction == "right" else Transpose.ROTATE_90
        rotated = fit_within(image.transpose(method), self._max_dimension)
        ref = image_to_data_uri(rotated, "JPEG", quality=QUARTER_TURN_QUALITY)
        return NormalizedUpload(ref=ref, width=rotated.width, height=rotated.height)
