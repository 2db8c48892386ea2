"""Raster references and the local pixel operations that work on them."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from io import BytesIO

import httpx
from PIL import Image, ImageDraw, UnidentifiedImageError

from pixelme.errors import ServiceFailureKind, ServiceRequestError

logger = logging.getLogger(__name__)

RasterRef = str
"""An image reference: either an embeddable ``data:`` URI or an http(s) URL."""

CHECKER_SIZE = 20
CHECKER_LIGHT = (0xE5, 0xE5, 0xE5, 255)
CHECKER_DARK = (0xCC, 0xCC, 0xCC, 255)

_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


class InvalidCropError(ValueError):
    """Raised when a crop rectangle does not cover a usable area."""


def is_data_uri(ref: RasterRef) -> bool:
    return ref.startswith("data:")


def bytes_to_data_uri(data: bytes, mime_type: str) -> RasterRef:
    """Wrap raw encoded bytes in a base64 data URI."""

    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def image_to_data_uri(image: Image.Image, image_format: str = "PNG", quality: int | None = None) -> RasterRef:
    """Encode ``image`` and return it as a data URI."""

    if image_format == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    buffer = BytesIO()
    options = {"quality": quality} if quality is not None else {}
    image.save(buffer, format=image_format, **options)
    return bytes_to_data_uri(buffer.getvalue(), _FORMAT_MIME.get(image_format, "application/octet-stream"))


def data_uri_to_bytes(ref: RasterRef) -> bytes:
    """Decode the payload of a base64 data URI."""

    header, sep, encoded = ref.partition(",")
    if not sep or not header.startswith("data:") or ";base64" not in header:
        raise ValueError("Reference is not a base64 data URI.")
    return base64.b64decode(encoded, validate=True)


def decode_image(data: bytes) -> Image.Image:
    """Decode encoded bytes into a fully loaded PIL image."""

    with Image.open(BytesIO(data)) as img:
        img.load()
        return img.copy()


def mime_type_for(data: bytes) -> str:
    """Best-effort MIME type of encoded image bytes."""

    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "application/octet-stream"


@dataclass(slots=True, frozen=True)
class PixelBox:
    """Native-resolution crop box with exclusive right/bottom edges."""

    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.left, self.top, self.right, self.bottom)


def scaled_box(
    x: float,
    y: float,
    width: float,
    height: float,
    scale_x: float,
    scale_y: float,
    bounds: tuple[int, int],
) -> PixelBox:
    """Map a display rectangle (signed size allowed) to a clamped native box."""

    left = min(x, x + width) * scale_x
    top = min(y, y + height) * scale_y
    right = max(x, x + width) * scale_x
    bottom = max(y, y + height) * scale_y
    bound_w, bound_h = bounds
    return PixelBox(
        left=max(0, min(bound_w, round(left))),
        top=max(0, min(bound_h, round(top))),
        right=max(0, min(bound_w, round(right))),
        bottom=max(0, min(bound_h, round(bottom))),
    )


def crop_image(image: Image.Image, box: PixelBox) -> Image.Image:
    """Return a new image containing only ``box``."""

    if box.width <= 0 or box.height <= 0:
        raise InvalidCropError("The crop rectangle lies outside the image.")
    return image.crop(box.as_tuple())


def composite_checkerboard(image: Image.Image, check_size: int = CHECKER_SIZE) -> Image.Image:
    """Composite ``image`` over a neutral checkerboard for display only."""

    rgba = image.convert("RGBA")
    board = Image.new("RGBA", rgba.size, CHECKER_LIGHT)
    draw = ImageDraw.Draw(board)
    for top in range(0, rgba.height, check_size):
        for left in range(0, rgba.width, check_size):
            if (left // check_size) % 2 != (top // check_size) % 2:
                draw.rectangle((left, top, left + check_size - 1, top + check_size - 1), fill=CHECKER_DARK)
    return Image.alpha_composite(board, rgba)


class RasterLoader:
    """Resolves raster references into decoded images."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 60.0) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._cached_ref: RasterRef | None = None
        self._cached_image: Image.Image | None = None

    async def close(self) -> None:
        """Close the underlying HTTP client."""

        await self._client.aclose()

    async def fetch_bytes(self, ref: RasterRef) -> bytes:
        """Return the encoded bytes behind ``ref``."""

        if is_data_uri(ref):
            try:
                return data_uri_to_bytes(ref)
            except (ValueError, binascii.Error) as exc:
                raise ServiceRequestError("Image data is not valid base64.", kind=ServiceFailureKind.MALFORMED) from exc

        try:
            response = await self._client.get(ref)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ServiceRequestError("Timed out while downloading the image.", kind=ServiceFailureKind.TIMEOUT) from exc
        except httpx.HTTPStatusError as exc:
            raise ServiceRequestError(
                f"Image download failed with status {exc.response.status_code}.",
                kind=ServiceFailureKind.DECLINED,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ServiceRequestError(f"Image download failed: {exc}", kind=ServiceFailureKind.NETWORK) from exc
        return response.content

    async def load(self, ref: RasterRef) -> Image.Image:
        """Decode ``ref`` into an image, reusing the last decoded reference."""

        if ref == self._cached_ref and self._cached_image is not None:
            return self._cached_image.copy()

        data = await self.fetch_bytes(ref)
        try:
            image = await asyncio.to_thread(decode_image, data)
        except (UnidentifiedImageError, OSError) as exc:
            raise ServiceRequestError("Referenced file is not a supported image.", kind=ServiceFailureKind.MALFORMED) from exc

        self._cached_ref, self._cached_image = ref, image
        return image.copy()

    async def to_data_uri(self, ref: RasterRef) -> RasterRef:
        """Return ``ref`` as an embeddable data URI, downloading if required."""

        if is_data_uri(ref):
            return ref
        data = await self.fetch_bytes(ref)
        logger.debug("Embedded remote raster %s (%s bytes)", ref, len(data))
        return bytes_to_data_uri(data, mime_type_for(data))
