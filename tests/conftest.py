"""Shared fixtures: an in-process stand-in for the image service and image helpers."""

from __future__ import annotations

import asyncio
import struct
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from pixelme.config.settings import Settings
from pixelme.errors import ServiceRequestError
from pixelme.imgproc.raster import data_uri_to_bytes, decode_image, image_to_data_uri


def jpeg_with_orientation(orientation: int, size: tuple[int, int] = (120, 80), byte_order: str = ">") -> bytes:
    """Encode a real JPEG and splice a hand-built APP1/Exif segment after SOI."""

    buffer = BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buffer, format="JPEG")
    body = buffer.getvalue()
    return body[:2] + exif_segment(orientation, byte_order) + body[2:]


def exif_segment(orientation: int, byte_order: str = ">") -> bytes:
    mark = b"MM" if byte_order == ">" else b"II"
    tiff_header = mark + struct.pack(f"{byte_order}HI", 42, 8)
    entry = struct.pack(f"{byte_order}HHIH", 0x0112, 3, 1, orientation) + b"\x00\x00"
    ifd = struct.pack(f"{byte_order}H", 1) + entry + struct.pack(f"{byte_order}I", 0)
    payload = b"Exif\x00\x00" + tiff_header + ifd
    return b"\xff\xe1" + struct.pack(">H", len(payload) + 2) + payload


def png_bytes(size: tuple[int, int] = (64, 48), color: str = "white") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def solid_uri(size: tuple[int, int], color: str | tuple[int, ...] = "white", mode: str = "RGB") -> str:
    return image_to_data_uri(Image.new(mode, size, color), "PNG")


def size_of(uri: str) -> tuple[int, int]:
    return decode_image(data_uri_to_bytes(uri)).size


class FakeImageClient:
    """Records calls and returns solid images of the input size.

    ``gates`` holds a call open until its event is set, ``urls`` makes a method
    answer with a remote reference instead of a data URI.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, ServiceRequestError] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.urls: dict[str, str] = {}
        self.closed = False

    async def _enter(self, name: str, **details) -> None:
        self.calls.append((name, details))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _answer(self, name: str, image_uri: str, color: str | tuple[int, ...], mode: str = "RGB") -> str:
        return self.urls.get(name) or solid_uri(size_of(image_uri), color, mode=mode)

    async def remove_background(self, image_uri: str) -> str:
        await self._enter("remove_background", image=image_uri)
        return self._answer("remove_background", image_uri, (0, 0, 0, 0), mode="RGBA")

    async def fill(self, image_uri: str, mask_uri: str, prompt: str) -> str:
        await self._enter("fill", image=image_uri, mask=mask_uri, prompt=prompt)
        return self._answer("fill", image_uri, "green")

    async def remove_objects(self, image_uri: str, mask_uri: str) -> str:
        await self._enter("remove_objects", image=image_uri, mask=mask_uri)
        return self._answer("remove_objects", image_uri, "gray")

    async def restyle(self, image_uri: str, prompt: str, **options) -> str:
        await self._enter("restyle", image=image_uri, prompt=prompt, options=options)
        return self._answer("restyle", image_uri, "blue")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client() -> FakeImageClient:
    return FakeImageClient()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        replicate_api_token="test-token",
        replicate_base_url="https://replicate.test/v1",
        storage_root=str(tmp_path / "sessions"),
        poll_interval=0.0,
        max_poll_attempts=3,
    )
