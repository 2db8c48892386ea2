"""Tests for upright re-rendering and upload normalisation."""

from __future__ import annotations

import pytest
import pytest_mock
from PIL import Image

from conftest import jpeg_with_orientation, png_bytes, size_of
from pixelme.imgproc.normalize import (
    ImageNormalizer,
    UploadDecodeError,
    apply_orientation,
    fit_within,
    invert_orientation,
    swaps_dimensions,
)
from pixelme.imgproc.raster import bytes_to_data_uri


def _gradient(size: tuple[int, int] = (3, 2)) -> Image.Image:
    image = Image.new("L", size)
    image.putdata(list(range(size[0] * size[1])))
    return image


@pytest.mark.parametrize("orientation", range(1, 9))
def test_orientation_round_trip_is_exact(orientation: int) -> None:
    source = _gradient()

    restored = invert_orientation(apply_orientation(source, orientation), orientation)

    assert restored.size == source.size
    assert restored.tobytes() == source.tobytes()


@pytest.mark.parametrize("orientation", range(1, 9))
def test_quarter_turn_codes_swap_dimensions(orientation: int) -> None:
    upright = apply_orientation(_gradient((3, 2)), orientation)

    expected = (2, 3) if swaps_dimensions(orientation) else (3, 2)
    assert upright.size == expected


def test_code_six_rotates_clockwise() -> None:
    source = _gradient((3, 2))

    upright = apply_orientation(source, 6)

    # The stored top-left pixel ends up top-right after a clockwise quarter turn.
    assert upright.getpixel((1, 0)) == source.getpixel((0, 0))


def test_code_two_mirrors_horizontally() -> None:
    source = _gradient((3, 2))

    upright = apply_orientation(source, 2)

    assert upright.getpixel((2, 0)) == source.getpixel((0, 0))


def test_unknown_code_behaves_as_identity() -> None:
    source = _gradient()

    assert apply_orientation(source, 42).tobytes() == source.tobytes()


def test_transform_failure_returns_unrotated_source(mocker: pytest_mock.MockerFixture) -> None:
    source = _gradient((3, 2))
    mocker.patch.object(Image.Image, "transpose", side_effect=MemoryError("no room"))

    result = apply_orientation(source, 6)

    assert result.size == (3, 2)
    assert result.tobytes() == source.tobytes()


def test_fit_within_keeps_aspect_ratio() -> None:
    resized = fit_within(Image.new("RGB", (400, 200)), 100)

    assert resized.size == (100, 50)


def test_small_upright_upload_keeps_original_bytes() -> None:
    data = png_bytes((64, 48))

    result = ImageNormalizer().normalize(data)

    assert result.ref == bytes_to_data_uri(data, "image/png")
    assert (result.width, result.height) == (64, 48)
    assert result.orientation == 1


def test_rotated_upload_is_rendered_upright() -> None:
    result = ImageNormalizer().normalize(jpeg_with_orientation(6, size=(120, 80)))

    assert result.ref.startswith("data:image/jpeg;base64,")
    assert (result.width, result.height) == (80, 120)
    assert size_of(result.ref) == (80, 120)
    assert result.orientation == 6


def test_large_upload_is_downscaled() -> None:
    normalizer = ImageNormalizer(max_dimension=60, compression_threshold=10)

    result = normalizer.normalize(png_bytes((240, 120)))

    assert (result.width, result.height) == (60, 30)
    assert result.ref.startswith("data:image/jpeg;base64,")


def test_undecodable_upload_is_rejected() -> None:
    with pytest.raises(UploadDecodeError):
        ImageNormalizer().normalize(b"definitely not an image")


@pytest.mark.parametrize("direction", ["right", "left"])
def test_manual_rotation_swaps_dimensions(direction: str) -> None:
    source = Image.new("RGB", (3, 2), "black")

    rotated = ImageNormalizer().rotate(source, direction)

    assert (rotated.width, rotated.height) == (2, 3)
    assert size_of(rotated.ref) == (2, 3)
