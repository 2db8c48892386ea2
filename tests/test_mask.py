"""Tests for mask authoring and native-resolution commit."""

from __future__ import annotations

import pytest

from pixelme.imgproc.mask import (
    SELECTED,
    CropRect,
    DisplayTransform,
    InvalidMaskError,
    MaskSurface,
    SelectionMode,
)


def _selected(surface: MaskSurface) -> int:
    return surface.coverage().histogram()[SELECTED]


def test_brush_coverage_never_shrinks() -> None:
    surface = MaskSurface(100, 100, brush_size=20)
    previous = surface.coverage()
    counts = []

    for point in [(20, 20), (25, 22), (80, 80), (20, 20), (50, 10)]:
        surface.add_dab(*point)
        current = surface.coverage()
        # Every pixel selected before is still selected.
        assert all(after >= before for before, after in zip(previous.getdata(), current.getdata()))
        counts.append(_selected(surface))
        previous = current

    assert counts == sorted(counts)
    assert counts[0] > 0


def test_dab_radius_is_half_the_brush_size() -> None:
    surface = MaskSurface(100, 100, brush_size=20)

    dab = surface.add_dab(50, 50)

    assert dab.radius == 10
    coverage = surface.coverage()
    assert coverage.getpixel((50, 50)) == SELECTED
    assert coverage.getpixel((50, 45)) == SELECTED
    assert coverage.getpixel((50, 65)) == 0


def test_brush_commit_scales_to_native_resolution() -> None:
    surface = MaskSurface(50, 50, brush_size=20)
    surface.add_dab(25, 25)

    mask = surface.commit(DisplayTransform.between((50, 50), (100, 100)), (100, 100))

    assert mask.size == (100, 100)
    assert mask.image.getpixel((50, 50)) == SELECTED
    assert mask.image.getpixel((0, 0)) == 0
    assert set(mask.image.getdata()) <= {0, SELECTED}


def test_rectangle_commit_fills_scaled_area() -> None:
    surface = MaskSurface(100, 100)
    surface.set_mode(SelectionMode.RECTANGLE)
    surface.begin_rectangle(0, 0)
    surface.update_rectangle(100, 100)
    surface.end_rectangle()

    mask = surface.commit(DisplayTransform(scale_x=2, scale_y=2), (200, 200))

    assert mask.size == (200, 200)
    assert mask.selected_pixels == 200 * 200


def test_rectangle_dragged_up_and_left_is_normalized() -> None:
    surface = MaskSurface(100, 100)
    surface.set_mode(SelectionMode.RECTANGLE)
    surface.begin_rectangle(60, 60)
    rect = surface.update_rectangle(10, 10)

    assert (rect.width, rect.height) == (-50, -50)
    assert rect.normalized() == CropRect(10, 10, 50, 50)

    mask = surface.commit(DisplayTransform(1, 1), (100, 100))

    assert mask.selected_pixels == 50 * 50
    assert mask.image.getpixel((10, 10)) == SELECTED
    assert mask.image.getpixel((60, 60)) == 0


@pytest.mark.parametrize(("width", "height"), [(9, 50), (50, 9), (0, 0), (-9, 40)])
def test_small_rectangles_are_rejected(width: float, height: float) -> None:
    surface = MaskSurface(100, 100)
    surface.set_mode(SelectionMode.RECTANGLE)
    surface.set_rectangle(CropRect(20, 20, width, height))

    assert not surface.rectangle_is_usable
    with pytest.raises(InvalidMaskError):
        surface.commit(DisplayTransform(1, 1), (100, 100))


def test_rectangle_of_minimum_size_is_usable() -> None:
    surface = MaskSurface(100, 100)
    surface.set_mode(SelectionMode.RECTANGLE)
    surface.set_rectangle(CropRect(20, 20, 10, -10))

    assert surface.rectangle_is_usable


def test_rectangle_pointer_is_clamped_to_display() -> None:
    surface = MaskSurface(100, 100)
    surface.set_mode(SelectionMode.RECTANGLE)
    surface.begin_rectangle(90, 90)

    rect = surface.update_rectangle(150, 170)

    assert (rect.width, rect.height) == (10, 10)


def test_new_drag_discards_previous_rectangle() -> None:
    surface = MaskSurface(100, 100)
    surface.set_mode(SelectionMode.RECTANGLE)
    surface.begin_rectangle(0, 0)
    surface.update_rectangle(50, 50)
    surface.begin_rectangle(70, 70)

    assert surface.rectangle == CropRect(70, 70, 0, 0)


def test_update_without_drag_is_rejected() -> None:
    surface = MaskSurface(100, 100)

    with pytest.raises(InvalidMaskError):
        surface.update_rectangle(10, 10)


def test_clear_resets_selection() -> None:
    surface = MaskSurface(100, 100)
    surface.add_stroke([(10, 10), (12, 12)])
    assert surface.has_selection

    surface.clear()

    assert not surface.has_selection
    assert _selected(surface) == 0
    with pytest.raises(InvalidMaskError):
        surface.commit(DisplayTransform(1, 1), (100, 100))


def test_rebind_targets_new_display_size() -> None:
    surface = MaskSurface(100, 100)
    surface.add_dab(10, 10)

    surface.rebind(200, 50)

    assert surface.display_size == (200, 50)
    assert surface.coverage().size == (200, 50)
    assert not surface.has_selection


def test_display_transform_between_sizes() -> None:
    transform = DisplayTransform.between((400, 300), (800, 1200))

    assert (transform.scale_x, transform.scale_y) == (2, 4)
    assert transform.to_native(10, 10) == (20, 40)


def test_mask_data_uri_is_png() -> None:
    surface = MaskSurface(20, 20)
    surface.add_dab(10, 10)

    mask = surface.commit(DisplayTransform(1, 1), (20, 20))

    assert mask.to_data_uri().startswith("data:image/png;base64,")
