"""Mask authoring at display resolution and commit at native resolution."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from PIL import Image, ImageDraw

from pixelme.imgproc.raster import RasterRef, image_to_data_uri, scaled_box

KEPT = 0
SELECTED = 255
COVERAGE_THRESHOLD = 128
MIN_SELECTION_SIZE = 10


class InvalidMaskError(ValueError):
    """Raised when a selection is empty or too small to submit."""


class SelectionMode(str, Enum):
    """Authoring modes supported by the surface."""

    BRUSH = "brush"
    RECTANGLE = "rectangle"


@dataclass(slots=True, frozen=True)
class DisplayTransform:
    """Scale factors from display coordinates to native pixel coordinates."""

    scale_x: float
    scale_y: float

    @classmethod
    def between(cls, display_size: tuple[int, int], native_size: tuple[int, int]) -> "DisplayTransform":
        display_w, display_h = display_size
        native_w, native_h = native_size
        if display_w <= 0 or display_h <= 0:
            raise ValueError("Display size must be positive.")
        return cls(scale_x=native_w / display_w, scale_y=native_h / display_h)

    def to_native(self, x: float, y: float) -> tuple[float, float]:
        return x * self.scale_x, y * self.scale_y


@dataclass(slots=True, frozen=True)
class BrushDab:
    """A filled circle painted at display coordinates."""

    x: float
    y: float
    radius: float


@dataclass(slots=True, frozen=True)
class CropRect:
    """A dragged rectangle; width/height are negative when dragged up/left."""

    x: float
    y: float
    width: float
    height: float

    def normalized(self) -> "CropRect":
        return CropRect(
            x=min(self.x, self.x + self.width),
            y=min(self.y, self.y + self.height),
            width=abs(self.width),
            height=abs(self.height),
        )

    def is_usable(self, minimum: float = MIN_SELECTION_SIZE) -> bool:
        return abs(self.width) >= minimum and abs(self.height) >= minimum


@dataclass(slots=True, frozen=True)
class CommittedMask:
    """Binary native-resolution mask: white is selected, black is kept."""

    image: Image.Image

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size

    @property
    def selected_pixels(self) -> int:
        return self.image.histogram()[SELECTED]

    def to_data_uri(self) -> RasterRef:
        return image_to_data_uri(self.image, "PNG")


class MaskSurface:
    """
    Interactive selection layer bound to a displayed raster.

    Brush dabs accumulate in an 8-bit coverage buffer the size of the display.
    A rectangle drag keeps only its latest state. ``commit`` rasterizes the
    active mode into a :class:`CommittedMask` at native resolution.
    """

    def __init__(self, display_width: int, display_height: int, brush_size: int = 20) -> None:
        self.mode = SelectionMode.BRUSH
        self.brush_size = brush_size
        self.rebind(display_width, display_height)

    def rebind(self, display_width: int, display_height: int) -> None:
        """Attach the surface to a raster displayed at a new size."""

        if display_width <= 0 or display_height <= 0:
            raise ValueError("Display size must be positive.")
        self.display_size = (display_width, display_height)
        self.clear()

    def clear(self) -> None:
        """Discard all strokes and the rectangle."""

        self._coverage = Image.new("L", self.display_size, KEPT)
        self._draw = ImageDraw.Draw(self._coverage)
        self._dabs: list[BrushDab] = []
        self._rect_origin: tuple[float, float] | None = None
        self.rectangle: CropRect | None = None

    def set_mode(self, mode: SelectionMode) -> None:
        self.mode = SelectionMode(mode)

    @property
    def has_selection(self) -> bool:
        if self.mode is SelectionMode.RECTANGLE:
            return self.rectangle is not None and (self.rectangle.width != 0 or self.rectangle.height != 0)
        return bool(self._dabs)

    @property
    def rectangle_is_usable(self) -> bool:
        return self.rectangle is not None and self.rectangle.is_usable()

    @property
    def dabs(self) -> tuple[BrushDab, ...]:
        return tuple(self._dabs)

    def add_dab(self, x: float, y: float) -> BrushDab:
        """Paint one filled circle of the configured brush size."""

        dab = BrushDab(x=x, y=y, radius=self.brush_size / 2)
        self._draw.ellipse(
            (x - dab.radius, y - dab.radius, x + dab.radius, y + dab.radius),
            fill=SELECTED,
        )
        self._dabs.append(dab)
        return dab

    def add_stroke(self, points: Iterable[tuple[float, float]]) -> None:
        for x, y in points:
            self.add_dab(x, y)

    def begin_rectangle(self, x: float, y: float) -> None:
        """Start a new rectangle drag, replacing any previous rectangle."""

        x, y = self._clamp(x, y)
        self._rect_origin = (x, y)
        self.rectangle = CropRect(x=x, y=y, width=0, height=0)

    def update_rectangle(self, x: float, y: float) -> CropRect:
        if self._rect_origin is None:
            raise InvalidMaskError("No rectangle drag is in progress.")
        x, y = self._clamp(x, y)
        origin_x, origin_y = self._rect_origin
        self.rectangle = CropRect(x=origin_x, y=origin_y, width=x - origin_x, height=y - origin_y)
        return self.rectangle

    def end_rectangle(self) -> CropRect | None:
        self._rect_origin = None
        return self.rectangle

    def set_rectangle(self, rect: CropRect) -> None:
        """Install a rectangle directly, e.g. one received from a client."""

        self._rect_origin = None
        self.rectangle = rect

    def coverage(self) -> Image.Image:
        """Copy of the display-resolution coverage buffer."""

        return self._coverage.copy()

    def commit(self, transform: DisplayTransform, native_size: tuple[int, int]) -> CommittedMask:
        """Rasterize the current selection at native resolution."""

        if self.mode is SelectionMode.RECTANGLE:
            mask = self._commit_rectangle(transform, native_size)
        else:
            mask = self._commit_brush(transform, native_size)
        if mask.selected_pixels == 0:
            raise InvalidMaskError("The selection is empty.")
        return mask

    def _commit_brush(self, transform: DisplayTransform, native_size: tuple[int, int]) -> CommittedMask:
        binary = self._coverage.point(lambda value: SELECTED if value > COVERAGE_THRESHOLD else KEPT)
        # Each native pixel samples the display pixel it maps back onto.
        native = binary.transform(
            native_size,
            Image.Transform.AFFINE,
            (1 / transform.scale_x, 0, 0, 0, 1 / transform.scale_y, 0),
            resample=Image.Resampling.NEAREST,
            fillcolor=KEPT,
        )
        return CommittedMask(image=native)

    def _commit_rectangle(self, transform: DisplayTransform, native_size: tuple[int, int]) -> CommittedMask:
        rect = self.rectangle
        if rect is None or not rect.is_usable():
            raise InvalidMaskError(
                f"Select an area of at least {MIN_SELECTION_SIZE}x{MIN_SELECTION_SIZE} pixels.",
            )
        box = scaled_box(rect.x, rect.y, rect.width, rect.height, transform.scale_x, transform.scale_y, native_size)
        native = Image.new("L", native_size, KEPT)
        if box.width > 0 and box.height > 0:
            ImageDraw.Draw(native).rectangle((box.left, box.top, box.right - 1, box.bottom - 1), fill=SELECTED)
        return CommittedMask(image=native)

    def _clamp(self, x: float, y: float) -> tuple[float, float]:
        width, height = self.display_size
        return max(0.0, min(float(width), x)), max(0.0, min(float(height), y))
