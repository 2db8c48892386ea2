"""Hand-off of the finished artwork to the garment compositor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

MIN_ZOOM = 25
MAX_ZOOM = 500
DEFAULT_DESIGN_SIZE_PERCENT = 12.5


@dataclass(slots=True, frozen=True)
class PositionPreset:
    """Placement of the artwork on a garment, in percent of the garment image."""

    id: str
    name: str
    x_percent: float
    y_percent: float
    size_percent: float = DEFAULT_DESIGN_SIZE_PERCENT


@dataclass(slots=True, frozen=True)
class CompositionRequest:
    """Everything the compositor needs to render a mock-up."""

    image_ref: str
    position: str
    x_percent: float
    y_percent: float
    size_percent: float
    zoom: int = 100


FALLBACK_PRESETS: dict[str, tuple[PositionPreset, ...]] = {
    "hoodie": (
        PositionPreset("middle-chest", "Middle Chest", 50.0, 45.0),
        PositionPreset("left-chest", "Left Chest", 74.0, 45.0),
    ),
    "trackies": (
        PositionPreset("left-leg", "Left Leg", 39.0, 37.0),
        PositionPreset("right-leg", "Right Leg", 61.0, 37.0),
    ),
}

CENTER_PRESET = PositionPreset("center", "Center", 50.0, 50.0)


def available_positions(
    clothing: str | None,
    custom_presets: Mapping[str, PositionPreset] | None = None,
) -> list[PositionPreset]:
    """Custom presets win; otherwise the built-in ones for the clothing type."""

    if custom_presets:
        return list(custom_presets.values())
    return list(FALLBACK_PRESETS.get(clothing or "", (CENTER_PRESET,)))


def default_position(clothing: str | None, custom_presets: Mapping[str, PositionPreset] | None = None) -> str:
    if custom_presets:
        return next(iter(custom_presets))
    return "middle-chest" if clothing == "hoodie" else "left-leg"


def resolve_preset(
    clothing: str | None,
    position: str | None,
    custom_presets: Mapping[str, PositionPreset] | None = None,
) -> PositionPreset:
    if custom_presets and position in custom_presets:
        return custom_presets[position]
    for preset in available_positions(clothing):
        if preset.id == position:
            return preset
    return CENTER_PRESET


def clamp_zoom(zoom: int | float) -> int:
    return int(max(MIN_ZOOM, min(MAX_ZOOM, round(zoom))))


def build_composition(
    image_ref: str,
    clothing: str | None,
    position: str | None,
    zoom: int | float = 100,
    custom_presets: Mapping[str, PositionPreset] | None = None,
) -> CompositionRequest:
    """Build the compositor request from the final image and the chosen placement."""

    chosen = position or default_position(clothing, custom_presets)
    preset = resolve_preset(clothing, chosen, custom_presets)
    return CompositionRequest(
        image_ref=image_ref,
        position=chosen,
        x_percent=preset.x_percent,
        y_percent=preset.y_percent,
        size_percent=preset.size_percent,
        zoom=clamp_zoom(zoom),
    )
