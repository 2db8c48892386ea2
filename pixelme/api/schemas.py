"""Request and response bodies of the HTTP surface."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from pixelme.imgproc.mask import SelectionMode
from pixelme.pipeline.state_machine import PipelineStage


class UploadRequest(BaseModel):
    image_data: str = Field(description="Base64 data URI of the raw photo.")
    clothing: str | None = None


class UploadResponse(BaseModel):
    image: str
    width: int
    height: int
    orientation: int = 1


class RotateRequest(BaseModel):
    direction: Literal["left", "right"]


class StyleRequest(BaseModel):
    style: str = Field(min_length=1)


class StageRequest(BaseModel):
    stage: PipelineStage


class StageResponse(BaseModel):
    stage: PipelineStage


class SessionResponse(BaseModel):
    stage: PipelineStage
    artifacts: dict[str, str]


class ConversionResponse(BaseModel):
    image: str


class HistoryEntry(BaseModel):
    id: str
    image_url: str
    timestamp: float
    style: str


class HistorySelectRequest(BaseModel):
    entry_id: str


class EditorOpenRequest(BaseModel):
    display_width: int = Field(gt=0)
    display_height: int = Field(gt=0)


class EditorStateResponse(BaseModel):
    image: str
    can_undo: bool
    busy: bool
    mode: SelectionMode
    has_selection: bool
    rectangle_is_usable: bool


class SelectionModeRequest(BaseModel):
    mode: SelectionMode


class StrokeRequest(BaseModel):
    points: list[tuple[float, float]] = Field(min_length=1)


class RectangleRequest(BaseModel):
    x: float
    y: float
    width: float
    height: float


class FillRequest(BaseModel):
    instruction: str | None = None


class EditResponse(BaseModel):
    image: str
    can_undo: bool
    width: int | None = None
    height: int | None = None


class PreviewResponse(BaseModel):
    image: str


class PositionRequest(BaseModel):
    position: str = Field(min_length=1)


class ZoomRequest(BaseModel):
    zoom: float


class ZoomResponse(BaseModel):
    zoom: int


class CartRequest(BaseModel):
    cart_id: str = Field(min_length=1)


class CompositionResponse(BaseModel):
    image_ref: str
    position: str
    x_percent: float
    y_percent: float
    size_percent: float
    zoom: int


class RateLimitResponse(BaseModel):
    remaining_generations: int
    time_until_reset: float
    max_generations: int


class ClearResponse(BaseModel):
    cart_preserved: bool


class ErrorResponse(BaseModel):
    detail: str
    kind: str | None = None
    retryable: bool = False
