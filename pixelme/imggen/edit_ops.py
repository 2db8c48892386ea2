"""Dispatches destructive edits to local pixel code or the image service."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable

from PIL import Image

from pixelme.api.replicate_client import ReplicateClient
from pixelme.errors import ServiceFailureKind, ServiceRequestError
from pixelme.imggen.prompt_builder import PALETTE_REDUCTION_OPTIONS, PALETTE_REDUCTION_PROMPT, PromptBuilder
from pixelme.imgproc.mask import CommittedMask, CropRect, MaskSurface, MIN_SELECTION_SIZE
from pixelme.imgproc.raster import (
    InvalidCropError,
    RasterLoader,
    RasterRef,
    crop_image,
    image_to_data_uri,
    scaled_box,
)
from pixelme.metrics.prometheus_exporter import edit_operations_total
from pixelme.pipeline.undo import RasterHistory

logger = logging.getLogger(__name__)

SUBMIT_JPEG_QUALITY = 95


class EditOperation(str, Enum):
    """Capabilities the dispatcher can invoke."""

    REMOVE_BACKGROUND = "remove-background"
    FILL = "fill"
    REMOVE_OBJECTS = "remove-objects"
    CROP = "crop"
    REDUCE_PALETTE = "reduce-palette"


class EditOperationError(RuntimeError):
    """Base class for edit failures; the working raster is left untouched."""


class InvalidEditInputError(EditOperationError):
    """Raised before any external call when the request cannot be satisfied."""


class EditInProgressError(EditOperationError):
    """Raised when a second edit is requested while one is still running."""


class EditServiceError(EditOperationError):
    """Raised when the image service fails; ``kind`` tells callers whether to retry."""

    def __init__(self, message: str, kind: ServiceFailureKind) -> None:
        self.kind = kind
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class EditOperationDispatcher:
    """
    Applies one destructive edit at a time to a session's working raster.

    Every operation reads ``history.current``. On success the result replaces it,
    the previous raster moves into the undo slot and the bound mask surface is
    cleared. On failure none of that happens.
    """

    def __init__(
        self,
        client: ReplicateClient,
        loader: RasterLoader,
        history: RasterHistory,
        surface: MaskSurface | None = None,
    ) -> None:
        self._client = client
        self._loader = loader
        self._prompt_builder = PromptBuilder()
        self.history = history
        self.surface = surface
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def current_image(self) -> RasterRef:
        return self.history.current

    def undo(self) -> RasterRef:
        """Restore the raster before the last successful edit."""

        if self._busy:
            raise EditInProgressError("Wait for the current edit to finish before undoing.")
        self.history = self.history.undo()
        return self.history.current

    async def remove_background(self) -> RasterRef:
        async def _run() -> RasterRef:
            return await self._client.remove_background(await self._prepare_raster())

        return await self._dispatch(EditOperation.REMOVE_BACKGROUND, _run)

    async def fill(self, mask: CommittedMask, instruction: str | None = None) -> RasterRef:
        """Replace the masked region following ``instruction`` (or the default one)."""

        prompt = self._prompt_builder.fill_instruction(instruction)

        async def _run() -> RasterRef:
            image = await self._load_current()
            self._check_mask(mask, image)
            return await self._client.fill(self._encode(image), mask.to_data_uri(), prompt)

        return await self._dispatch(EditOperation.FILL, _run)

    async def remove_objects(self, mask: CommittedMask) -> RasterRef:
        async def _run() -> RasterRef:
            image = await self._load_current()
            self._check_mask(mask, image)
            return await self._client.remove_objects(self._encode(image), mask.to_data_uri())

        return await self._dispatch(EditOperation.REMOVE_OBJECTS, _run)

    async def crop(self, rect: CropRect, scale_x: float, scale_y: float) -> RasterRef:
        """Crop locally to ``rect`` given in display coordinates."""

        if not rect.is_usable():
            raise InvalidEditInputError(
                f"Select an area of at least {MIN_SELECTION_SIZE}x{MIN_SELECTION_SIZE} pixels to crop.",
            )

        async def _run() -> RasterRef:
            image = await self._load_current()
            box = scaled_box(rect.x, rect.y, rect.width, rect.height, scale_x, scale_y, image.size)
            try:
                cropped = crop_image(image, box)
            except InvalidCropError as exc:
                raise InvalidEditInputError(str(exc)) from exc
            logger.info("Cropped raster %sx%s to %sx%s", image.width, image.height, cropped.width, cropped.height)
            return image_to_data_uri(cropped, "PNG")

        return await self._dispatch(EditOperation.CROP, _run)

    async def reduce_palette(self) -> RasterRef:
        async def _run() -> RasterRef:
            return await self._client.restyle(
                await self._prepare_raster(),
                PALETTE_REDUCTION_PROMPT,
                **PALETTE_REDUCTION_OPTIONS,
            )

        return await self._dispatch(EditOperation.REDUCE_PALETTE, _run)

    async def _dispatch(self, operation: EditOperation, run: Callable[[], Awaitable[RasterRef]]) -> RasterRef:
        if self._busy:
            raise EditInProgressError("Another edit is still being processed.")
        self._busy = True
        try:
            result = await run()
        except InvalidEditInputError:
            edit_operations_total.labels(operation=operation.value, outcome="rejected").inc()
            raise
        except ServiceRequestError as exc:
            edit_operations_total.labels(operation=operation.value, outcome=exc.kind.value).inc()
            logger.error("Edit %s failed (%s): %s", operation.value, exc.kind.value, exc)
            raise EditServiceError(self._friendly_message(operation, exc.kind), exc.kind) from exc
        finally:
            self._busy = False

        self.history = self.history.replace(result)
        if self.surface is not None:
            self.surface.clear()
        edit_operations_total.labels(operation=operation.value, outcome="success").inc()
        logger.info("Edit %s applied", operation.value)
        return result

    async def _load_current(self) -> Image.Image:
        return await self._loader.load(self.history.current)

    async def _prepare_raster(self) -> RasterRef:
        return self._encode(await self._load_current())

    @staticmethod
    def _encode(image: Image.Image) -> RasterRef:
        return image_to_data_uri(image, "JPEG", quality=SUBMIT_JPEG_QUALITY)

    @staticmethod
    def _check_mask(mask: CommittedMask, image: Image.Image) -> None:
        if mask.size != image.size:
            raise InvalidEditInputError(
                f"Mask size {mask.size[0]}x{mask.size[1]} does not match image size {image.width}x{image.height}.",
            )
        if mask.selected_pixels == 0:
            raise InvalidEditInputError("Paint over the area you want to change first.")

    @staticmethod
    def _friendly_message(operation: EditOperation, kind: ServiceFailureKind) -> str:
        if kind is ServiceFailureKind.TIMEOUT:
            return f"The {operation.value} request timed out. Please try again."
        if kind is ServiceFailureKind.NETWORK:
            return f"Could not reach the image service for {operation.value}. Check your connection and retry."
        if kind is ServiceFailureKind.MALFORMED:
            return f"The image service returned an unusable result for {operation.value}."
        return f"The image service could not complete {operation.value}."
