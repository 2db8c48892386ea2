"""High-level orchestration of the upload, conversion and editing pipeline."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Literal, Mapping

from pixelme.api.replicate_client import ReplicateClient
from pixelme.config.settings import Settings
from pixelme.errors import ServiceFailureKind, ServiceRequestError
from pixelme.imggen.edit_ops import (
    EditInProgressError,
    EditOperation,
    EditOperationDispatcher,
    InvalidEditInputError,
)
from pixelme.imggen.prompt_builder import PromptBuilder, StylePromptContext
from pixelme.imgproc.mask import (
    MIN_SELECTION_SIZE,
    CommittedMask,
    CropRect,
    DisplayTransform,
    MaskSurface,
    SelectionMode,
)
from pixelme.imgproc.normalize import ImageNormalizer, NormalizedUpload
from pixelme.imgproc.raster import RasterLoader, RasterRef
from pixelme.integrations.cart import CartClient
from pixelme.metrics.prometheus_exporter import active_editor_sessions, style_conversions_total
from pixelme.pipeline.composition import (
    CompositionRequest,
    PositionPreset,
    build_composition,
    clamp_zoom,
    default_position,
)
from pixelme.pipeline.history import GenerationEntry, GenerationHistory
from pixelme.pipeline.state_machine import PipelineStage, PipelineStateMachine
from pixelme.pipeline.undo import RasterHistory
from pixelme.ratelimit.gate import RateLimitGate, RateLimitStatus
from pixelme.storage.repository import ArtifactKey, SessionStore

logger = logging.getLogger(__name__)


class ConversionError(RuntimeError):
    """Raised when the style conversion cannot be produced."""

    def __init__(self, message: str, kind: ServiceFailureKind | None = None) -> None:
        self.kind = kind
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind is not None and self.kind.retryable


class EditorNotOpenError(RuntimeError):
    """Raised when an edit is requested before the editor is opened."""


class EditorClosedError(RuntimeError):
    """Raised when the editor was closed while its edit was still running."""


@dataclass(slots=True)
class EditorSession:
    """In-memory editing state of one session: selection surface plus dispatcher."""

    surface: MaskSurface
    dispatcher: EditOperationDispatcher
    last_operation: EditOperation | None = None

    @property
    def current(self) -> RasterRef:
        return self.dispatcher.current_image()

    @property
    def can_undo(self) -> bool:
        return self.dispatcher.history.can_undo


@dataclass(slots=True, frozen=True)
class EditResult:
    """Outcome of an edit as reported to callers."""

    image: RasterRef
    can_undo: bool
    width: int | None
    height: int | None


class PixelMeLogic:
    """Encapsulates uploading, style conversion, destructive edits and hand-off."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        client: ReplicateClient,
        *,
        loader: RasterLoader | None = None,
        gate: RateLimitGate | None = None,
        cart: CartClient | None = None,
        normalizer: ImageNormalizer | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._client = client
        self._loader = loader or RasterLoader(timeout=settings.request_timeout)
        self._gate = gate
        self._cart = cart
        self._normalizer = normalizer or ImageNormalizer(
            max_dimension=settings.max_upload_dimension,
            compression_threshold=settings.compression_threshold_bytes,
        )
        self._prompt_builder = PromptBuilder()
        self.state = PipelineStateMachine(store)
        self._editors: dict[str, EditorSession] = {}

    async def close(self) -> None:
        await self._client.close()
        await self._loader.close()
        if self._cart is not None:
            await self._cart.close()

    # Upload and style ---------------------------------------------------

    async def upload(self, session_id: str, data: bytes, clothing: str | None = None) -> NormalizedUpload:
        """Normalize raw upload bytes and make them the session's source image."""

        normalized = await asyncio.to_thread(self._normalizer.normalize, data)
        values = {ArtifactKey.UPLOADED_IMAGE: normalized.ref}
        if clothing:
            values[ArtifactKey.SELECTED_CLOTHING] = clothing
        self._close_editor(session_id)
        await self._store.update(session_id, values)
        await self.state.go_to(session_id, PipelineStage.STYLE)
        logger.info("Session %s uploaded %sx%s image", session_id, normalized.width, normalized.height)
        return normalized

    async def rotate(self, session_id: str, direction: Literal["left", "right"]) -> NormalizedUpload:
        """Turn the uploaded image a quarter turn."""

        ref = await self._require(session_id, ArtifactKey.UPLOADED_IMAGE, "Upload a photo first.")
        image = await self._loader.load(ref)
        rotated = await asyncio.to_thread(self._normalizer.rotate, image, direction)
        await self._store.set(session_id, ArtifactKey.UPLOADED_IMAGE, rotated.ref)
        return rotated

    async def select_style(self, session_id: str, style: str) -> PipelineStage:
        if not style.strip():
            raise InvalidEditInputError("Choose a style.")
        await self._store.set(session_id, ArtifactKey.SELECTED_STYLE, style.strip())
        return await self.state.go_to(session_id, PipelineStage.CONVERT)

    async def convert(self, session_id: str, client_key: str) -> RasterRef:
        """Restyle the uploaded photo, charging one conversion to ``client_key``."""

        await self.state.go_to(session_id, PipelineStage.CONVERT)
        artifacts = await self._store.load(session_id)
        uploaded = artifacts[ArtifactKey.UPLOADED_IMAGE.value]
        style = artifacts[ArtifactKey.SELECTED_STYLE.value]
        if self._gate is not None:
            self._gate.consume(client_key)

        prompt = self._prompt_builder.build_style(
            StylePromptContext(style=style, clothing=artifacts.get(ArtifactKey.SELECTED_CLOTHING.value)),
        )
        try:
            result = await self._client.restyle(uploaded, prompt)
        except ServiceRequestError as exc:
            style_conversions_total.labels(outcome=exc.kind.value).inc()
            logger.error("Style conversion failed for session %s: %s", session_id, exc)
            raise ConversionError(
                "Could not convert the photo. Please try again in a moment."
                if exc.kind.retryable
                else "The image service could not convert this photo. Try another photo or style.",
                kind=exc.kind,
            ) from exc

        style_conversions_total.labels(outcome="success").inc()
        await self._install_conversion(session_id, result)
        history = await self._history(session_id)
        if history.add(result, style) is not None:
            await self._store.set(session_id, ArtifactKey.GENERATION_HISTORY, history.to_json())
        return result

    async def generation_history(self, session_id: str) -> list[GenerationEntry]:
        current = await self._store.get(session_id, ArtifactKey.CONVERSION_RESULT)
        return (await self._history(session_id)).alternatives(current)

    async def select_history_image(self, session_id: str, entry_id: str) -> RasterRef:
        """Use an earlier conversion; treated like a fresh conversion."""

        entry = (await self._history(session_id)).find(entry_id)
        if entry is None:
            raise InvalidEditInputError("That earlier result is no longer available.")
        await self._install_conversion(session_id, entry.image_url)
        return entry.image_url

    async def _install_conversion(self, session_id: str, ref: RasterRef) -> None:
        self._close_editor(session_id)
        await self.state.record_conversion(session_id, ref)
        await self.state.go_to(session_id, PipelineStage.BEFORE)

    async def _history(self, session_id: str) -> GenerationHistory:
        raw = await self._store.get(session_id, ArtifactKey.GENERATION_HISTORY)
        return GenerationHistory.from_json(raw)

    # Editing ------------------------------------------------------------

    async def open_editor(self, session_id: str, display_width: int, display_height: int) -> EditorSession:
        """Bind a selection surface to the working raster shown at the given size."""

        await self.state.go_to(session_id, PipelineStage.EDIT)
        editor = self._editors.get(session_id)
        if editor is not None:
            editor.surface.rebind(display_width, display_height)
            return editor

        working = await self._working_raster(session_id)
        return self._start_editor(session_id, working, display_width, display_height)

    async def _working_raster(self, session_id: str) -> RasterRef:
        artifacts = await self._store.load(session_id)
        return artifacts.get(ArtifactKey.EDITED_IMAGE.value) or artifacts[ArtifactKey.CONVERSION_RESULT.value]

    def _start_editor(self, session_id: str, working: RasterRef, display_width: int, display_height: int) -> EditorSession:
        surface = MaskSurface(display_width, display_height, brush_size=self._settings.brush_size)
        dispatcher = EditOperationDispatcher(self._client, self._loader, RasterHistory(current=working), surface)
        editor = EditorSession(surface=surface, dispatcher=dispatcher)
        self._editors[session_id] = editor
        active_editor_sessions.inc()
        return editor

    def editor(self, session_id: str) -> EditorSession:
        editor = self._editors.get(session_id)
        if editor is None:
            raise EditorNotOpenError("Open the editor first.")
        return editor

    def set_selection_mode(self, session_id: str, mode: SelectionMode) -> None:
        self.editor(session_id).surface.set_mode(mode)

    def paint(self, session_id: str, points: Iterable[tuple[float, float]]) -> None:
        surface = self.editor(session_id).surface
        surface.set_mode(SelectionMode.BRUSH)
        surface.add_stroke(points)

    def select_rectangle(self, session_id: str, x: float, y: float, width: float, height: float) -> CropRect:
        surface = self.editor(session_id).surface
        surface.set_mode(SelectionMode.RECTANGLE)
        surface.begin_rectangle(x, y)
        surface.update_rectangle(x + width, y + height)
        return surface.end_rectangle()

    def clear_selection(self, session_id: str) -> None:
        self.editor(session_id).surface.clear()

    async def fill(self, session_id: str, instruction: str | None = None) -> EditResult:
        editor = self._ready_editor(session_id)
        mask = await self._commit_mask(editor)
        await editor.dispatcher.fill(mask, instruction)
        self._ensure_open(session_id, editor)
        return await self._after_edit(session_id, editor, EditOperation.FILL)

    async def remove_objects(self, session_id: str) -> EditResult:
        editor = self._ready_editor(session_id)
        mask = await self._commit_mask(editor)
        await editor.dispatcher.remove_objects(mask)
        self._ensure_open(session_id, editor)
        return await self._after_edit(session_id, editor, EditOperation.REMOVE_OBJECTS)

    async def remove_background(self, session_id: str) -> EditResult:
        editor = self._ready_editor(session_id)
        await editor.dispatcher.remove_background()
        self._ensure_open(session_id, editor)
        return await self._after_edit(session_id, editor, EditOperation.REMOVE_BACKGROUND)

    async def crop(self, session_id: str) -> EditResult:
        """Crop the working raster to the selected rectangle."""

        editor = self._ready_editor(session_id)
        rect = editor.surface.rectangle
        if rect is None or not editor.surface.rectangle_is_usable:
            raise InvalidEditInputError(
                f"Drag a rectangle of at least {MIN_SELECTION_SIZE}x{MIN_SELECTION_SIZE} pixels to crop."
            )
        transform = await self._transform(editor)
        await editor.dispatcher.crop(rect, transform.scale_x, transform.scale_y)
        self._ensure_open(session_id, editor)
        return await self._after_edit(session_id, editor, EditOperation.CROP)

    async def undo(self, session_id: str) -> EditResult:
        """Step back one edit; a second undo does nothing."""

        editor = self.editor(session_id)
        undone = editor.last_operation if editor.can_undo else None
        editor.dispatcher.undo()
        editor.surface.clear()
        if undone is EditOperation.REDUCE_PALETTE:
            await self.state.reset_color_reduction(session_id)
        elif undone is not None:
            await self._persist_edited(session_id, editor)
        editor.last_operation = None
        return await self._result(editor)

    # Color reduction and preview ---------------------------------------

    async def reduce_colors(self, session_id: str) -> EditResult:
        """Run palette reduction on the working raster."""

        await self.state.go_to(session_id, PipelineStage.COLOR_REDUCE)
        editor = self._editors.get(session_id)
        if editor is None:
            working = await self._working_raster(session_id)
            image = await self._loader.load(working)
            editor = self._start_editor(session_id, working, image.width, image.height)
        elif editor.dispatcher.busy:
            raise EditInProgressError("Another edit is still being processed.")
        elif editor.last_operation is EditOperation.REDUCE_PALETTE:
            # Re-running starts again from the raster that was reduced.
            editor.dispatcher.undo()
            editor.last_operation = None
            await self.state.reset_color_reduction(session_id)

        result = await editor.dispatcher.reduce_palette()
        self._ensure_open(session_id, editor)
        await self._store.update(
            session_id,
            {ArtifactKey.COLOR_REDUCED_IMAGE: result},
            remove=(ArtifactKey.FINAL_IMAGE,),
        )
        editor.last_operation = EditOperation.REDUCE_PALETTE
        return await self._result(editor)

    async def reset_color_reduction(self, session_id: str) -> PipelineStage:
        editor = self._editors.get(session_id)
        if editor is not None and editor.last_operation is EditOperation.REDUCE_PALETTE:
            editor.dispatcher.undo()
            editor.last_operation = None
        await self.state.reset_color_reduction(session_id)
        return await self.state.go_to(session_id, PipelineStage.COLOR_REDUCE)

    async def continue_to_preview(self, session_id: str) -> RasterRef:
        """Strip the background of the reduced image and move on to the preview."""

        reduced = await self._require(
            session_id,
            ArtifactKey.COLOR_REDUCED_IMAGE,
            "Reduce the colors before previewing.",
        )
        try:
            final = await self._client.remove_background(reduced)
        except ServiceRequestError as exc:
            logger.warning("Background removal after color reduction failed, using reduced image: %s", exc)
            final = reduced

        artifacts = await self._store.load(session_id)
        values = {ArtifactKey.FINAL_IMAGE: final}
        clothing = artifacts.get(ArtifactKey.SELECTED_CLOTHING.value)
        if clothing and not artifacts.get(ArtifactKey.SELECTED_POSITION.value):
            values[ArtifactKey.SELECTED_POSITION] = default_position(clothing)
        zoom = artifacts.get(ArtifactKey.ZOOM_LEVEL.value)
        if zoom is not None:
            values[ArtifactKey.ZOOM_LEVEL] = str(clamp_zoom(self._parse_zoom(zoom)))
        await self._store.update(session_id, values)
        await self.state.go_to(session_id, PipelineStage.PREVIEW)
        return final

    async def set_position(self, session_id: str, position: str) -> None:
        await self._store.set(session_id, ArtifactKey.SELECTED_POSITION, position)

    async def set_zoom(self, session_id: str, zoom: float) -> int:
        clamped = clamp_zoom(zoom)
        await self._store.set(session_id, ArtifactKey.ZOOM_LEVEL, str(clamped))
        return clamped

    async def composition(
        self,
        session_id: str,
        custom_presets: Mapping[str, PositionPreset] | None = None,
    ) -> CompositionRequest:
        """Build the garment compositor request for the finished artwork."""

        artifacts = await self._store.load(session_id)
        final = (
            artifacts.get(ArtifactKey.FINAL_IMAGE.value)
            or artifacts.get(ArtifactKey.EDITED_IMAGE.value)
            or artifacts.get(ArtifactKey.CONVERSION_RESULT.value)
        )
        if not final:
            raise InvalidEditInputError("There is no finished image to place yet.")
        return build_composition(
            final,
            artifacts.get(ArtifactKey.SELECTED_CLOTHING.value),
            artifacts.get(ArtifactKey.SELECTED_POSITION.value),
            self._parse_zoom(artifacts.get(ArtifactKey.ZOOM_LEVEL.value, "100")),
            custom_presets,
        )

    # Session ------------------------------------------------------------

    async def go_to(self, session_id: str, stage: PipelineStage) -> PipelineStage:
        return await self.state.go_to(session_id, stage)

    async def snapshot(self, session_id: str) -> dict[str, str]:
        return await self._store.load(session_id)

    async def set_cart(self, session_id: str, cart_id: str) -> None:
        await self._store.set(session_id, ArtifactKey.CART_ID, cart_id)

    def rate_limit_status(self, client_key: str) -> RateLimitStatus | None:
        return self._gate.status(client_key) if self._gate is not None else None

    async def clear_all(self, session_id: str) -> bool:
        """Drop every artifact; returns ``True`` when the cart id was kept."""

        self._close_editor(session_id)
        return await self.state.clear_all(session_id, self._cart)

    # Helpers ------------------------------------------------------------

    def _ready_editor(self, session_id: str) -> EditorSession:
        editor = self.editor(session_id)
        if editor.dispatcher.busy:
            raise EditInProgressError("Another edit is still being processed.")
        return editor

    async def _transform(self, editor: EditorSession) -> DisplayTransform:
        image = await self._loader.load(editor.current)
        return DisplayTransform.between(editor.surface.display_size, image.size)

    async def _commit_mask(self, editor: EditorSession) -> CommittedMask:
        image = await self._loader.load(editor.current)
        transform = DisplayTransform.between(editor.surface.display_size, image.size)
        return editor.surface.commit(transform, image.size)

    async def _after_edit(self, session_id: str, editor: EditorSession, operation: EditOperation) -> EditResult:
        editor.last_operation = operation
        await self._persist_edited(session_id, editor)
        return await self._result(editor)

    def _ensure_open(self, session_id: str, editor: EditorSession) -> None:
        if self._editors.get(session_id) is not editor:
            logger.warning("Session %s changed during an edit; discarding its result", session_id)
            raise EditorClosedError("The image changed while this edit was running. Start the edit again.")

    async def _persist_edited(self, session_id: str, editor: EditorSession) -> None:
        ref = editor.current
        conversion = await self._store.get(session_id, ArtifactKey.CONVERSION_RESULT)
        # Store writes queue on a FIFO lock, so a purge or new conversion issued after this check lands after the write.
        self._ensure_open(session_id, editor)
        if ref == conversion:
            await self._store.remove(session_id, ArtifactKey.EDITED_IMAGE)
        else:
            await self._store.set(session_id, ArtifactKey.EDITED_IMAGE, ref)

    async def _result(self, editor: EditorSession) -> EditResult:
        ref = editor.current
        try:
            image = await self._loader.load(ref)
        except ServiceRequestError as exc:
            logger.warning("Could not measure edited image, reporting it without a size: %s", exc)
            return EditResult(image=ref, can_undo=editor.can_undo, width=None, height=None)
        return EditResult(image=ref, can_undo=editor.can_undo, width=image.width, height=image.height)

    async def _require(self, session_id: str, key: ArtifactKey, message: str) -> str:
        value = await self._store.get(session_id, key)
        if not value:
            raise InvalidEditInputError(message)
        return value

    def _close_editor(self, session_id: str) -> None:
        if self._editors.pop(session_id, None) is not None:
            active_editor_sessions.dec()

    @staticmethod
    def _parse_zoom(raw: str | float) -> float:
        try:
            return float(raw)
        except (TypeError, ValueError):
            return 100.0
