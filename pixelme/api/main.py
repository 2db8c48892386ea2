"""FastAPI entrypoint and HTTP routes."""

from __future__ import annotations

import binascii
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from pixelme.api.replicate_client import ReplicateClient
from pixelme.api.schemas import (
    CartRequest,
    ClearResponse,
    CompositionResponse,
    ConversionResponse,
    EditorOpenRequest,
    EditorStateResponse,
    EditResponse,
    FillRequest,
    HistoryEntry,
    HistorySelectRequest,
    PositionRequest,
    PreviewResponse,
    RateLimitResponse,
    RectangleRequest,
    RotateRequest,
    SelectionModeRequest,
    SessionResponse,
    StageRequest,
    StageResponse,
    StrokeRequest,
    StyleRequest,
    UploadRequest,
    UploadResponse,
    ZoomRequest,
    ZoomResponse,
)
from pixelme.config.settings import Settings, get_settings
from pixelme.errors import ServiceFailureKind, ServiceRequestError
from pixelme.imggen.edit_ops import EditInProgressError, EditServiceError, InvalidEditInputError
from pixelme.imgproc.mask import InvalidMaskError
from pixelme.imgproc.normalize import UploadDecodeError
from pixelme.imgproc.raster import InvalidCropError, data_uri_to_bytes
from pixelme.integrations.cart import CartClient
from pixelme.logic import (
    ConversionError,
    EditorClosedError,
    EditorNotOpenError,
    EditorSession,
    EditResult,
    PixelMeLogic,
)
from pixelme.monitoring.logging import configure_logging
from pixelme.pipeline.state_machine import StageTransitionError
from pixelme.ratelimit.gate import RateLimitExceededError, RateLimitGate, RateLimitStore
from pixelme.storage.repository import InvalidSessionIdError, SessionStore

logger = logging.getLogger(__name__)


def build_logic(settings: Settings) -> PixelMeLogic:
    """Wire the default collaborators from settings."""

    return PixelMeLogic(
        settings,
        SessionStore(Path(settings.storage_root)),
        ReplicateClient(settings),
        gate=RateLimitGate(
            RateLimitStore(),
            max_requests=settings.rate_limit_max,
            window_seconds=settings.rate_limit_window,
        ),
        cart=CartClient(settings.cart_api_url) if settings.cart_api_url else None,
    )


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "anonymous"


def _edit_response(result: EditResult) -> EditResponse:
    return EditResponse(image=result.image, can_undo=result.can_undo, width=result.width, height=result.height)


def _editor_state(editor: EditorSession) -> EditorStateResponse:
    surface = editor.surface
    return EditorStateResponse(
        image=editor.current,
        can_undo=editor.can_undo,
        busy=editor.dispatcher.busy,
        mode=surface.mode,
        has_selection=surface.has_selection,
        rectangle_is_usable=surface.rectangle_is_usable,
    )


def _error(
    status_code: int,
    detail: str,
    kind: ServiceFailureKind | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = {"detail": detail, "kind": kind.value if kind else None, "retryable": bool(kind and kind.retryable)}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _service_status(kind: ServiceFailureKind | None) -> int:
    if kind is ServiceFailureKind.TIMEOUT:
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_502_BAD_GATEWAY


def create_app(logic: PixelMeLogic | None = None) -> FastAPI:
    """Initialise the FastAPI application."""

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        yield
        if application.state.logic is not None:
            await application.state.logic.close()

    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(
        title="PixelMe Editor API",
        version="0.1.0",
        docs_url="/docs" if settings.environment != "prod" else None,
        redoc_url="/redoc" if settings.environment != "prod" else None,
        lifespan=lifespan,
    )
    app.state.logic = logic

    def get_logic(request: Request) -> PixelMeLogic:
        if request.app.state.logic is None:
            request.app.state.logic = build_logic(get_settings())
        return request.app.state.logic

    @app.exception_handler(InvalidMaskError)
    @app.exception_handler(InvalidEditInputError)
    @app.exception_handler(InvalidCropError)
    @app.exception_handler(UploadDecodeError)
    @app.exception_handler(InvalidSessionIdError)
    async def _invalid_input(_: Request, exc: Exception) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(EditInProgressError)
    @app.exception_handler(StageTransitionError)
    @app.exception_handler(EditorNotOpenError)
    @app.exception_handler(EditorClosedError)
    async def _conflict(_: Request, exc: Exception) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(RateLimitExceededError)
    async def _rate_limited(_: Request, exc: RateLimitExceededError) -> JSONResponse:
        return _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            str(exc),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(EditServiceError)
    @app.exception_handler(ConversionError)
    @app.exception_handler(ServiceRequestError)
    async def _service_failure(
        _: Request,
        exc: EditServiceError | ConversionError | ServiceRequestError,
    ) -> JSONResponse:
        return _error(_service_status(exc.kind), str(exc), kind=exc.kind)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Simple health endpoint used for readiness probes."""

        return {"status": "ok"}

    @app.get("/rate-limit", tags=["system"], response_model=RateLimitResponse)
    async def rate_limit_status(request: Request, service: PixelMeLogic = Depends(get_logic)) -> RateLimitResponse:
        """Remaining conversions for the calling client."""

        current = service.rate_limit_status(_client_key(request))
        if current is None:
            return RateLimitResponse(remaining_generations=-1, time_until_reset=0, max_generations=-1)
        return RateLimitResponse(
            remaining_generations=current.remaining,
            time_until_reset=current.time_until_reset,
            max_generations=current.max_requests,
        )

    @app.get("/sessions/{session_id}", tags=["session"], response_model=SessionResponse)
    async def get_session(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> SessionResponse:
        return SessionResponse(
            stage=await service.state.current(session_id),
            artifacts=await service.snapshot(session_id),
        )

    @app.post("/sessions/{session_id}/stage", tags=["session"], response_model=StageResponse)
    async def change_stage(
        session_id: str,
        body: StageRequest,
        service: PixelMeLogic = Depends(get_logic),
    ) -> StageResponse:
        return StageResponse(stage=await service.go_to(session_id, body.stage))

    @app.post("/sessions/{session_id}/upload", tags=["upload"], response_model=UploadResponse)
    async def upload(session_id: str, body: UploadRequest, service: PixelMeLogic = Depends(get_logic)) -> UploadResponse:
        try:
            data = data_uri_to_bytes(body.image_data)
        except (ValueError, binascii.Error) as exc:
            raise UploadDecodeError("Image data must be a base64 data URI.") from exc
        normalized = await service.upload(session_id, data, clothing=body.clothing)
        return UploadResponse(
            image=normalized.ref,
            width=normalized.width,
            height=normalized.height,
            orientation=normalized.orientation,
        )

    @app.post("/sessions/{session_id}/rotate", tags=["upload"], response_model=UploadResponse)
    async def rotate(session_id: str, body: RotateRequest, service: PixelMeLogic = Depends(get_logic)) -> UploadResponse:
        rotated = await service.rotate(session_id, body.direction)
        return UploadResponse(image=rotated.ref, width=rotated.width, height=rotated.height)

    @app.post("/sessions/{session_id}/style", tags=["convert"], response_model=StageResponse)
    async def select_style(session_id: str, body: StyleRequest, service: PixelMeLogic = Depends(get_logic)) -> StageResponse:
        return StageResponse(stage=await service.select_style(session_id, body.style))

    @app.post("/sessions/{session_id}/convert", tags=["convert"], response_model=ConversionResponse)
    async def convert(session_id: str, request: Request, service: PixelMeLogic = Depends(get_logic)) -> ConversionResponse:
        return ConversionResponse(image=await service.convert(session_id, _client_key(request)))

    @app.get("/sessions/{session_id}/history", tags=["convert"], response_model=list[HistoryEntry])
    async def history(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> list[HistoryEntry]:
        entries = await service.generation_history(session_id)
        return [
            HistoryEntry(id=entry.id, image_url=entry.image_url, timestamp=entry.timestamp, style=entry.style)
            for entry in entries
        ]

    @app.post("/sessions/{session_id}/history/select", tags=["convert"], response_model=ConversionResponse)
    async def select_history(
        session_id: str,
        body: HistorySelectRequest,
        service: PixelMeLogic = Depends(get_logic),
    ) -> ConversionResponse:
        return ConversionResponse(image=await service.select_history_image(session_id, body.entry_id))

    @app.post("/sessions/{session_id}/editor", tags=["edit"], response_model=EditorStateResponse)
    async def open_editor(
        session_id: str,
        body: EditorOpenRequest,
        service: PixelMeLogic = Depends(get_logic),
    ) -> EditorStateResponse:
        editor = await service.open_editor(session_id, body.display_width, body.display_height)
        return _editor_state(editor)

    @app.post("/sessions/{session_id}/editor/mode", tags=["edit"], response_model=EditorStateResponse)
    async def set_mode(
        session_id: str,
        body: SelectionModeRequest,
        service: PixelMeLogic = Depends(get_logic),
    ) -> EditorStateResponse:
        service.set_selection_mode(session_id, body.mode)
        return _editor_state(service.editor(session_id))

    @app.post("/sessions/{session_id}/editor/strokes", tags=["edit"], response_model=EditorStateResponse)
    async def paint(session_id: str, body: StrokeRequest, service: PixelMeLogic = Depends(get_logic)) -> EditorStateResponse:
        service.paint(session_id, body.points)
        return _editor_state(service.editor(session_id))

    @app.post("/sessions/{session_id}/editor/rectangle", tags=["edit"], response_model=EditorStateResponse)
    async def select_rectangle(
        session_id: str,
        body: RectangleRequest,
        service: PixelMeLogic = Depends(get_logic),
    ) -> EditorStateResponse:
        service.select_rectangle(session_id, body.x, body.y, body.width, body.height)
        return _editor_state(service.editor(session_id))

    @app.delete("/sessions/{session_id}/editor/selection", tags=["edit"], response_model=EditorStateResponse)
    async def clear_selection(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> EditorStateResponse:
        service.clear_selection(session_id)
        return _editor_state(service.editor(session_id))

    @app.post("/sessions/{session_id}/edits/fill", tags=["edit"], response_model=EditResponse)
    async def fill(session_id: str, body: FillRequest, service: PixelMeLogic = Depends(get_logic)) -> EditResponse:
        return _edit_response(await service.fill(session_id, body.instruction))

    @app.post("/sessions/{session_id}/edits/remove-objects", tags=["edit"], response_model=EditResponse)
    async def remove_objects(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> EditResponse:
        return _edit_response(await service.remove_objects(session_id))

    @app.post("/sessions/{session_id}/edits/remove-background", tags=["edit"], response_model=EditResponse)
    async def remove_background(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> EditResponse:
        return _edit_response(await service.remove_background(session_id))

    @app.post("/sessions/{session_id}/edits/crop", tags=["edit"], response_model=EditResponse)
    async def crop(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> EditResponse:
        return _edit_response(await service.crop(session_id))

    @app.post("/sessions/{session_id}/edits/undo", tags=["edit"], response_model=EditResponse)
    async def undo(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> EditResponse:
        return _edit_response(await service.undo(session_id))

    @app.post("/sessions/{session_id}/color-reduce", tags=["color-reduce"], response_model=EditResponse)
    async def reduce_colors(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> EditResponse:
        return _edit_response(await service.reduce_colors(session_id))

    @app.delete("/sessions/{session_id}/color-reduce", tags=["color-reduce"], response_model=StageResponse)
    async def reset_color_reduction(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> StageResponse:
        return StageResponse(stage=await service.reset_color_reduction(session_id))

    @app.post("/sessions/{session_id}/preview", tags=["preview"], response_model=PreviewResponse)
    async def continue_to_preview(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> PreviewResponse:
        return PreviewResponse(image=await service.continue_to_preview(session_id))

    @app.post("/sessions/{session_id}/position", tags=["preview"], status_code=status.HTTP_204_NO_CONTENT)
    async def set_position(session_id: str, body: PositionRequest, service: PixelMeLogic = Depends(get_logic)) -> None:
        await service.set_position(session_id, body.position)

    @app.post("/sessions/{session_id}/zoom", tags=["preview"], response_model=ZoomResponse)
    async def set_zoom(session_id: str, body: ZoomRequest, service: PixelMeLogic = Depends(get_logic)) -> ZoomResponse:
        return ZoomResponse(zoom=await service.set_zoom(session_id, body.zoom))

    @app.get("/sessions/{session_id}/composition", tags=["preview"], response_model=CompositionResponse)
    async def composition(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> CompositionResponse:
        request = await service.composition(session_id)
        return CompositionResponse(
            image_ref=request.image_ref,
            position=request.position,
            x_percent=request.x_percent,
            y_percent=request.y_percent,
            size_percent=request.size_percent,
            zoom=request.zoom,
        )

    @app.put("/sessions/{session_id}/cart", tags=["session"], status_code=status.HTTP_204_NO_CONTENT)
    async def set_cart(session_id: str, body: CartRequest, service: PixelMeLogic = Depends(get_logic)) -> None:
        await service.set_cart(session_id, body.cart_id)

    @app.delete("/sessions/{session_id}", tags=["session"], response_model=ClearResponse)
    async def clear_all(session_id: str, service: PixelMeLogic = Depends(get_logic)) -> ClearResponse:
        return ClearResponse(cart_preserved=await service.clear_all(session_id))

    return app


app = create_app()
