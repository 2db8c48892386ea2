"""End-to-end tests of the pipeline orchestration with an in-process image service."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
import pytest_mock

from conftest import FakeImageClient, jpeg_with_orientation, png_bytes, size_of
from pixelme.config.settings import Settings
from pixelme.errors import ServiceFailureKind, ServiceRequestError
from pixelme.imggen.edit_ops import InvalidEditInputError
from pixelme.imgproc.raster import RasterLoader
from pixelme.logic import ConversionError, EditorClosedError, EditorNotOpenError, PixelMeLogic
from pixelme.pipeline.state_machine import PipelineStage, StageTransitionError
from pixelme.ratelimit.gate import RateLimitExceededError, RateLimitGate, RateLimitStore
from pixelme.storage.repository import ArtifactKey, SessionStore

SID = "session-1"


@pytest_asyncio.fixture
async def logic(settings: Settings, fake_client: FakeImageClient):
    service = PixelMeLogic(settings, SessionStore(Path(settings.storage_root)), fake_client)
    yield service
    await service.close()


async def _converted(logic: PixelMeLogic, clothing: str | None = "hoodie") -> str:
    await logic.upload(SID, jpeg_with_orientation(6, size=(120, 80)), clothing=clothing)
    await logic.select_style(SID, "Anime")
    return await logic.convert(SID, "203.0.113.7")


@pytest.mark.asyncio
async def test_full_edit_flow(logic: PixelMeLogic, fake_client: FakeImageClient) -> None:
    upload = await logic.upload(SID, jpeg_with_orientation(6, size=(120, 80)), clothing="hoodie")
    assert (upload.width, upload.height) == (80, 120)
    assert await logic.state.current(SID) is PipelineStage.STYLE

    assert await logic.select_style(SID, "Anime") is PipelineStage.CONVERT
    conversion = await logic.convert(SID, "203.0.113.7")
    assert size_of(conversion) == (80, 120)
    assert await logic.state.current(SID) is PipelineStage.BEFORE
    assert "Convert this person into modern high-quality anime" in fake_client.calls[-1][1]["prompt"]

    editor = await logic.open_editor(SID, 80, 120)
    assert editor.current == conversion
    logic.paint(SID, [(10, 10), (12, 12)])
    logic.paint(SID, [(60, 100)])

    filled = await logic.fill(SID, "extend background")

    name, details = fake_client.calls[-1]
    assert name == "fill"
    assert details["prompt"] == "extend background"
    assert size_of(details["mask"]) == (80, 120)
    assert filled.can_undo
    assert (await logic.snapshot(SID))[ArtifactKey.EDITED_IMAGE.value] == filled.image

    undone = await logic.undo(SID)
    assert undone.image == conversion
    assert not undone.can_undo
    assert ArtifactKey.EDITED_IMAGE.value not in await logic.snapshot(SID)

    logic.select_rectangle(SID, 10, 10, 50, 50)
    cropped = await logic.crop(SID)
    assert (cropped.width, cropped.height) == (50, 50)
    assert await logic.state.current(SID) is PipelineStage.EDIT


@pytest.mark.asyncio
async def test_new_conversion_discards_edits(logic: PixelMeLogic) -> None:
    await _converted(logic)
    await logic.open_editor(SID, 80, 120)
    await logic.remove_background(SID)
    assert ArtifactKey.EDITED_IMAGE.value in await logic.snapshot(SID)

    await logic.convert(SID, "203.0.113.7")

    artifacts = await logic.snapshot(SID)
    assert ArtifactKey.EDITED_IMAGE.value not in artifacts
    with pytest.raises(EditorNotOpenError):
        logic.editor(SID)


@pytest.mark.asyncio
async def test_edit_finishing_after_clear_all_is_discarded(logic: PixelMeLogic, fake_client: FakeImageClient) -> None:
    await _converted(logic)
    await logic.open_editor(SID, 80, 120)
    fake_client.gates["remove_background"] = asyncio.Event()
    pending = asyncio.create_task(logic.remove_background(SID))
    while "remove_background" not in fake_client.names():
        await asyncio.sleep(0)

    assert not await logic.clear_all(SID)
    fake_client.gates["remove_background"].set()

    with pytest.raises(EditorClosedError):
        await pending
    assert await logic.snapshot(SID) == {}
    assert not await logic.state.can_enter(SID, PipelineStage.COLOR_REDUCE)


@pytest.mark.asyncio
async def test_edit_finishing_after_new_conversion_is_discarded(
    logic: PixelMeLogic,
    fake_client: FakeImageClient,
) -> None:
    await _converted(logic)
    await logic.open_editor(SID, 80, 120)
    logic.paint(SID, [(10, 10), (12, 12)])
    fake_client.gates["fill"] = asyncio.Event()
    pending = asyncio.create_task(logic.fill(SID, "extend background"))
    while "fill" not in fake_client.names():
        await asyncio.sleep(0)

    conversion = await logic.convert(SID, "203.0.113.7")
    fake_client.gates["fill"].set()

    with pytest.raises(EditorClosedError):
        await pending
    artifacts = await logic.snapshot(SID)
    assert ArtifactKey.EDITED_IMAGE.value not in artifacts
    assert artifacts[ArtifactKey.CONVERSION_RESULT.value] == conversion
    assert await logic.state.current(SID) is PipelineStage.BEFORE


@pytest.mark.asyncio
async def test_unmeasurable_edit_result_is_still_kept(settings: Settings, fake_client: FakeImageClient) -> None:
    def offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    loader = RasterLoader(client=httpx.AsyncClient(transport=httpx.MockTransport(offline)))
    service = PixelMeLogic(settings, SessionStore(Path(settings.storage_root)), fake_client, loader=loader)
    cutout = "https://replicate.test/files/cutout.png"
    try:
        await _converted(service)
        await service.open_editor(SID, 80, 120)
        fake_client.urls["remove_background"] = cutout

        result = await service.remove_background(SID)
    finally:
        await service.close()

    assert result.image == cutout
    assert result.can_undo
    assert (result.width, result.height) == (None, None)
    assert (await service.snapshot(SID))[ArtifactKey.EDITED_IMAGE.value] == cutout


@pytest.mark.asyncio
async def test_conversion_failure_keeps_stage(logic: PixelMeLogic, fake_client: FakeImageClient) -> None:
    await logic.upload(SID, png_bytes())
    await logic.select_style(SID, "Simpsons")
    fake_client.failures["restyle"] = ServiceRequestError("slow", kind=ServiceFailureKind.TIMEOUT)

    with pytest.raises(ConversionError) as excinfo:
        await logic.convert(SID, "client")

    assert excinfo.value.retryable
    assert ArtifactKey.CONVERSION_RESULT.value not in await logic.snapshot(SID)
    assert await logic.state.current(SID) is PipelineStage.CONVERT


@pytest.mark.asyncio
async def test_rate_limit_blocks_before_the_service_call(settings: Settings, fake_client: FakeImageClient) -> None:
    gate = RateLimitGate(RateLimitStore(), max_requests=1)
    service = PixelMeLogic(settings, SessionStore(Path(settings.storage_root)), fake_client, gate=gate)
    try:
        await service.upload(SID, png_bytes())
        await service.select_style(SID, "Anime")
        await service.convert(SID, "client")

        with pytest.raises(RateLimitExceededError):
            await service.convert(SID, "client")

        assert fake_client.names() == ["restyle"]
        assert service.rate_limit_status("client").remaining == 0
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_editing_before_conversion_is_refused(logic: PixelMeLogic) -> None:
    await logic.upload(SID, png_bytes())

    with pytest.raises(StageTransitionError):
        await logic.open_editor(SID, 64, 48)
    with pytest.raises(EditorNotOpenError):
        await logic.fill(SID)


@pytest.mark.asyncio
async def test_empty_selection_is_not_sent(logic: PixelMeLogic, fake_client: FakeImageClient) -> None:
    await _converted(logic)
    await logic.open_editor(SID, 80, 120)
    calls_before = len(fake_client.calls)

    with pytest.raises(InvalidEditInputError):
        await logic.crop(SID)

    assert len(fake_client.calls) == calls_before


@pytest.mark.asyncio
async def test_color_reduction_and_preview_fallback(logic: PixelMeLogic, fake_client: FakeImageClient) -> None:
    await _converted(logic)

    reduced = await logic.reduce_colors(SID)
    assert reduced.can_undo
    assert await logic.state.current(SID) is PipelineStage.COLOR_REDUCE

    fake_client.failures["remove_background"] = ServiceRequestError("down", kind=ServiceFailureKind.NETWORK)
    final = await logic.continue_to_preview(SID)

    artifacts = await logic.snapshot(SID)
    assert final == reduced.image
    assert artifacts[ArtifactKey.FINAL_IMAGE.value] == reduced.image
    assert artifacts[ArtifactKey.SELECTED_POSITION.value] == "middle-chest"
    assert await logic.state.current(SID) is PipelineStage.PREVIEW

    request = await logic.composition(SID)
    assert (request.position, request.x_percent, request.y_percent) == ("middle-chest", 50.0, 45.0)


@pytest.mark.asyncio
async def test_undoing_color_reduction_clears_its_artifacts(logic: PixelMeLogic) -> None:
    conversion = await _converted(logic)
    await logic.reduce_colors(SID)
    await logic.continue_to_preview(SID)

    undone = await logic.undo(SID)

    artifacts = await logic.snapshot(SID)
    assert undone.image == conversion
    assert ArtifactKey.COLOR_REDUCED_IMAGE.value not in artifacts
    assert ArtifactKey.FINAL_IMAGE.value not in artifacts


@pytest.mark.asyncio
async def test_rerunning_color_reduction_starts_from_the_edit(logic: PixelMeLogic, fake_client: FakeImageClient) -> None:
    conversion = await _converted(logic)
    await logic.reduce_colors(SID)

    await logic.reduce_colors(SID)

    restyle_inputs = [details["image"] for name, details in fake_client.calls if name == "restyle"]
    assert restyle_inputs[-1] == restyle_inputs[-2]
    assert logic.editor(SID).dispatcher.history.previous == conversion


@pytest.mark.asyncio
async def test_zoom_is_clamped(logic: PixelMeLogic) -> None:
    assert await logic.set_zoom(SID, 1000) == 500
    assert await logic.set_zoom(SID, 1) == 25


@pytest.mark.asyncio
async def test_clear_all_keeps_cart_with_items(
    settings: Settings,
    fake_client: FakeImageClient,
    mocker: pytest_mock.MockerFixture,
) -> None:
    cart = mocker.Mock()
    cart.has_items = mocker.AsyncMock(return_value=True)
    cart.close = mocker.AsyncMock(return_value=None)
    service = PixelMeLogic(settings, SessionStore(Path(settings.storage_root)), fake_client, cart=cart)
    try:
        await service.upload(SID, png_bytes())
        await service.set_cart(SID, "cart-1")

        assert await service.clear_all(SID)
        assert await service.snapshot(SID) == {ArtifactKey.CART_ID.value: "cart-1"}
        assert await service.state.current(SID) is PipelineStage.UPLOAD
    finally:
        await service.close()

    cart.close.assert_awaited_once()
