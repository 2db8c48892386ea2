"""Tests for the per-session artifact store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pixelme.storage.repository import ArtifactKey, InvalidSessionIdError, SessionStore


@pytest.mark.asyncio
async def test_set_and_get_round_trip(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)

    await store.set("session-1", ArtifactKey.SELECTED_STYLE, "Anime")

    assert await store.get("session-1", ArtifactKey.SELECTED_STYLE) == "Anime"
    assert await store.get("session-1", ArtifactKey.CONVERSION_RESULT) is None
    on_disk = json.loads((tmp_path / "session-1" / "artifacts.json").read_text(encoding="utf-8"))
    assert on_disk == {"selected-style": "Anime"}


@pytest.mark.asyncio
async def test_artifacts_survive_a_new_store_instance(tmp_path: Path) -> None:
    await SessionStore(tmp_path).set("abc", ArtifactKey.ZOOM_LEVEL, "150")

    assert await SessionStore(tmp_path).get("abc", ArtifactKey.ZOOM_LEVEL) == "150"


@pytest.mark.asyncio
async def test_update_writes_and_removes_together(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    await store.set("abc", ArtifactKey.EDITED_IMAGE, "edited")
    await store.set("abc", ArtifactKey.FINAL_IMAGE, "final")

    await store.update(
        "abc",
        {ArtifactKey.CONVERSION_RESULT: "new"},
        remove=(ArtifactKey.EDITED_IMAGE, ArtifactKey.FINAL_IMAGE),
    )

    assert await store.load("abc") == {"conversion-result": "new"}


@pytest.mark.asyncio
async def test_sessions_are_isolated(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    await store.set("one", ArtifactKey.SELECTED_STYLE, "Anime")

    assert await store.load("two") == {}


@pytest.mark.asyncio
async def test_purge_keeps_requested_keys(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    await store.set("abc", ArtifactKey.CART_ID, "cart-9")
    await store.set("abc", ArtifactKey.UPLOADED_IMAGE, "data:...")

    await store.purge("abc", keep=(ArtifactKey.CART_ID,))

    assert await store.load("abc") == {"cart-id": "cart-9"}


@pytest.mark.asyncio
async def test_purge_without_survivors_drops_directory(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    await store.set("abc", ArtifactKey.UPLOADED_IMAGE, "data:...")

    await store.purge("abc")

    assert not (tmp_path / "abc").exists()
    assert await store.load("abc") == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("session_id", ["../escape", "", "a/b", "x" * 129])
async def test_unsafe_session_ids_are_rejected(tmp_path: Path, session_id: str) -> None:
    store = SessionStore(tmp_path)

    with pytest.raises(InvalidSessionIdError):
        await store.load(session_id)
