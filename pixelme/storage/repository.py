"""JSON-backed durable store for per-session pipeline artifacts."""

from __future__ import annotations

import asyncio
import json
import re
import shutil
from enum import Enum
from pathlib import Path
from typing import Iterable

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class InvalidSessionIdError(ValueError):
    """Raised when a session id cannot be used as a storage path."""


class ArtifactKey(str, Enum):
    """Fixed keys under which session artifacts are persisted."""

    UPLOADED_IMAGE = "uploaded-image"
    SELECTED_STYLE = "selected-style"
    CONVERSION_RESULT = "conversion-result"
    EDITED_IMAGE = "edited-image"
    COLOR_REDUCED_IMAGE = "color-reduced-image"
    FINAL_IMAGE = "final-image"
    CURRENT_STEP = "current-step"
    SELECTED_POSITION = "selected-position"
    ZOOM_LEVEL = "zoom-level"
    GENERATION_HISTORY = "generation-history"
    SELECTED_CLOTHING = "selected-clothing"
    CART_ID = "cart-id"


class SessionStore:
    """Manages reading and writing session artifacts as one JSON file per session."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}

    def _session_path(self, session_id: str) -> Path:
        if not _SESSION_ID_PATTERN.match(session_id):
            raise InvalidSessionIdError(f"Invalid session id: {session_id!r}")
        return self._root / session_id / "artifacts.json"

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    async def load(self, session_id: str) -> dict[str, str]:
        """Return every stored artifact of the session."""

        async with self._lock_for(session_id):
            return await self._read(session_id)

    async def get(self, session_id: str, key: ArtifactKey) -> str | None:
        """Return one artifact; ``None`` means the producing stage was not reached."""

        artifacts = await self.load(session_id)
        return artifacts.get(ArtifactKey(key).value)

    async def set(self, session_id: str, key: ArtifactKey, value: str) -> None:
        await self.update(session_id, {key: value})

    async def update(
        self,
        session_id: str,
        values: dict[ArtifactKey, str],
        remove: Iterable[ArtifactKey] = (),
    ) -> None:
        """Write ``values`` and delete ``remove`` in a single file update."""

        async with self._lock_for(session_id):
            artifacts = await self._read(session_id)
            for key in remove:
                artifacts.pop(ArtifactKey(key).value, None)
            for key, value in values.items():
                artifacts[ArtifactKey(key).value] = value
            await self._write(session_id, artifacts)

    async def remove(self, session_id: str, *keys: ArtifactKey) -> None:
        await self.update(session_id, {}, remove=keys)

    async def purge(self, session_id: str, keep: Iterable[ArtifactKey] = ()) -> None:
        """Remove every artifact except ``keep``; drop the session directory when nothing remains."""

        kept_keys = {ArtifactKey(key).value for key in keep}
        async with self._lock_for(session_id):
            artifacts = await self._read(session_id)
            survivors = {key: value for key, value in artifacts.items() if key in kept_keys}
            if survivors:
                await self._write(session_id, survivors)
            else:
                await asyncio.to_thread(self._delete_dir, self._session_path(session_id).parent)

    async def _read(self, session_id: str) -> dict[str, str]:
        path = self._session_path(session_id)
        if not path.exists():
            return {}
        data = await asyncio.to_thread(path.read_text, encoding="utf-8")
        payload = json.loads(data)
        return {str(key): str(value) for key, value in payload.items()}

    async def _write(self, session_id: str, artifacts: dict[str, str]) -> None:
        body = json.dumps(artifacts, ensure_ascii=False, indent=2)
        await asyncio.to_thread(self._write_file, self._session_path(session_id), body)

    @staticmethod
    def _write_file(path: Path, body: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")

    @staticmethod
    def _delete_dir(path: Path) -> None:
        if path.exists():
            shutil.rmtree(path)
