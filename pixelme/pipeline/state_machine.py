"""Pipeline stages, their entry requirements and artifact invalidation."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

from pixelme.integrations.cart import CartCheckError
from pixelme.storage.repository import ArtifactKey, SessionStore

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    """Ordered stages a session moves through."""

    UPLOAD = "upload"
    STYLE = "style"
    CONVERT = "convert"
    BEFORE = "before"
    EDIT = "edit"
    COLOR_REDUCE = "color-reduce"
    PREVIEW = "preview"


# Each stage lists alternatives; one group must be fully present to enter.
STAGE_REQUIREMENTS: dict[PipelineStage, tuple[tuple[ArtifactKey, ...], ...]] = {
    PipelineStage.UPLOAD: ((),),
    PipelineStage.STYLE: ((ArtifactKey.UPLOADED_IMAGE,),),
    PipelineStage.CONVERT: ((ArtifactKey.UPLOADED_IMAGE, ArtifactKey.SELECTED_STYLE),),
    PipelineStage.BEFORE: ((ArtifactKey.CONVERSION_RESULT,),),
    PipelineStage.EDIT: ((ArtifactKey.CONVERSION_RESULT,),),
    PipelineStage.COLOR_REDUCE: ((ArtifactKey.EDITED_IMAGE,), (ArtifactKey.CONVERSION_RESULT,)),
    PipelineStage.PREVIEW: ((ArtifactKey.COLOR_REDUCED_IMAGE,),),
}

CONVERSION_DOWNSTREAM = (
    ArtifactKey.EDITED_IMAGE,
    ArtifactKey.COLOR_REDUCED_IMAGE,
    ArtifactKey.FINAL_IMAGE,
)

COLOR_REDUCTION_DOWNSTREAM = (
    ArtifactKey.COLOR_REDUCED_IMAGE,
    ArtifactKey.FINAL_IMAGE,
)


class StageTransitionError(RuntimeError):
    """Raised when a stage is entered without the artifacts it needs."""

    def __init__(self, stage: PipelineStage, missing: tuple[ArtifactKey, ...]) -> None:
        self.stage = stage
        self.missing = missing
        names = ", ".join(key.value for key in missing)
        super().__init__(f"Cannot open the {stage.value} step yet: missing {names}.")


class CartChecker(Protocol):
    async def has_items(self, cart_id: str) -> bool: ...


class PipelineStateMachine:
    """Tracks the current stage of each session on top of the artifact store."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    async def current(self, session_id: str) -> PipelineStage:
        stored = await self._store.get(session_id, ArtifactKey.CURRENT_STEP)
        try:
            return PipelineStage(stored) if stored else PipelineStage.UPLOAD
        except ValueError:
            logger.warning("Session %s has unknown stage %r, falling back to upload", session_id, stored)
            return PipelineStage.UPLOAD

    @staticmethod
    def missing_for(stage: PipelineStage, artifacts: dict[str, str]) -> tuple[ArtifactKey, ...]:
        """Return the artifacts blocking ``stage``; empty when it can be entered."""

        groups = STAGE_REQUIREMENTS[PipelineStage(stage)]
        shortest: tuple[ArtifactKey, ...] | None = None
        for group in groups:
            missing = tuple(key for key in group if not artifacts.get(key.value))
            if not missing:
                return ()
            if shortest is None or len(missing) < len(shortest):
                shortest = missing
        return shortest or ()

    async def can_enter(self, session_id: str, stage: PipelineStage) -> bool:
        artifacts = await self._store.load(session_id)
        return not self.missing_for(stage, artifacts)

    async def go_to(self, session_id: str, stage: PipelineStage) -> PipelineStage:
        """Move to ``stage``; forward and backward moves follow the same rule."""

        stage = PipelineStage(stage)
        artifacts = await self._store.load(session_id)
        missing = self.missing_for(stage, artifacts)
        if missing:
            raise StageTransitionError(stage, missing)
        await self._store.set(session_id, ArtifactKey.CURRENT_STEP, stage.value)
        logger.info("Session %s moved to %s", session_id, stage.value)
        return stage

    async def record_artifact(self, session_id: str, key: ArtifactKey, value: str) -> None:
        await self._store.set(session_id, key, value)

    async def record_conversion(self, session_id: str, ref: str) -> None:
        """Store a new conversion result and drop everything derived from the old one."""

        await self._store.update(
            session_id,
            {ArtifactKey.CONVERSION_RESULT: ref},
            remove=CONVERSION_DOWNSTREAM,
        )
        logger.info("Session %s has a new conversion result; downstream artifacts cleared", session_id)

    async def reset_color_reduction(self, session_id: str) -> None:
        await self._store.remove(session_id, *COLOR_REDUCTION_DOWNSTREAM)

    async def clear_all(self, session_id: str, cart: CartChecker | None = None) -> bool:
        """
        Purge the session. Returns ``True`` when the cart id was preserved.

        The cart id survives when the cart still holds items or when its contents
        cannot be checked.
        """

        cart_id = await self._store.get(session_id, ArtifactKey.CART_ID)
        preserve_cart = False
        if cart_id and cart is not None:
            try:
                preserve_cart = await cart.has_items(cart_id)
            except CartCheckError as exc:
                logger.warning("Cart check failed for session %s, keeping cart: %s", session_id, exc)
                preserve_cart = True
        elif cart_id:
            preserve_cart = True

        keep = (ArtifactKey.CART_ID,) if preserve_cart else ()
        await self._store.purge(session_id, keep=keep)
        logger.info("Session %s cleared (cart preserved: %s)", session_id, preserve_cart)
        return preserve_cart
