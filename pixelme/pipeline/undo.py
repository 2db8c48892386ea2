"""Depth-1 undo for the working raster."""

from __future__ import annotations

from dataclasses import dataclass

from pixelme.imgproc.raster import RasterRef


@dataclass(slots=True, frozen=True)
class RasterHistory:
    """The current raster plus at most one prior raster to return to."""

    current: RasterRef
    previous: RasterRef | None = None

    @property
    def can_undo(self) -> bool:
        return self.previous is not None

    def replace(self, result: RasterRef) -> "RasterHistory":
        """Install ``result``, overwriting the undo slot with the old current."""

        return RasterHistory(current=result, previous=self.current)

    def undo(self) -> "RasterHistory":
        """Restore the prior raster; a no-op when the slot is empty."""

        if self.previous is None:
            return self
        return RasterHistory(current=self.previous, previous=None)

    def reset(self, current: RasterRef) -> "RasterHistory":
        """Start over from ``current`` with an empty undo slot."""

        return RasterHistory(current=current)
