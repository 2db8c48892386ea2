"""Failure types shared by the image service client and the raster loader."""

from __future__ import annotations

from enum import Enum


class ServiceFailureKind(str, Enum):
    """How an external pixel-transformation call failed."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    DECLINED = "declined"
    MALFORMED = "malformed"

    @property
    def retryable(self) -> bool:
        return self in (ServiceFailureKind.NETWORK, ServiceFailureKind.TIMEOUT)


class ServiceRequestError(RuntimeError):
    """Raised when the pixel-transformation service does not return a result."""

    def __init__(
        self,
        message: str,
        kind: ServiceFailureKind = ServiceFailureKind.DECLINED,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)
