"""External image service client and HTTP surface."""

from pixelme.errors import ServiceFailureKind, ServiceRequestError

from .replicate_client import ReplicateClient

__all__ = ["ReplicateClient", "ServiceFailureKind", "ServiceRequestError"]
