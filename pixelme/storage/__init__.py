"""Durable session artifact storage."""

from .repository import ArtifactKey, SessionStore

__all__ = ["ArtifactKey", "SessionStore"]
