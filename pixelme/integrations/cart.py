"""Client for the commerce collaborator's cart lookup."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class CartCheckError(RuntimeError):
    """Raised when the cart contents cannot be determined."""


class CartClient:
    """Answers whether a stored cart still holds line items."""

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def has_items(self, cart_id: str) -> bool:
        if not self._base_url:
            raise CartCheckError("Cart service URL is not configured.")
        try:
            response = await self._client.get(f"{self._base_url}/cart", params={"cartId": cart_id})
            response.raise_for_status()
            payload: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CartCheckError(f"Cart lookup failed: {exc}") from exc

        if not isinstance(payload, dict) or not payload.get("success"):
            raise CartCheckError("Cart service returned an unsuccessful response.")
        cart = payload.get("cart") or {}
        edges = ((cart.get("lines") or {}).get("edges")) or []
        logger.debug("Cart %s has %s line(s)", cart_id, len(edges))
        return len(edges) > 0

    async def ping(self) -> bool:
        """Return ``True`` when the cart service answers at all."""

        if not self._base_url:
            return False
        try:
            response = await self._client.get(f"{self._base_url}/cart")
        except httpx.HTTPError as exc:
            raise CartCheckError(f"Cart service is unreachable: {exc}") from exc
        return response.status_code < 500
