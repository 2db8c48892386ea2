"""Connectivity checks for the image service and the cart collaborator."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from pixelme.api.replicate_client import ReplicateClient
from pixelme.config.settings import get_settings
from pixelme.errors import ServiceRequestError
from pixelme.integrations.cart import CartCheckError, CartClient


@dataclass(slots=True)
class IntegrationCheckResult:
    """Structured result describing the integration check outcome."""

    name: str
    success: bool
    message: str


async def _run_check(
    name: str,
    factory: Callable[[], Awaitable[bool]],
    success_message: str,
) -> IntegrationCheckResult:
    try:
        result = await factory()
    except (ServiceRequestError, CartCheckError) as exc:
        return IntegrationCheckResult(name=name, success=False, message=str(exc))

    if result:
        return IntegrationCheckResult(name=name, success=True, message=success_message)
    return IntegrationCheckResult(
        name=name,
        success=False,
        message="Service responded with non-success status.",
    )


async def check_replicate() -> IntegrationCheckResult:
    """Ping the image service account endpoint."""

    client = ReplicateClient(get_settings())

    async def _ping() -> bool:
        try:
            return await client.ping()
        finally:
            await client.close()

    return await _run_check(
        name="Replicate",
        factory=_ping,
        success_message="Replicate API is reachable.",
    )


async def check_cart() -> IntegrationCheckResult:
    """Ping the cart collaborator."""

    client = CartClient(get_settings().cart_api_url)

    async def _ping() -> bool:
        try:
            return await client.ping()
        finally:
            await client.close()

    return await _run_check(
        name="Cart",
        factory=_ping,
        success_message="Cart service is reachable.",
    )


async def run_all_checks() -> list[IntegrationCheckResult]:
    """Execute all integration checks concurrently."""

    return list(await asyncio.gather(check_replicate(), check_cart()))
