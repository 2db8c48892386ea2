"""Integration check helpers and collaborator clients."""

from .checks import (
    IntegrationCheckResult,
    check_cart,
    check_replicate,
    run_all_checks,
)

__all__ = [
    "IntegrationCheckResult",
    "check_cart",
    "check_replicate",
    "run_all_checks",
]
