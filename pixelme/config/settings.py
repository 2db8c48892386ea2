"""Settings loader for the PixelMe editing core."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _load_env_file(path: str = ".env") -> None:
    """Populate environment variables from a .env file if present."""

    env_path = Path(path)
    if not env_path.exists():
        return

    for line in env_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


@dataclass(slots=True, frozen=True)
class Settings:
    """Configuration for the upload, editing and pipeline services."""

    environment: str = "dev"
    log_level: str = "INFO"

    replicate_api_token: str = ""
    replicate_base_url: str = "https://api.replicate.com/v1"
    background_remover_version: str = "a029dff38972b5fda4ec5d75d7d1cd25aeff621d2cf4946a41055d7db66b80bc"
    object_remover_version: str = "0e3a841c913f597c1e4c321560aa69e2bc1f15c65f8c366caafc379240efd8ba"
    fill_model: str = "black-forest-labs/flux-fill-pro"
    kontext_model: str = "black-forest-labs/flux-kontext-pro"
    request_timeout: float = 120.0
    poll_interval: float = 2.0
    max_poll_attempts: int = 60

    storage_root: str = "storage/sessions"
    max_upload_dimension: int = 1024
    compression_threshold_bytes: int = 2 * 1024 * 1024
    brush_size: int = 20

    rate_limit_max: int = 5
    rate_limit_window: float = 3600.0

    cart_api_url: str = ""


def _build_settings() -> Settings:
    _load_env_file()
    return Settings(
        environment=os.getenv("ENVIRONMENT", "dev"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        replicate_api_token=os.getenv("REPLICATE_API_TOKEN", ""),
        replicate_base_url=os.getenv("REPLICATE_BASE_URL", "https://api.replicate.com/v1"),
        background_remover_version=os.getenv(
            "PIXELME_BACKGROUND_REMOVER_VERSION",
            "a029dff38972b5fda4ec5d75d7d1cd25aeff621d2cf4946a41055d7db66b80bc",
        ),
        object_remover_version=os.getenv(
            "PIXELME_OBJECT_REMOVER_VERSION",
            "0e3a841c913f597c1e4c321560aa69e2bc1f15c65f8c366caafc379240efd8ba",
        ),
        fill_model=os.getenv("PIXELME_FILL_MODEL", "black-forest-labs/flux-fill-pro"),
        kontext_model=os.getenv("PIXELME_KONTEXT_MODEL", "black-forest-labs/flux-kontext-pro"),
        request_timeout=float(os.getenv("PIXELME_REQUEST_TIMEOUT", "120")),
        poll_interval=float(os.getenv("PIXELME_POLL_INTERVAL", "2")),
        max_poll_attempts=int(os.getenv("PIXELME_MAX_POLL_ATTEMPTS", "60")),
        storage_root=os.getenv("PIXELME_STORAGE_ROOT", "storage/sessions"),
        max_upload_dimension=int(os.getenv("PIXELME_MAX_UPLOAD_DIMENSION", "1024")),
        compression_threshold_bytes=int(os.getenv("PIXELME_COMPRESSION_THRESHOLD", str(2 * 1024 * 1024))),
        brush_size=int(os.getenv("PIXELME_BRUSH_SIZE", "20")),
        rate_limit_max=int(os.getenv("PIXELME_RATE_LIMIT_MAX", "5")),
        rate_limit_window=float(os.getenv("PIXELME_RATE_LIMIT_WINDOW", "3600")),
        cart_api_url=os.getenv("PIXELME_CART_API_URL", ""),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""

    return _build_settings()
