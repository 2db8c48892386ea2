"""Async wrapper around the Replicate prediction endpoints."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import random
from typing import Any, Mapping

import httpx
from pydantic import BaseModel, ValidationError

from pixelme.config.settings import Settings
from pixelme.errors import ServiceFailureKind, ServiceRequestError

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})



class PredictionUrls(BaseModel):
    get: str | None = None


class Prediction(BaseModel):
    """Subset of the prediction payload the editor relies on."""

    id: str | None = None
    status: str = "starting"
    output: Any = None
    error: Any = None
    urls: PredictionUrls | None = None

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def output_url(self) -> str | None:
        output = self.output
        if isinstance(output, list):
            output = output[0] if output else None
        return output if isinstance(output, str) and output else None


class ReplicateClient:
    """Provides helper methods for the background, fill, erase and restyle models."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.replicate_base_url.rstrip("/"),
            timeout=settings.request_timeout,
            headers={
                "Authorization": f"Bearer {settings.replicate_api_token}",
            },
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""

        await self._client.aclose()

    async def _request_json(
        self,
        method: str,
        endpoint: str,
        *,
        json_body: Mapping[str, Any] | None = None,
        files: Mapping[str, tuple[str, bytes, str]] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                endpoint,
                json=json_body,
                files=files,
                headers=headers,
            )
            response.raise_for_status()
            if not response.content:
                return {}
            payload = response.json()
        except httpx.TimeoutException as exc:
            raise ServiceRequestError(
                "The image service did not answer in time. Please try again.",
                kind=ServiceFailureKind.TIMEOUT,
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ServiceRequestError(
                f"Image service returned {exc.response.status_code}: {self._error_detail(exc.response)}",
                kind=ServiceFailureKind.DECLINED,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ServiceRequestError(
                f"Could not reach the image service: {exc}",
                kind=ServiceFailureKind.NETWORK,
            ) from exc
        except ValueError as exc:
            raise ServiceRequestError(
                "Image service returned a response that is not JSON.",
                kind=ServiceFailureKind.MALFORMED,
            ) from exc

        if not isinstance(payload, dict):
            raise ServiceRequestError("Unexpected response shape from the image service.", kind=ServiceFailureKind.MALFORMED)
        return payload

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or "Unknown error"
        if isinstance(body, Mapping):
            return str(body.get("detail") or body.get("title") or body.get("error") or "Unknown error")
        return str(body)

    async def upload_file(self, data_uri: str, filename: str) -> str:
        """Upload a data URI through the files API and return its serving URL."""

        header, _, encoded = data_uri.partition(",")
        mime_type = header[5:].split(";", 1)[0] if header.startswith("data:") else "image/png"
        try:
            content = base64.b64decode(encoded, validate=True)
        except (ValueError, binascii.Error) as exc:
            raise ServiceRequestError(f"{filename} is not valid base64 image data.", kind=ServiceFailureKind.MALFORMED) from exc

        result = await self._request_json(
            "POST",
            "/files",
            files={"content": (filename, content, mime_type or "image/png")},
        )
        url = (result.get("urls") or {}).get("get")
        if not url:
            raise ServiceRequestError(f"Upload of {filename} returned no URL.", kind=ServiceFailureKind.MALFORMED)
        logger.info("Uploaded %s to %s", filename, url)
        return url

    async def run_version(self, version: str, model_input: Mapping[str, Any]) -> str:
        """Run a pinned model version and return the output image URL."""

        payload = await self._request_json(
            "POST",
            "/predictions",
            json_body={"version": version, "input": dict(model_input)},
            headers={"Prefer": "wait"},
        )
        return await self._resolve(payload)

    async def run_model(self, model: str, model_input: Mapping[str, Any]) -> str:
        """Run the latest version of an official model and return the output URL."""

        payload = await self._request_json(
            "POST",
            f"/models/{model}/predictions",
            json_body={"input": dict(model_input)},
        )
        return await self._resolve(payload)

    async def _resolve(self, payload: Mapping[str, Any]) -> str:
        prediction = self._parse(payload)
        attempts = 0
        while not prediction.finished:
            if attempts >= self._settings.max_poll_attempts:
                raise ServiceRequestError(
                    "The image service is still working. Please try again shortly.",
                    kind=ServiceFailureKind.TIMEOUT,
                )
            poll_url = (prediction.urls.get if prediction.urls else None) or (
                f"/predictions/{prediction.id}" if prediction.id else None
            )
            if poll_url is None:
                raise ServiceRequestError("Prediction cannot be polled.", kind=ServiceFailureKind.MALFORMED)
            await asyncio.sleep(self._settings.poll_interval)
            prediction = self._parse(await self._request_json("GET", poll_url))
            attempts += 1
            logger.debug("Prediction %s status check %s: %s", prediction.id, attempts, prediction.status)

        if prediction.status != "succeeded" or prediction.error:
            raise ServiceRequestError(
                f"The image service declined the request: {prediction.error or prediction.status}",
                kind=ServiceFailureKind.DECLINED,
            )
        url = prediction.output_url()
        if url is None:
            logger.warning("Prediction %s finished without an output: %s", prediction.id, prediction.output)
            raise ServiceRequestError("The image service returned no image.", kind=ServiceFailureKind.MALFORMED)
        return url

    @staticmethod
    def _parse(payload: Mapping[str, Any]) -> Prediction:
        try:
            return Prediction.model_validate(payload)
        except ValidationError as exc:
            raise ServiceRequestError("Unexpected prediction payload.", kind=ServiceFailureKind.MALFORMED) from exc

    async def remove_background(self, image_uri: str) -> str:
        """Isolate the subject; the result usually carries transparency."""

        return await self.run_version(self._settings.background_remover_version, {"image": image_uri})

    async def fill(self, image_uri: str, mask_uri: str, prompt: str) -> str:
        """Remove the masked region and fill it following ``prompt``."""

        image_url, mask_url = await asyncio.gather(
            self.upload_file(image_uri, "image.jpg"),
            self.upload_file(mask_uri, "mask.png"),
        )
        return await self.run_model(
            self._settings.fill_model,
            {
                "image": image_url,
                "mask": mask_url,
                "prompt": prompt,
                "safety_checker": False,
                "seed": random.randint(0, 999_999),
                "output_format": "png",
                "output_quality": 90,
                "num_inference_steps": 30,
                "guidance_scale": 3.5,
            },
        )

    async def remove_objects(self, image_uri: str, mask_uri: str) -> str:
        """Erase the masked objects without generative guidance."""

        image_url, mask_url = await asyncio.gather(
            self.upload_file(image_uri, "image.jpg"),
            self.upload_file(mask_uri, "mask.png"),
        )
        return await self.run_version(self._settings.object_remover_version, {"image": image_url, "mask": mask_url})

    async def restyle(self, image_uri: str, prompt: str, **options: Any) -> str:
        """Apply an instruction-driven edit (style conversion, palette reduction)."""

        model_input: dict[str, Any] = {
            "input_image": image_uri,
            "prompt": prompt,
            "output_format": "png",
            "output_quality": 90,
        }
        model_input.update(options)
        return await self.run_model(self._settings.kontext_model, model_input)

    async def ping(self) -> bool:
        """Return ``True`` when the account endpoint answers."""

        payload = await self._request_json("GET", "/account")
        return bool(payload)
