from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from veoflow.core.config import Settings, get_settings
from veoflow.core.errors import (
    OperationTimeoutError,
    PollFailedError,
    QuotaExhaustedError,
    SubmissionFailedError,
)
from veoflow.domain.models import AspectRatio, GenerationRequest, Operation, Resolution
from veoflow.services.telemetry import increment_counter, record_external_call

logger = logging.getLogger(__name__)

_RESOLUTION_TOKENS = {
    Resolution.HD: "720p",
    Resolution.FHD: "1080p",
}
_QUOTA_MARKER = "RESOURCE_EXHAUSTED"


def is_quota_signature(status: int | None, body: str) -> bool:
    return status == 429 or _QUOTA_MARKER in (body or "")


def map_resolution(resolution: Resolution | None) -> str | None:
    if resolution is None:
        return None
    return _RESOLUTION_TOKENS.get(Resolution(resolution))


def clamp_sample_count(sample_count: int | None) -> int:
    if not isinstance(sample_count, int):
        return 1
    return max(1, min(2, sample_count))


def build_predict_payload(request: GenerationRequest) -> dict[str, Any]:
    parameters: dict[str, Any] = {
        "aspectRatio": AspectRatio(request.aspect_ratio).value,
        "sampleCount": clamp_sample_count(request.sample_count),
    }
    resolution = map_resolution(request.resolution)
    if resolution is not None:
        parameters["resolution"] = resolution
    if request.storage_uri:
        parameters["storageUri"] = request.storage_uri
    return {"instances": [{"prompt": request.prompt}], "parameters": parameters}


def model_endpoint(
    *,
    project_id: str,
    model_id: str,
    location: str | None = None,
    host_template: str | None = None,
) -> str:
    # Publisher model resource; predict/fetch verbs are appended by the poller.
    settings = get_settings()
    location = location or settings.veo_location
    host = (host_template or settings.veo_api_host_template).format(location=location)
    return (
        f"{host}/v1/projects/{project_id}/locations/{location}"
        f"/publishers/google/models/{model_id}"
    )


@dataclass(frozen=True)
class PollConfig:
    initial_ms: int
    step_ms: int
    max_ms: int
    timeout_s: float


def default_poll_config(settings: Settings | None = None) -> PollConfig:
    settings = settings or get_settings()
    return PollConfig(
        initial_ms=settings.veo_poll_initial_ms,
        step_ms=settings.veo_poll_step_ms,
        max_ms=settings.veo_poll_max_ms,
        timeout_s=settings.veo_poll_timeout_s,
    )


class VeoOperationPoller:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        config: PollConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._client = client
        self._config = config or default_poll_config()
        self._sleep = sleep or asyncio.sleep
        self._time = time_source or time.monotonic

    def poll_interval_ms(self, attempt: int) -> int:
        return min(self._config.initial_ms + attempt * self._config.step_ms, self._config.max_ms)

    async def _post(
        self,
        url: str,
        token: str,
        payload: dict[str, Any],
        *,
        integration: str,
        error_cls: type[SubmissionFailedError],
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"}
        start = time.monotonic()
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            record_external_call(
                integration=integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise error_cls(f"Vertex AI request failed: {exc}") from exc

        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.is_success,
        )
        if not response.is_success:
            body = response.text
            message = f"Vertex AI Error ({response.status_code}): {body}"
            if is_quota_signature(response.status_code, body):
                increment_counter("vertex_quota_exhausted_total")
                raise QuotaExhaustedError(message, status=response.status_code, body=body)
            raise error_cls(message, status=response.status_code, body=body)
        try:
            data = response.json()
        except ValueError as exc:
            raise error_cls(
                "Vertex AI returned a non-JSON response.",
                status=response.status_code,
                body=response.text,
            ) from exc
        if not isinstance(data, dict):
            raise error_cls(
                "Vertex AI returned an unexpected response.",
                status=response.status_code,
                body=response.text,
            )
        return data

    async def submit(self, endpoint: str, token: str, request: GenerationRequest) -> str:
        payload = build_predict_payload(request)
        logger.info(
            "veo_submit endpoint=%s aspect_ratio=%s sample_count=%s",
            endpoint,
            payload["parameters"]["aspectRatio"],
            payload["parameters"]["sampleCount"],
        )
        data = await self._post(
            f"{endpoint}:predictLongRunning",
            token,
            payload,
            integration="vertex.veo.predict",
            error_cls=SubmissionFailedError,
        )
        name = data.get("name")
        if not name:
            raise SubmissionFailedError("Operation name missing from the response.", body=str(data))
        increment_counter("veo_submissions_total")
        return str(name)

    async def poll(self, endpoint: str, token: str, operation_name: str) -> Operation:
        url = f"{endpoint}:fetchPredictOperation"
        deadline = self._time() + self._config.timeout_s if self._config.timeout_s > 0 else None
        attempt = 0
        while True:
            data = await self._post(
                url,
                token,
                {"operationName": operation_name},
                integration="vertex.veo.fetch",
                error_cls=PollFailedError,
            )
            if data.get("done"):
                operation = Operation.from_payload(data, name=operation_name)
                logger.info(
                    "veo_operation_done operation=%s attempts=%s error=%s",
                    operation_name,
                    attempt + 1,
                    bool(operation.error),
                )
                return operation
            if deadline is not None and self._time() >= deadline:
                raise OperationTimeoutError(
                    f"Operation {operation_name} did not complete within {self._config.timeout_s}s."
                )
            interval_ms = self.poll_interval_ms(attempt)
            attempt += 1
            await self._sleep(interval_ms / 1000.0)
