from __future__ import annotations

import logging
import re
import time
from pathlib import Path, PurePosixPath
from urllib.parse import quote
from uuid import uuid4

import httpx

from veoflow.core.config import get_settings
from veoflow.core.errors import (
    ArtifactMissingError,
    DownloadFailedError,
    OperationFailedError,
    QuotaExhaustedError,
)
from veoflow.domain.models import Operation
from veoflow.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_GCS_URI = re.compile(r"^gs://([^/]+)/(.+)$")
# google.rpc.Code.RESOURCE_EXHAUSTED
_RESOURCE_EXHAUSTED_CODE = 8


def is_storage_locator(locator: str) -> bool:
    return locator.startswith("gs://")


def extract_locator(operation: Operation) -> str | None:
    # First video wins: direct storage URI, else inline bytes as a data URI.
    videos = (operation.response or {}).get("videos")
    if not isinstance(videos, list) or not videos:
        return None
    first = videos[0]
    if not isinstance(first, dict):
        return None
    if first.get("gcsUri"):
        return str(first["gcsUri"])
    encoded = first.get("bytesBase64Encoded")
    if encoded:
        mime_type = first.get("mimeType") or "video/mp4"
        return f"data:{mime_type};base64,{encoded}"
    return None


def check_operation(operation: Operation) -> str:
    """Return the locator of a completed operation or raise why there is none.

    An embedded RESOURCE_EXHAUSTED error is reported as a quota error so the
    caller can fall back to another model.
    """
    if operation.error:
        code = operation.error.get("code")
        message = str(operation.error.get("message") or "operation failed")
        text = f"Operation {operation.name} failed (code {code}): {message}"
        if code == _RESOURCE_EXHAUSTED_CODE or "RESOURCE_EXHAUSTED" in message:
            raise QuotaExhaustedError(text, body=message)
        raise OperationFailedError(text, code=code if isinstance(code, int) else None)
    locator = extract_locator(operation)
    if locator is None:
        filtered = (operation.response or {}).get("raiMediaFilteredReasons")
        detail = f" Filtered: {'; '.join(map(str, filtered))}" if filtered else ""
        raise ArtifactMissingError(f"No video URI found in operation {operation.name}.{detail}")
    return locator


def parse_gcs_uri(locator: str) -> tuple[str, str]:
    match = _GCS_URI.match(locator)
    if match is None:
        raise DownloadFailedError(f"Invalid GCS URI format: {locator}")
    return match.group(1), match.group(2)


class ArtifactResolver:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        output_dir: str | Path | None = None,
        storage_api_base: str | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._output_dir = Path(output_dir or settings.video_output_dir)
        self._storage_api_base = (storage_api_base or settings.gcs_api_base).rstrip("/")

    def check_operation(self, operation: Operation) -> str:
        return check_operation(operation)

    def download_url(self, locator: str) -> str:
        bucket, object_path = parse_gcs_uri(locator)
        return f"{self._storage_api_base}/b/{bucket}/o/{quote(object_path, safe='')}?alt=media"

    async def resolve(self, locator: str, token: str) -> str:
        if not is_storage_locator(locator):
            return locator
        _, object_path = parse_gcs_uri(locator)
        url = self.download_url(locator)
        start = time.monotonic()
        try:
            response = await self._client.get(url, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as exc:
            record_external_call(
                integration="gcs.download",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise DownloadFailedError(f"Failed to download video artifact: {exc}") from exc
        record_external_call(
            integration="gcs.download",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.is_success,
        )
        if not response.is_success:
            raise DownloadFailedError(
                f"Failed to download video artifact: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
            )

        suffix = PurePosixPath(object_path).suffix or ".mp4"
        path = self._output_dir / f"{uuid4()}{suffix}"
        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(response.content)
        except OSError as exc:
            if path.exists():
                path.unlink()
            logger.warning("artifact_write_failed locator=%s path=%s", locator, path)
            raise DownloadFailedError(f"Failed to save video artifact to {path}: {exc}") from exc
        increment_counter("gcs_downloads_total")
        logger.info(
            "artifact_downloaded locator=%s path=%s bytes=%s", locator, path, len(response.content)
        )
        return path.resolve().as_uri()
