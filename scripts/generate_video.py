from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from veoflow.client import VeoClient
from veoflow.core.config import get_settings
from veoflow.core.errors import (
    AllCandidatesFailedError,
    ArtifactMissingError,
    AuthenticationFailedError,
    DownloadFailedError,
    InvalidCredentialsError,
    NotAuthenticatedError,
    OperationFailedError,
    QuotaExhaustedError,
    SubmissionFailedError,
)
from veoflow.domain.models import (
    AspectRatio,
    GenerationRequest,
    HistoryEntry,
    ProgressEvent,
    Resolution,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate a video with Vertex AI Veo.")
    parser.add_argument("--credentials", required=True, help="Path to a service account JSON key")
    parser.add_argument("--prompt", required=True, help="Text prompt")
    parser.add_argument(
        "--aspect-ratio",
        choices=[item.value for item in AspectRatio],
        default=AspectRatio.LANDSCAPE.value,
    )
    parser.add_argument(
        "--resolution",
        choices=[item.value for item in Resolution],
        default=Resolution.HD.value,
    )
    parser.add_argument("--model", default="veo-3.1-fast-generate-001", help="Preferred model id")
    parser.add_argument("--count", type=int, default=None, help="Number of samples (1-2)")
    parser.add_argument("--storage-uri", default=None, help="gs:// prefix for generated videos")
    parser.add_argument("--output-dir", default=None, help="Directory for downloaded videos")
    parser.add_argument("--history-file", default=None, help="Append a JSON history line here")
    return parser


def _format_error(exc: Exception) -> tuple[int, str]:
    # Map known generation failures to stable, actionable messages.
    if isinstance(exc, (InvalidCredentialsError, NotAuthenticatedError)):
        return 2, f"CREDENTIALS_INVALID: {exc}"
    if isinstance(exc, AuthenticationFailedError):
        return 3, f"AUTHENTICATION_FAILED: {exc}"
    if isinstance(exc, QuotaExhaustedError):
        return 4, f"QUOTA_EXHAUSTED: {exc}"
    if isinstance(exc, SubmissionFailedError):
        return 5, f"VERTEX_REQUEST_FAILED: {exc}"
    if isinstance(exc, (OperationFailedError, ArtifactMissingError)):
        return 6, f"GENERATION_FAILED: {exc}"
    if isinstance(exc, DownloadFailedError):
        return 7, f"DOWNLOAD_FAILED: {exc}"
    if isinstance(exc, AllCandidatesFailedError):
        return 8, f"ALL_MODELS_FAILED: {exc}"
    return 1, f"UNKNOWN_ERROR: {exc}"


def _print_progress(event: ProgressEvent) -> None:
    print(f"[{event.phase.value}] {event.message}", file=sys.stderr)


def _append_history(path: str, entry: HistoryEntry) -> None:
    with Path(path).open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry.to_dict()) + "\n")


async def _run(args: argparse.Namespace) -> int:
    request = GenerationRequest(
        prompt=args.prompt,
        aspect_ratio=AspectRatio(args.aspect_ratio),
        resolution=Resolution(args.resolution),
        model=args.model,
        sample_count=args.count,
        storage_uri=args.storage_uri,
    )
    async with VeoClient(output_dir=args.output_dir) as client:
        client.load_service_account_file(args.credentials)
        try:
            uri = await client.generate(request, on_progress=_print_progress)
        except Exception as exc:
            if args.history_file:
                _append_history(args.history_file, HistoryEntry.from_request(request, error=str(exc)))
            raise
    if args.history_file:
        _append_history(args.history_file, HistoryEntry.from_request(request, video_uri=uri))
    print(uri)
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=get_settings().log_level)
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface actionable errors
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
