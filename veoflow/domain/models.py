from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class AspectRatio(str, Enum):
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"


class Resolution(str, Enum):
    HD = "720p"
    FHD = "1080p"


class GenerationPhase(str, Enum):
    AUTHENTICATING = "authenticating"
    SELECTING_CANDIDATE = "selecting_candidate"
    SUBMITTING = "submitting"
    POLLING = "polling"
    RESOLVING = "resolving"
    BACKOFF = "backoff"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class SigningIdentity:
    project_id: str
    private_key_id: str
    # Excluded from repr to keep key material out of logs and tracebacks.
    private_key: str = field(repr=False)
    client_email: str
    token_uri: str

    @classmethod
    def from_service_account(
        cls, data: Mapping[str, Any], *, default_token_uri: str = "https://oauth2.googleapis.com/token"
    ) -> "SigningIdentity":
        # Key files pasted through env vars often carry literal "\n" sequences.
        private_key = str(data.get("private_key") or "").replace("\\n", "\n")
        return cls(
            project_id=str(data.get("project_id") or ""),
            private_key_id=str(data.get("private_key_id") or ""),
            private_key=private_key,
            client_email=str(data.get("client_email") or ""),
            token_uri=str(data.get("token_uri") or default_token_uri),
        )


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires_at: float

    def is_fresh(self, now: float, margin_s: float) -> bool:
        return now < self.expires_at - margin_s


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    resolution: Resolution = Resolution.HD
    model: str = "veo-3.1-fast-generate-001"
    sample_count: int | None = None
    storage_uri: str | None = None


@dataclass(frozen=True)
class Operation:
    name: str
    done: bool
    response: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, name: str = "") -> "Operation":
        response = payload.get("response")
        error = payload.get("error")
        return cls(
            name=str(payload.get("name") or name),
            done=bool(payload.get("done")),
            response=response if isinstance(response, dict) else None,
            error=error if isinstance(error, dict) else None,
        )


@dataclass(frozen=True)
class ProgressEvent:
    phase: GenerationPhase
    message: str
    model: str | None = None
    candidate_index: int | None = None
    candidate_total: int | None = None


@dataclass
class HistoryEntry:
    # Built by callers per generation attempt; storing it is the caller's concern.
    prompt: str
    aspect_ratio: AspectRatio
    resolution: Resolution
    model: str
    video_uri: str | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_request(
        cls,
        request: GenerationRequest,
        *,
        video_uri: str | None = None,
        error: str | None = None,
    ) -> "HistoryEntry":
        return cls(
            prompt=request.prompt,
            aspect_ratio=request.aspect_ratio,
            resolution=request.resolution,
            model=request.model,
            video_uri=video_uri,
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "aspect_ratio": self.aspect_ratio.value,
            "resolution": self.resolution.value,
            "model": self.model,
            "video_uri": self.video_uri,
            "error": self.error,
            "created_at": self.created_at,
        }
