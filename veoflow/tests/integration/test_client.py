from __future__ import annotations

import json
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx
import pytest

from veoflow.client import VeoClient
from veoflow.core.config import Settings
from veoflow.core.errors import NotAuthenticatedError
from veoflow.domain.models import GenerationPhase, GenerationRequest, ProgressEvent
from veoflow.services.telemetry import external_call_summary, get_counters


MODEL = "veo-3.1-fast-generate-001"
FALLBACK = "veo-3.0-generate-001"


def _settings(tmp_path) -> Settings:
    return Settings(
        veo_model_order=f"{MODEL},{FALLBACK}",
        veo_poll_initial_ms=1,
        veo_poll_step_ms=0,
        veo_poll_max_ms=1,
        veo_backoff_initial_ms=1,
        veo_backoff_max_ms=2,
        video_output_dir=str(tmp_path),
    )


class _VertexBackend:
    # Token endpoint, Veo predict/fetch verbs and Cloud Storage behind one transport.
    def __init__(self, *, quota_models: tuple[str, ...] = (), pending_polls: int = 1) -> None:
        self.quota_models = quota_models
        self.pending_polls = pending_polls
        self.calls: list[str] = []
        self.fetches = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if request.url.host == "oauth2.example.test":
            self.calls.append("token")
            return httpx.Response(200, json={"access_token": "ya29.test", "expires_in": 3600})
        if url.endswith(":predictLongRunning"):
            model_id = url.rsplit("/", 1)[-1].split(":", 1)[0]
            self.calls.append(f"predict:{model_id}")
            assert request.headers["authorization"] == "Bearer ya29.test"
            if model_id in self.quota_models:
                return httpx.Response(429, json={"error": {"status": "RESOURCE_EXHAUSTED"}})
            return httpx.Response(200, json={"name": f"operations/{model_id}"})
        if url.endswith(":fetchPredictOperation"):
            self.fetches += 1
            self.calls.append("fetch")
            name = json.loads(request.content)["operationName"]
            if self.fetches <= self.pending_polls:
                return httpx.Response(200, json={"name": name, "done": False})
            return httpx.Response(
                200,
                json={
                    "name": name,
                    "done": True,
                    "response": {"videos": [{"gcsUri": "gs://veo-out/run/sample_0.mp4"}]},
                },
            )
        if request.url.host == "storage.googleapis.com":
            self.calls.append("download")
            return httpx.Response(200, content=b"\x00\x00\x00\x18ftypmp42")
        raise AssertionError(f"unexpected request {request.method} {url}")


def _client(tmp_path, backend: _VertexBackend) -> VeoClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return VeoClient(settings=_settings(tmp_path), http_client=http_client)


@pytest.mark.asyncio
async def test_generate_end_to_end_downloads_video(tmp_path, identity) -> None:
    backend = _VertexBackend()
    events: list[ProgressEvent] = []

    async with _client(tmp_path, backend) as client:
        client.set_credentials(identity)
        request = GenerationRequest(prompt="A fox in the snow", model=MODEL)
        result = await client.generate(request, events.append)

    assert backend.calls == ["token", f"predict:{MODEL}", "fetch", "fetch", "download"]
    path = Path(url2pathname(urlparse(result).path))
    assert path.parent == tmp_path.resolve()
    assert path.read_bytes().startswith(b"\x00\x00\x00\x18ftyp")
    phases = [event.phase for event in events]
    assert phases[0] == GenerationPhase.AUTHENTICATING
    assert GenerationPhase.POLLING in phases
    assert GenerationPhase.RESOLVING in phases
    assert phases[-1] == GenerationPhase.DONE

    summary = external_call_summary(window_s=60)
    assert summary["vertex.veo.predict"]["calls"] == 1
    assert summary["vertex.veo.fetch"]["calls"] == 2
    assert summary["gcs.download"]["calls"] == 1


@pytest.mark.asyncio
async def test_generate_falls_back_when_preferred_model_is_exhausted(tmp_path, identity) -> None:
    backend = _VertexBackend(quota_models=(MODEL,), pending_polls=0)

    async with _client(tmp_path, backend) as client:
        client.set_credentials(identity)
        result = await client.generate(GenerationRequest(prompt="p", model=MODEL))

    assert result.startswith("file://")
    assert backend.calls == ["token", f"predict:{MODEL}", f"predict:{FALLBACK}", "fetch", "download"]
    assert client.backoff.current_ms == 2
    assert get_counters()["veo_model_fallback_total"] == 1


@pytest.mark.asyncio
async def test_clients_do_not_share_state(tmp_path, identity) -> None:
    first_backend = _VertexBackend()
    second_backend = _VertexBackend()

    async with _client(tmp_path, first_backend) as first, _client(tmp_path, second_backend) as second:
        first.set_credentials(identity)
        await first.get_access_token()

        assert second.credentials.is_authenticated is False
        assert second.tokens.cached_token is None
        with pytest.raises(NotAuthenticatedError):
            second.get_tenant_id()
        assert first.rate_limiter is not second.rate_limiter
        assert first.backoff is not second.backoff

    assert second_backend.calls == []


@pytest.mark.asyncio
async def test_logout_forgets_identity_and_token(tmp_path, identity) -> None:
    backend = _VertexBackend()

    async with _client(tmp_path, backend) as client:
        client.set_credentials(identity)
        assert client.get_tenant_id() == "demo-project"
        await client.get_access_token()
        assert client.tokens.cached_token is not None

        client.logout()

        assert client.tokens.cached_token is None
        with pytest.raises(NotAuthenticatedError):
            client.get_tenant_id()


@pytest.mark.asyncio
async def test_load_service_account_file(tmp_path, private_key_pem) -> None:
    key_file = tmp_path / "service-account.json"
    key_file.write_text(
        json.dumps(
            {
                "type": "service_account",
                "project_id": "file-project",
                "private_key_id": "key-9",
                "private_key": private_key_pem.replace("\n", "\\n"),
                "client_email": "runner@file-project.iam.gserviceaccount.com",
            }
        ),
        encoding="utf-8",
    )

    async with _client(tmp_path, _VertexBackend()) as client:
        identity = client.load_service_account_file(key_file)

    assert identity.project_id == "file-project"
    assert identity.token_uri == "https://oauth2.googleapis.com/token"
    assert identity.private_key == private_key_pem
    assert client.get_tenant_id() == "file-project"
