from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import httpx

from veoflow.core.config import Settings, get_settings
from veoflow.domain.models import GenerationRequest, SigningIdentity
from veoflow.providers.video.base import OperationPoller
from veoflow.providers.video.vertex_veo import VeoOperationPoller, default_poll_config
from veoflow.services.artifacts import ArtifactResolver
from veoflow.services.auth.credentials import CredentialStore
from veoflow.services.auth.tokens import TokenMinter, default_token_config
from veoflow.services.generation import GenerationOrchestrator, ProgressSink
from veoflow.services.resilience import (
    BackoffController,
    ModelRateLimiter,
    default_backoff_config,
    default_rate_limit_config,
)


class VeoClient:
    """Owns the credential, token, rate-limit and backoff state for one caller.

    Independent clients never share caches. Use as an async context manager,
    or call :meth:`aclose` to release the HTTP connection pool.

    Usage:
        async with VeoClient() as client:
            client.load_service_account_file("service-account.json")
            uri = await client.generate(GenerationRequest(prompt="A fox in the snow"))
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: ModelRateLimiter | None = None,
        backoff: BackoffController | None = None,
        poller: OperationPoller | None = None,
        output_dir: str | Path | None = None,
    ) -> None:
        self._settings = settings = settings or get_settings()
        # Reuse a single client across token, Vertex and storage calls for connection pooling.
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.ext_call_timeout_ms / 1000.0
        )
        self.credentials = CredentialStore(default_token_uri=settings.default_token_uri)
        self.tokens = TokenMinter(
            self.credentials, self._http_client, config=default_token_config(settings)
        )
        self.rate_limiter = rate_limiter or ModelRateLimiter(config=default_rate_limit_config(settings))
        self.backoff = backoff or BackoffController(config=default_backoff_config(settings))
        self.poller = poller or VeoOperationPoller(
            self._http_client, config=default_poll_config(settings)
        )
        self.resolver = ArtifactResolver(
            self._http_client,
            output_dir=output_dir or settings.video_output_dir,
            storage_api_base=settings.gcs_api_base,
        )
        self.orchestrator = GenerationOrchestrator(
            credentials=self.credentials,
            tokens=self.tokens,
            rate_limiter=self.rate_limiter,
            backoff=self.backoff,
            poller=self.poller,
            resolver=self.resolver,
            settings=settings,
        )

    async def __aenter__(self) -> "VeoClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def set_credentials(self, identity: SigningIdentity) -> None:
        self.credentials.set_credentials(identity)

    def load_service_account(self, data: Mapping[str, Any]) -> SigningIdentity:
        return self.credentials.load_service_account(data)

    def load_service_account_file(self, path: str | Path) -> SigningIdentity:
        return self.credentials.load_service_account_file(path)

    def logout(self) -> None:
        self.credentials.clear()

    def get_tenant_id(self) -> str:
        return self.credentials.get_tenant_id()

    async def get_access_token(self) -> str:
        return await self.tokens.get_access_token()

    async def generate(self, request: GenerationRequest, on_progress: ProgressSink | None = None) -> str:
        return await self.orchestrator.generate(request, on_progress)
