from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, Field, ValidationError

from veoflow.core.config import Settings, get_settings
from veoflow.core.errors import AuthenticationFailedError, NotAuthenticatedError
from veoflow.domain.models import CachedToken, SigningIdentity
from veoflow.services.auth.credentials import CredentialStore
from veoflow.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
# Token endpoint error bodies are surfaced to callers, but only up to this length.
_MAX_ERROR_BODY = 500


class TokenResponse(BaseModel):
    # OAuth 2.0 token endpoint success body; unknown fields are ignored.
    access_token: str = Field(min_length=1)
    expires_in: float = Field(gt=0)
    token_type: str = "Bearer"


@dataclass(frozen=True)
class TokenConfig:
    refresh_margin_s: int
    lifetime_s: int
    scope: str


def default_token_config(settings: Settings | None = None) -> TokenConfig:
    settings = settings or get_settings()
    return TokenConfig(
        refresh_margin_s=settings.token_refresh_margin_s,
        lifetime_s=settings.token_lifetime_s,
        scope=settings.token_scope,
    )


def _load_signing_key(pem: str) -> rsa.RSAPrivateKey:
    # Never echo the PEM or the parser message; both may carry key material.
    try:
        key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise AuthenticationFailedError(
            "Failed to authenticate with service account: private key is not a valid PEM key."
        ) from None
    if not isinstance(key, rsa.RSAPrivateKey):
        raise AuthenticationFailedError(
            "Failed to authenticate with service account: private key must be an RSA key."
        )
    return key


def build_assertion(identity: SigningIdentity, *, scope: str, lifetime_s: int, now: int) -> str:
    """Sign an RS256 JWT-bearer assertion for ``identity``.

    The header carries ``kid`` so the token endpoint can select the matching
    public key; the claim set is audience-bound to the identity's token URI.
    """
    key = _load_signing_key(identity.private_key)
    claims = {
        "iss": identity.client_email,
        "scope": scope,
        "aud": identity.token_uri,
        "iat": now,
        "exp": now + lifetime_s,
    }
    headers: dict[str, Any] = {"typ": "JWT"}
    if identity.private_key_id:
        headers["kid"] = identity.private_key_id
    try:
        return jwt.encode(claims, key, algorithm="RS256", headers=headers)
    except (jwt.PyJWTError, ValueError, TypeError):
        raise AuthenticationFailedError(
            "Failed to authenticate with service account: assertion signing failed."
        ) from None


class TokenMinter:
    def __init__(
        self,
        store: CredentialStore,
        client: httpx.AsyncClient,
        *,
        config: TokenConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._config = config or default_token_config()
        self._time = time_source or time.time
        self._cached: CachedToken | None = None
        # Bumped on every invalidation so in-flight mints for a stale identity are not cached.
        self._generation = 0
        store.subscribe(self.invalidate)

    @property
    def cached_token(self) -> CachedToken | None:
        return self._cached

    def invalidate(self) -> None:
        self._cached = None
        self._generation += 1

    async def get_access_token(self) -> str:
        cached = self._cached
        if cached is not None and cached.is_fresh(self._time(), self._config.refresh_margin_s):
            return cached.access_token
        try:
            identity = self._store.identity()
        except NotAuthenticatedError as exc:
            raise AuthenticationFailedError(
                "No credentials loaded. Load a service account key first."
            ) from exc
        generation = self._generation
        token = await self._mint(identity)
        if generation == self._generation:
            self._cached = token
        else:
            logger.info("token_cache_skipped reason=identity_changed")
        return token.access_token

    async def _mint(self, identity: SigningIdentity) -> CachedToken:
        now = int(self._time())
        assertion = build_assertion(
            identity,
            scope=self._config.scope,
            lifetime_s=self._config.lifetime_s,
            now=now,
        )
        start = time.monotonic()
        try:
            response = await self._client.post(
                identity.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration="oauth.token",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise AuthenticationFailedError(f"Token exchange request failed: {exc}") from exc

        success = response.is_success
        record_external_call(
            integration="oauth.token",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if not success:
            increment_counter("token_mint_failures_total")
            logger.warning(
                "token_exchange_failed status=%s client_email=%s",
                response.status_code,
                identity.client_email,
            )
            raise AuthenticationFailedError(
                f"Auth failed ({response.status_code}): {response.text[:_MAX_ERROR_BODY]}"
            )

        try:
            payload = TokenResponse.model_validate_json(response.content)
        except ValidationError:
            raise AuthenticationFailedError("Token endpoint returned an unexpected payload.") from None
        access_token = payload.access_token
        expires_in = payload.expires_in

        increment_counter("token_mint_total")
        logger.info(
            "token_minted client_email=%s expires_in=%s", identity.client_email, int(expires_in)
        )
        # Expiry is anchored to mint time, not response time, so it errs early.
        return CachedToken(access_token=access_token, expires_at=now + expires_in)
