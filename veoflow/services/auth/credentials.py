from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Mapping

from veoflow.core.config import get_settings
from veoflow.core.errors import InvalidCredentialsError, NotAuthenticatedError
from veoflow.domain.models import SigningIdentity


logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("private_key", "client_email", "project_id")


class CredentialStore:
    """Holds the single service-account identity used to mint bearer tokens.

    Listeners registered with :meth:`subscribe` are called whenever the identity
    is replaced or cleared so dependent caches (the token minter) can drop
    state minted for the previous identity.
    """

    def __init__(self, *, default_token_uri: str | None = None) -> None:
        self._default_token_uri = default_token_uri or get_settings().default_token_uri
        self._identity: SigningIdentity | None = None
        self._listeners: list[Callable[[], None]] = []

    def subscribe(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in self._listeners:
            listener()

    def set_credentials(self, identity: SigningIdentity) -> None:
        missing = [name for name in _REQUIRED_FIELDS if not getattr(identity, name, None)]
        if missing:
            raise InvalidCredentialsError(
                f"Invalid service account: missing required fields ({', '.join(missing)})."
            )
        self._identity = identity
        logger.info(
            "credentials_loaded project_id=%s client_email=%s key_id=%s",
            identity.project_id,
            identity.client_email,
            identity.private_key_id,
        )
        self._notify()

    def load_service_account(self, data: Mapping[str, Any]) -> SigningIdentity:
        identity = SigningIdentity.from_service_account(data, default_token_uri=self._default_token_uri)
        self.set_credentials(identity)
        return identity

    def load_service_account_file(self, path: str | Path) -> SigningIdentity:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise InvalidCredentialsError(f"Service account file could not be read: {path}") from exc
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidCredentialsError(f"Service account file is not valid JSON: {path}") from exc
        if not isinstance(raw, dict):
            raise InvalidCredentialsError(f"Service account file must hold a JSON object: {path}")
        return self.load_service_account(raw)

    def clear(self) -> None:
        # Logout drops the identity and any token minted from it.
        self._identity = None
        logger.info("credentials_cleared")
        self._notify()

    @property
    def is_authenticated(self) -> bool:
        return self._identity is not None

    def identity(self) -> SigningIdentity:
        if self._identity is None:
            raise NotAuthenticatedError("Credentials not loaded.")
        return self._identity

    def get_tenant_id(self) -> str:
        return self.identity().project_id
