from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from veoflow.core.config import get_settings
from veoflow.domain.models import SigningIdentity
from veoflow.services.telemetry import reset_telemetry


TOKEN_URI = "https://oauth2.example.test/token"


@pytest.fixture(autouse=True)
def isolate_settings_and_telemetry(monkeypatch) -> None:
    # Ambient VEO_* env vars must not change model order or limits under test.
    for name in ("VEO_MODEL_ORDER", "VEO_KNOWN_MODELS", "VEO_RATE_LIMITS", "VEO_POLL_TIMEOUT_S"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    # Key generation is slow; share one key across the session.
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def identity(private_key_pem) -> SigningIdentity:
    return SigningIdentity(
        project_id="demo-project",
        private_key_id="key-1",
        private_key=private_key_pem,
        client_email="veo-runner@demo-project.iam.gserviceaccount.com",
        token_uri=TOKEN_URI,
    )


class FakeClock:
    # Monotonic stand-in; paired sleeps advance it instead of waiting.
    def __init__(self, now: float = 0.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
