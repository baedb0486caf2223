import asyncio
import hashlib
import inspect
import json
import os
import struct
import sys
import tempfile
import time
from pathlib import Path

# Environment must be in place before any import that builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="keyward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("TOTP_ISSUER", "Keyward Test")
os.environ.setdefault("WEBAUTHN_RP_ID", "localhost")
os.environ.setdefault("WEBAUTHN_ORIGIN", "http://localhost")
os.environ.setdefault("TRUST_FORWARDED_FOR", "true")
os.environ.setdefault("AUDIT_RETRY_BACKOFF_MS", "1")
# Documentation ranges (RFC 5737) pinned to fixed locations
os.environ.setdefault(
    "GEO_STATIC_MAP",
    json.dumps(
        {
            "203.0.113.10": {"country": "DE", "lat": 52.52, "lon": 13.405},
            "203.0.113.11": {"country": "DE", "lat": 52.52, "lon": 13.405},
            "198.51.100.0/24": {"country": "AU", "lat": -33.8688, "lon": 151.2093},
        }
    ),
)
# Tests run against the in-process fallbacks
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from keyward.service import webauthn  # noqa: E402
from keyward.service.mfa import generate_totp  # noqa: E402
from keyward.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # The memory store persists to SHARED_FS_ROOT; give every test its own
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class SoftAuthenticator:
    """Software WebAuthn authenticator producing P-256 attestations and assertions."""

    def __init__(self, *, rp_id="localhost", origin="http://localhost", credential_id="cred-1"):
        self.rp_id = rp_id
        self.origin = origin
        self.credential_id = credential_id
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.sign_count = 0

    @property
    def public_key(self) -> str:
        der = self.private_key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return webauthn.b64url_encode(der)

    def _auth_data(self, sign_count: int, flags: int = webauthn.FLAG_USER_PRESENT) -> bytes:
        return hashlib.sha256(self.rp_id.encode()).digest() + bytes([flags]) + struct.pack(">I", sign_count)

    def _client_data(self, ceremony: str, challenge: str, origin=None) -> bytes:
        return json.dumps(
            {"type": ceremony, "challenge": challenge, "origin": origin or self.origin}
        ).encode()

    def register(self, challenge: str, *, label="security key") -> dict:
        return {
            "credential_id": self.credential_id,
            "public_key": self.public_key,
            "client_data_json": webauthn.b64url_encode(self._client_data("webauthn.create", challenge)),
            "authenticator_data": webauthn.b64url_encode(self._auth_data(self.sign_count)),
            "label": label,
        }

    def assert_(self, challenge: str, *, sign_count=None, origin=None) -> dict:
        if sign_count is None:
            self.sign_count += 1
            sign_count = self.sign_count
        auth_data = self._auth_data(sign_count)
        client_data = self._client_data("webauthn.get", challenge, origin)
        signature = self.private_key.sign(
            webauthn.assertion_signed_data(auth_data, client_data), ec.ECDSA(hashes.SHA256())
        )
        return {
            "credential_id": self.credential_id,
            "client_data_json": webauthn.b64url_encode(client_data),
            "authenticator_data": webauthn.b64url_encode(auth_data),
            "signature": webauthn.b64url_encode(signature),
        }


@pytest.fixture
def authenticator():
    return SoftAuthenticator()


@pytest.fixture
def authenticator_factory():
    return SoftAuthenticator


@pytest.fixture
def totp_code():
    """Code for ``secret`` at ``offset_steps`` periods from now."""

    def _code(secret: str, offset_steps: int = 0, period: int = 30) -> str:
        return generate_totp(secret, time.time() + offset_steps * period, period=period)

    return _code


PASSWORD = "correct horse battery"
BERLIN_IP = "203.0.113.10"


@pytest.fixture
def client():
    """Test client with the app lifespan running."""
    from fastapi.testclient import TestClient

    from keyward import app as app_module

    with TestClient(app_module.app) as test_client:
        yield test_client


class ApiHelper:
    """Thin wrapper for the request shapes most integration tests repeat."""

    def __init__(self, client):
        self.client = client

    @staticmethod
    def origin(ip: str = BERLIN_IP, device: str = "laptop") -> dict:
        return {"X-Forwarded-For": ip, "X-Device-Fingerprint": device}

    @staticmethod
    def bearer(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def register(self, email: str, password: str = PASSWORD, ip: str = BERLIN_IP):
        return self.client.post(
            "/v1/auth/register",
            json={"email": email, "password": password},
            headers=self.origin(ip),
        )

    def login(self, email: str, password: str = PASSWORD, *, ip: str = BERLIN_IP, device: str = "laptop"):
        return self.client.post(
            "/v1/auth/login",
            json={"email": email, "password": password},
            headers=self.origin(ip, device),
        )

    def signed_in(self, email: str, password: str = PASSWORD, **kwargs) -> dict:
        """Register (if needed) and log in from a familiar context; returns token data."""
        self.register(email, password)
        response = self.login(email, password, **kwargs)
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["status"] == "authenticated", data
        return data

    def admin(self, email: str = "admin@example.com") -> dict:
        from keyward.service.runtime import get_runtime

        self.register(email)
        store = get_runtime().store
        store.update_user_role(store.get_user_by_email(email).id, "admin")
        response = self.login(email)
        assert response.status_code == 200, response.text
        return response.json()["data"]


@pytest.fixture
def api(client):
    return ApiHelper(client)
