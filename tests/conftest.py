"""
Mesh Router Agent - Test Fixtures

Shared pytest fixtures for agent tests.
"""
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import CertificatePaths, ProviderIdentity  # noqa: E402
from state.certificates import CertificateState, state_from_pem  # noqa: E402


def key_to_pem(key) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


class FakeCA:
    """Self-signed CA that signs test certificates."""

    def __init__(self, name: str = "Test Mesh CA"):
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
        now = datetime.now(timezone.utc)
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(self.name)
            .issuer_name(self.name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.key, hashes.SHA256())
        )
        self.cert_pem = self.cert.public_bytes(serialization.Encoding.PEM).decode()

    def issue(self, public_key, common_name: str, not_before: datetime, not_after: datetime) -> str:
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(self.name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .sign(self.key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.PEM).decode()

    def sign_csr(self, csr_pem: str, lifetime: timedelta = timedelta(hours=72)) -> str:
        csr = x509.load_pem_x509_csr(csr_pem.encode())
        common_name = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
        now = datetime.now(timezone.utc).replace(microsecond=0)
        return self.issue(csr.public_key(), common_name, now, now + lifetime)


@pytest.fixture
def fake_ca():
    return FakeCA()


@pytest.fixture
def identity():
    return ProviderIdentity(
        backend_url="https://api.example.com",
        user_id="alice",
        signature="sig123",
    )


@pytest.fixture
def cert_paths(tmp_path):
    data = tmp_path / "data"
    return CertificatePaths(
        key_path=str(data / "key.pem"),
        cert_path=str(data / "cert.pem"),
        ca_cert_path=str(data / "ca-cert.pem"),
    )


@pytest.fixture
def make_state(fake_ca):
    """Factory for a consistent key/cert/CA triple with the given validity."""

    def _make(remaining: timedelta = timedelta(hours=60), lifetime: timedelta = timedelta(hours=72),
              key_pem: str = None) -> CertificateState:
        if key_pem is None:
            key_pem = key_to_pem(ec.generate_private_key(ec.SECP256R1()))
        key = serialization.load_pem_private_key(key_pem.encode(), password=None)
        not_after = datetime.now(timezone.utc).replace(microsecond=0) + remaining
        cert_pem = fake_ca.issue(key.public_key(), "alice", not_after - lifetime, not_after)
        return state_from_pem(key_pem, cert_pem, fake_ca.cert_pem)

    return _make


class FakeResponse:
    """Async context manager standing in for aiohttp's response."""

    def __init__(self, body="{}", status: int = 200):
        self.status = status
        self._body = body if isinstance(body, str) else json.dumps(body)

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def make_session():
    """Build a mock aiohttp session whose get/post return FakeResponse or raise."""

    def _make(body="{}", status: int = 200, error: Exception = None):
        session = MagicMock()
        session.closed = False
        if error is not None:
            session.get = MagicMock(side_effect=error)
            session.post = MagicMock(side_effect=error)
        else:
            session.get = MagicMock(side_effect=lambda *a, **kw: FakeResponse(body, status))
            session.post = MagicMock(side_effect=lambda *a, **kw: FakeResponse(body, status))
        return session

    return _make
