"""
Mesh Router Agent - Certificate Store

Owns the private key, leaf certificate and CA certificate on disk.
The three files are only ever used together: a missing, unreadable or
mismatched member makes the whole set count as absent.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from config import CertificatePaths
from errors import PersistenceError

logger = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048
KEY_MODE = 0o600
CERT_MODE = 0o644


@dataclass
class CertificateState:
    """The agent's TLS identity. Replaced wholesale on renewal."""
    private_key: str
    certificate: str
    ca_certificate: str
    expires_at: datetime
    issued_at: Optional[datetime] = None


def _public_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_private_key(key_pem: str):
    return serialization.load_pem_private_key(key_pem.encode(), password=None)


def key_matches_certificate(key_pem: str, cert: x509.Certificate) -> bool:
    """Check that the certificate was issued for this private key."""
    return _public_bytes(load_private_key(key_pem).public_key()) == _public_bytes(cert.public_key())


def state_from_pem(private_key: str, certificate: str, ca_certificate: str) -> CertificateState:
    """Build a state, taking validity from the certificate itself.

    Raises:
        ValueError: if the certificate does not parse
    """
    cert = x509.load_pem_x509_certificate(certificate.encode())
    return CertificateState(
        private_key=private_key,
        certificate=certificate,
        ca_certificate=ca_certificate,
        expires_at=cert.not_valid_after_utc,
        issued_at=cert.not_valid_before_utc,
    )


def _write_atomic(path: Path, data: str, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_name(f".{path.name}.tmp")
    fd = os.open(temp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        temp.unlink(missing_ok=True)
        raise
    # os.open honours umask; set the final mode explicitly
    os.chmod(temp, mode)
    os.replace(temp, path)


class CertificateStore:
    """Durable storage for the key / certificate / CA triple."""

    def __init__(self, paths: CertificatePaths):
        self.key_path = Path(paths.key_path)
        self.cert_path = Path(paths.cert_path)
        self.ca_cert_path = Path(paths.ca_cert_path)

    def load_state(self) -> Optional[CertificateState]:
        """Return the stored state, or None unless all three files are present and consistent."""
        missing = [p for p in (self.key_path, self.cert_path, self.ca_cert_path) if not p.exists()]
        if missing:
            logger.debug(f"Certificate state incomplete, missing: {', '.join(str(p) for p in missing)}")
            return None

        try:
            private_key = self.key_path.read_text()
            certificate = self.cert_path.read_text()
            ca_certificate = self.ca_cert_path.read_text()

            cert = x509.load_pem_x509_certificate(certificate.encode())
            ca_cert = x509.load_pem_x509_certificate(ca_certificate.encode())

            if not key_matches_certificate(private_key, cert):
                logger.warning("Stored certificate does not match the stored private key")
                return None
            cert.verify_directly_issued_by(ca_cert)
        except (OSError, ValueError, TypeError, InvalidSignature) as e:
            logger.warning(f"Failed to load certificate state: {e}")
            return None

        state = state_from_pem(private_key, certificate, ca_certificate)
        logger.debug(f"Loaded certificate state, expires: {state.expires_at.isoformat()}")
        return state

    def save_state(self, state: CertificateState) -> None:
        """Write key, certificate and CA certificate together.

        Raises:
            PersistenceError: if any file cannot be written
        """
        try:
            _write_atomic(self.key_path, state.private_key, KEY_MODE)
            _write_atomic(self.cert_path, state.certificate, CERT_MODE)
            _write_atomic(self.ca_cert_path, state.ca_certificate, CERT_MODE)
        except OSError as e:
            raise PersistenceError(f"Cannot persist certificate state: {e}") from e
        logger.info(f"Certificate state saved to {self.cert_path.parent}")

    def ensure_key_pair(self) -> str:
        """Load the private key, generating and persisting one if there is none.

        Returns:
            PEM-encoded private key
        """
        if self.key_path.exists():
            try:
                key_pem = self.key_path.read_text()
                load_private_key(key_pem)
                logger.debug(f"Loaded existing keypair from {self.key_path}")
                return key_pem
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Existing key at {self.key_path} is unusable ({e}), regenerating")

        logger.info("Generating new RSA keypair...")
        key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()

        try:
            _write_atomic(self.key_path, key_pem, KEY_MODE)
        except OSError as e:
            raise PersistenceError(f"Cannot persist private key: {e}") from e
        logger.info(f"Keypair saved to {self.key_path}")
        return key_pem
