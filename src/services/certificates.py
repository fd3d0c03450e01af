"""
Mesh Router Agent - Certificate Lifecycle

Manages the agent's TLS client certificate:
- Ensures an RSA keypair exists
- Creates a CSR with CN=<userid>
- Exchanges it with the backend CA for a certificate
- Renews once less than half of the validity period remains

Renewal is driven by the caller (see daemon.lifecycle); nothing here
runs on its own timer.
"""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from client.backend import BackendClient
from config import ProviderIdentity
from errors import CertRequestError
from state.certificates import (
    CertificateState,
    CertificateStore,
    key_matches_certificate,
    load_private_key,
    state_from_pem,
)

logger = logging.getLogger(__name__)

# Renew when less than this fraction of the lifetime is left
RENEWAL_THRESHOLD = 0.5

# Validity assumed when the issue time is unknown
DEFAULT_VALIDITY = timedelta(hours=72)


class CertStatus(Enum):
    ABSENT = "absent"
    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def needs_renewal(
    expires_at: datetime,
    issued_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Check if the certificate is expired or past the renewal threshold.

    The validity period is taken from issued_at when known, otherwise
    DEFAULT_VALIDITY is assumed (renew below 36h for a 72h certificate).
    """
    now = now or _now()
    remaining = expires_at - now
    if remaining <= timedelta(0):
        return True

    validity = DEFAULT_VALIDITY
    if issued_at is not None and expires_at > issued_at:
        validity = expires_at - issued_at

    return remaining < validity * RENEWAL_THRESHOLD


def format_time_remaining(expires_at: datetime, now: Optional[datetime] = None) -> str:
    remaining = expires_at - (now or _now())
    if remaining <= timedelta(0):
        return "expired"

    total_minutes = int(remaining.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours >= 24:
        days, hours = divmod(hours, 24)
        return f"{days}d {hours}h"
    return f"{hours}h {minutes}m"


def build_csr(private_key_pem: str, user_id: str) -> str:
    """Generate a PEM Certificate Signing Request with CN=user_id."""
    key = load_private_key(private_key_pem)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, user_id)]))
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode()


class CertificateController:
    """Obtains and renews the agent certificate."""

    def __init__(self, store: CertificateStore, client: BackendClient, identity: ProviderIdentity):
        self.store = store
        self.client = client
        self.identity = identity

    def assess(self, state: Optional[CertificateState], now: Optional[datetime] = None) -> CertStatus:
        if state is None:
            return CertStatus.ABSENT
        now = now or _now()
        if state.expires_at <= now:
            return CertStatus.EXPIRED
        if needs_renewal(state.expires_at, state.issued_at, now=now):
            return CertStatus.EXPIRING
        return CertStatus.VALID

    async def request_certificate(self, private_key_pem: str) -> CertificateState:
        """Request a certificate from the backend CA and persist it.

        Raises:
            CertRequestError: on any backend, transport or content failure;
                the stored state is left untouched
            PersistenceError: if the new state cannot be written
        """
        logger.info("Generating CSR...")
        csr_pem = build_csr(private_key_pem, self.identity.user_id)

        logger.info(f"Requesting certificate from {self.identity.backend_url}...")
        response = await self.client.request_certificate(self.identity, csr_pem)
        if not response.success:
            logger.debug(f"Certificate response: {response.to_dict()}")
            raise CertRequestError(f"{response.message}: {response.error}")

        try:
            cert = x509.load_pem_x509_certificate(response.certificate.encode())
            ca_cert = x509.load_pem_x509_certificate(response.ca_certificate.encode())
            state = state_from_pem(private_key_pem, response.certificate, response.ca_certificate)
        except ValueError as e:
            raise CertRequestError(f"Backend returned an unreadable certificate: {e}") from e

        try:
            cert.verify_directly_issued_by(ca_cert)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise CertRequestError("Issued certificate is not signed by the returned CA") from e

        if not key_matches_certificate(private_key_pem, cert):
            raise CertRequestError("Issued certificate does not match the agent key")

        if response.expires_at:
            logger.debug(f"Backend reported expiry {response.expires_at}")

        self.store.save_state(state)
        logger.info(f"Certificate obtained, expires: {state.expires_at.isoformat()}")
        return state

    async def reconcile(self) -> Optional[CertificateState]:
        """Load the stored certificate and renew it when due.

        Returns the state that is installed after the attempt: the new one
        on success, otherwise whatever was there before (possibly None).
        """
        state = self.store.load_state()
        status = self.assess(state)

        if status is CertStatus.VALID:
            logger.debug(f"Certificate valid, {format_time_remaining(state.expires_at)} remaining")
            return state

        if status is CertStatus.ABSENT:
            logger.info("No certificate installed, requesting one")
        elif status is CertStatus.EXPIRING:
            logger.info(f"Certificate renewal due ({format_time_remaining(state.expires_at)} remaining)")
        elif status is CertStatus.EXPIRED:
            logger.warning("Certificate expired, requesting a new one")

        key_pem = self.store.ensure_key_pair()
        try:
            return await self.request_certificate(key_pem)
        except CertRequestError as e:
            logger.warning(f"Certificate request failed, will retry next cycle: {e}")
            return state
