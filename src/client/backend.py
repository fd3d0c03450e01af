"""
Mesh Router Agent - Backend Client

Talks to mesh-router-backend: health probe, route registration,
legacy IP registration, heartbeat and certificate signing.
Every call reports failure as a result value and never raises.
"""
import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from config import ROUTE_TTL, HealthCheckDescriptor, ProviderIdentity

logger = logging.getLogger(__name__)

HEALTHCHECK_PATH = "/router/api/available/healthcheck"

__all__ = [
    "BackendClient",
    "CertificateResponse",
    "HeartbeatResult",
    "RegistrationResult",
    "Route",
    "RouteRegistrationResult",
    "ROUTE_TTL",
    "build_route",
]


@dataclass
class Route:
    """A target the backend directs traffic to. `address` is updated in place."""
    address: str
    port: int
    priority: int
    health_check: Optional[HealthCheckDescriptor] = None

    def to_dict(self) -> dict:
        data = {"address": self.address, "port": self.port, "priority": self.priority}
        if self.health_check:
            data["healthCheck"] = self.health_check.to_dict()
        return data


def build_route(
    address: str,
    port: int,
    priority: int,
    health_check: Optional[HealthCheckDescriptor] = None,
) -> Route:
    """Build a route object from configuration."""
    return Route(address=address, port=port, priority=priority, health_check=health_check)


@dataclass
class RouteRegistrationResult:
    success: bool
    message: str
    routes: Optional[list] = None
    domain: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RegistrationResult:
    """Outcome of the legacy single-IP registration."""
    success: bool
    message: str
    host_ip: Optional[str] = None
    target_port: Optional[int] = None
    domain: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class HeartbeatResult:
    success: bool
    message: str
    last_seen_online: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CertificateResponse:
    success: bool
    message: str
    certificate: Optional[str] = None
    ca_certificate: Optional[str] = None
    expires_at: Optional[str] = None
    error: Optional[str] = None
    def to_dict(self) -> dict:
        return asdict(self)


class _CallFailed(Exception):
    """Internal: a request did not produce a usable JSON object."""


class BackendClient:
    """HTTP client for the mesh-router backend API."""

    def __init__(self, timeout: int = 10, cert_timeout: int = 30):
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.cert_timeout = aiohttp.ClientTimeout(total=cert_timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def endpoint(identity: ProviderIdentity, resource: str) -> str:
        """Build a per-identity URL with escaped user id and signature."""
        base = identity.backend_url.rstrip("/")
        user_id = quote(identity.user_id, safe="")
        signature = quote(identity.signature, safe="")
        return f"{base}/router/api/{resource}/{user_id}/{signature}"

    async def _post(
        self,
        url: str,
        payload: Optional[dict] = None,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ) -> dict[str, Any]:
        """POST and decode a JSON object, raising _CallFailed with a readable reason."""
        try:
            session = await self._get_session()
            kwargs: dict[str, Any] = {}
            if payload is not None:
                kwargs["json"] = payload
            if timeout is not None:
                kwargs["timeout"] = timeout
            async with session.post(url, **kwargs) as resp:
                text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError:
            raise _CallFailed("request timed out")
        except Exception as e:
            raise _CallFailed(f"{type(e).__name__}: {e}" if str(e) else type(e).__name__)

        try:
            data = json.loads(text)
        except ValueError as e:
            if not 200 <= status < 300:
                raise _CallFailed(f"HTTP {status}")
            raise _CallFailed(f"invalid JSON response: {e}")

        if not isinstance(data, dict):
            raise _CallFailed(f"unexpected response: {text[:200]}")

        if not 200 <= status < 300:
            raise _CallFailed(str(data.get("error") or f"HTTP {status}"))
        return data

    async def probe(self, backend_url: str) -> bool:
        """Check if the backend is reachable. Any JSON body counts as up."""
        url = f"{backend_url.rstrip('/')}{HEALTHCHECK_PATH}"
        try:
            session = await self._get_session()
            async with session.get(url) as resp:
                json.loads(await resp.text())
            return True
        except Exception as e:
            logger.debug(f"Backend probe failed: {e!r}")
            return False

    async def register_routes(
        self, identity: ProviderIdentity, routes: list[Route]
    ) -> RouteRegistrationResult:
        """Register routes (v2 API).

        Routes carry a backend-side TTL of ROUTE_TTL seconds; callers must
        refresh them more often than that.
        """
        url = self.endpoint(identity, "routes")
        try:
            data = await self._post(url, {"routes": [r.to_dict() for r in routes]})
        except _CallFailed as e:
            return RouteRegistrationResult(
                success=False,
                message="Route registration request failed",
                error=str(e),
            )

        if data.get("error"):
            return RouteRegistrationResult(
                success=False,
                message="Route registration failed",
                error=str(data["error"]),
            )

        return RouteRegistrationResult(
            success=True,
            message=data.get("message") or "Routes registered successfully",
            routes=data.get("routes"),
            domain=data.get("domain"),
        )

    async def register_ip(
        self, identity: ProviderIdentity, host_ip: str, target_port: int = 443
    ) -> RegistrationResult:
        """Register a single IP and port (v1 API, superseded by register_routes)."""
        url = self.endpoint(identity, "ip")
        try:
            data = await self._post(url, {"hostIp": host_ip, "targetPort": target_port})
        except _CallFailed as e:
            return RegistrationResult(
                success=False, message="Registration request failed", error=str(e)
            )

        if data.get("error"):
            return RegistrationResult(
                success=False, message="Registration failed", error=str(data["error"])
            )

        return RegistrationResult(
            success=True,
            message=data.get("message") or "IP registered successfully",
            host_ip=data.get("hostIp"),
            target_port=data.get("targetPort"),
            domain=data.get("domain"),
        )

    async def send_heartbeat(self, identity: ProviderIdentity) -> HeartbeatResult:
        url = self.endpoint(identity, "heartbeat")
        try:
            data = await self._post(url)
        except _CallFailed as e:
            return HeartbeatResult(
                success=False, message="Heartbeat request failed", error=str(e)
            )

        if data.get("error"):
            return HeartbeatResult(
                success=False, message="Heartbeat failed", error=str(data["error"])
            )

        return HeartbeatResult(
            success=True,
            message=data.get("message") or "Heartbeat sent",
            last_seen_online=data.get("lastSeenOnline"),
        )

    async def request_certificate(
        self, identity: ProviderIdentity, csr_pem: str
    ) -> CertificateResponse:
        """Exchange a PEM CSR for a certificate signed by the backend CA."""
        url = self.endpoint(identity, "cert")
        try:
            data = await self._post(url, {"csr": csr_pem}, timeout=self.cert_timeout)
        except _CallFailed as e:
            return CertificateResponse(
                success=False, message="Certificate request failed", error=str(e)
            )

        if data.get("error"):
            return CertificateResponse(
                success=False,
                message="Certificate request rejected",
                error=str(data["error"]),
            )
        if not data.get("certificate") or not data.get("caCertificate"):
            return CertificateResponse(
                success=False,
                message="Certificate request failed",
                error="response is missing certificate or caCertificate",
            )

        return CertificateResponse(
            success=True,
            message="Certificate issued",
            certificate=data["certificate"],
            ca_certificate=data["caCertificate"],
            expires_at=data.get("expiresAt"),
        )
