"""Mesh Router Agent - Lifecycle Controller

Drives the agent from startup to the steady-state refresh loop:

    BOOTSTRAPPING -> AWAITING_BACKEND -> REGISTERING -> STEADY
                                     \\-> TERMINATED (fatal)

Waiting for the backend retries forever at a fixed delay. The refresh
loop never stops on a failed iteration; only persistence errors end it.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from client.backend import ROUTE_TTL, BackendClient, Route, build_route
from config import AgentConfig, ProviderIdentity
from errors import (
    BackendUnreachable,
    DiscoveryExhausted,
    PersistenceError,
    RegistrationFailed,
)
from services.address import AddressResolver
from services.certificates import CertificateController, format_time_remaining
from state.certificates import CertificateState, CertificateStore

logger = logging.getLogger(__name__)

# Fixed delay between backend health probes during startup
BACKEND_RETRY_DELAY = 30


class AgentState(Enum):
    BOOTSTRAPPING = "bootstrapping"
    AWAITING_BACKEND = "awaiting_backend"
    REGISTERING = "registering"
    STEADY = "steady"
    TERMINATED = "terminated"


class RouteStatus(Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    STALE = "stale"


class LifecycleController:
    def __init__(
        self,
        config: AgentConfig,
        identity: ProviderIdentity,
        client: BackendClient,
        resolver: AddressResolver,
        certificates: CertificateController,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.identity = identity
        self.client = client
        self.resolver = resolver
        self.certificates = certificates
        self._sleep = sleep
        self._clock = clock

        self.state = AgentState.BOOTSTRAPPING
        self.route: Optional[Route] = None
        self.certificate: Optional[CertificateState] = None
        self._last_registered: Optional[float] = None
        self._running = False

    @classmethod
    def from_config(cls, config: AgentConfig, **kwargs) -> "LifecycleController":
        """Validate the configuration and wire up the default components.

        Raises:
            ConfigError: if the configuration is invalid
        """
        identity = config.validate()
        client = BackendClient()
        resolver = AddressResolver(override=config.public_ip or None)
        store = CertificateStore(config.certificate_paths)
        certificates = CertificateController(store, client, identity)
        return cls(config, identity, client, resolver, certificates, **kwargs)

    @property
    def route_status(self) -> RouteStatus:
        if self._last_registered is None:
            return RouteStatus.UNREGISTERED
        if self._clock() - self._last_registered > ROUTE_TTL:
            return RouteStatus.STALE
        return RouteStatus.REGISTERED

    async def _check_backend(self) -> None:
        """Raises BackendUnreachable unless the health check answers."""
        if not await self.client.probe(self.identity.backend_url):
            raise BackendUnreachable(f"{self.identity.backend_url} did not answer its health check")

    async def wait_for_backend(self) -> int:
        """Block until the backend answers its health check.

        Returns:
            Number of retries that were needed
        """
        self.state = AgentState.AWAITING_BACKEND
        logger.info("Checking backend availability...")
        retries = 0
        while True:
            try:
                await self._check_backend()
                break
            except BackendUnreachable as e:
                retries += 1
                logger.info(f"Backend not available ({e}), retrying in {BACKEND_RETRY_DELAY}s...")
                await self._sleep(BACKEND_RETRY_DELAY)
        logger.info("Backend is available!")
        return retries

    async def _register_route(self) -> bool:
        result = await self.client.register_routes(self.identity, [self.route])
        logger.debug(f"Route registration result: {result.to_dict()}")
        if not result.success:
            logger.error(f"Route registration failed: {result.error}")
            return False

        self._last_registered = self._clock()
        logger.info(
            f"Route registered: {self.route.address}:{self.route.port} "
            f"(priority: {self.route.priority})"
        )
        if result.domain:
            logger.info(f"  Domain: {result.domain}")
        return True

    async def register_initial(self) -> Route:
        """Discover the address and register the route for the first time.

        Raises:
            DiscoveryExhausted: if no address could be discovered
            RegistrationFailed: if the backend did not accept the route
        """
        self.state = AgentState.REGISTERING
        address = await self.resolver.discover_address()
        logger.info(f"Detected public IP: {address}")

        self.route = build_route(
            address,
            self.config.target_port,
            self.config.route_priority,
            self.config.health_check(),
        )

        logger.info("Registering route...")
        if not await self._register_route():
            raise RegistrationFailed("Initial route registration failed")
        return self.route

    async def check_certificate(self) -> Optional[CertificateState]:
        """Renew the certificate if due. Request failures are retried next cycle."""
        self.certificate = await self.certificates.reconcile()
        if self.certificate is None:
            logger.warning("No valid certificate installed")
        else:
            logger.debug(
                f"Certificate expires in {format_time_remaining(self.certificate.expires_at)}"
            )
        return self.certificate

    async def send_heartbeat(self) -> bool:
        result = await self.client.send_heartbeat(self.identity)
        logger.debug(f"Heartbeat result: {result.to_dict()}")
        if not result.success:
            logger.warning(f"Heartbeat failed: {result.error}")
            return False
        logger.debug(f"Heartbeat sent, last seen online: {result.last_seen_online}")
        return True

    async def refresh_once(self) -> None:
        """One steady-state iteration: re-resolve, re-register, renew."""
        try:
            address = await self.resolver.discover_address()
        except DiscoveryExhausted as e:
            logger.warning(f"{e}; keeping last known address {self.route.address}")
            address = self.route.address

        if address != self.route.address:
            logger.info(f"IP changed: {self.route.address} -> {address}")
            self.route.address = address

        await self._register_route()
        if self.route_status is RouteStatus.STALE:
            logger.warning(f"No successful registration in the last {ROUTE_TTL}s, route may have expired")

        if self.config.legacy_heartbeat:
            await self.send_heartbeat()

        await self.check_certificate()

    async def run(self):
        self._running = True
        try:
            await self.wait_for_backend()
            await self.register_initial()
            await self.check_certificate()

            self.state = AgentState.STEADY
            logger.info("Starting route refresh loop...")
            while self._running:
                await self._sleep(self.config.refresh_interval)
                if not self._running:
                    break
                try:
                    await self.refresh_once()
                except PersistenceError:
                    raise
                except Exception as e:
                    logger.error(f"Route refresh error: {e}", exc_info=True)
        except (DiscoveryExhausted, RegistrationFailed, PersistenceError) as e:
            self.state = AgentState.TERMINATED
            logger.error(f"Fatal: {e}")
            raise

    def stop(self):
        self._running = False
