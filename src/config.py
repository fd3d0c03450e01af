"""
Mesh Router Agent - Configuration
"""
import ipaddress
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import ConfigError

logger = logging.getLogger(__name__)

# Backend expires routes that are not refreshed within this window
ROUTE_TTL = 300

DEFAULT_KEY_PATH = "./data/key.pem"
DEFAULT_CERT_PATH = "./data/cert.pem"
DEFAULT_CA_CERT_PATH = "./data/ca-cert.pem"


@dataclass(frozen=True)
class ProviderIdentity:
    """Backend address and credentials parsed from the PROVIDER string."""
    backend_url: str
    user_id: str
    signature: str


@dataclass(frozen=True)
class HealthCheckDescriptor:
    path: str
    host: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"path": self.path}
        if self.host:
            data["host"] = self.host
        return data


@dataclass(frozen=True)
class CertificatePaths:
    key_path: str = DEFAULT_KEY_PATH
    cert_path: str = DEFAULT_CERT_PATH
    ca_cert_path: str = DEFAULT_CA_CERT_PATH


def parse_provider(value: str) -> ProviderIdentity:
    """Parse a connection string of the form <backend_url>,<userid>,<signature>."""
    parts = (value or "").split(",", 2)
    if len(parts) != 3 or not all(parts):
        raise ConfigError(
            "Invalid PROVIDER format. Expected: <backend_url>,<userid>,<signature>"
        )

    backend_url, user_id, signature = parts
    if not backend_url.startswith("http"):
        raise ConfigError("PROVIDER backend_url must start with http:// or https://")

    return ProviderIdentity(backend_url=backend_url, user_id=user_id, signature=signature)


@dataclass(frozen=True)
class AgentConfig:
    """Agent configuration."""
    # Backend
    provider: str

    # Route
    public_ip: str = ""
    target_port: int = 443
    route_priority: int = 1
    health_check_path: str = ""
    health_check_host: str = ""

    # Refresh loop
    refresh_interval: int = 60
    legacy_heartbeat: bool = False

    # Certificate files
    cert_key_path: str = DEFAULT_KEY_PATH
    cert_path: str = DEFAULT_CERT_PATH
    ca_cert_path: str = DEFAULT_CA_CERT_PATH

    # Agent info
    agent_version: str = "2.0.0"

    @property
    def identity(self) -> ProviderIdentity:
        return parse_provider(self.provider)

    @property
    def certificate_paths(self) -> CertificatePaths:
        return CertificatePaths(
            key_path=self.cert_key_path,
            cert_path=self.cert_path,
            ca_cert_path=self.ca_cert_path,
        )

    def health_check(self) -> Optional[HealthCheckDescriptor]:
        if not self.health_check_path:
            return None
        return HealthCheckDescriptor(
            path=self.health_check_path,
            host=self.health_check_host or None,
        )

    def validate(self) -> ProviderIdentity:
        """Check the configuration and return the parsed identity.

        Raises:
            ConfigError: on the first invalid setting
        """
        if not self.provider:
            raise ConfigError(
                "PROVIDER is required. Format: <backend_url>,<userid>,<signature>"
            )
        identity = parse_provider(self.provider)

        if not 1 <= self.target_port <= 65535:
            raise ConfigError(f"TARGET_PORT out of range: {self.target_port}")
        if self.refresh_interval <= 0:
            raise ConfigError(f"REFRESH_INTERVAL must be positive: {self.refresh_interval}")
        if self.public_ip:
            try:
                ipaddress.ip_address(self.public_ip)
            except ValueError:
                raise ConfigError(f"PUBLIC_IP is not a valid address: {self.public_ip}")

        if self.refresh_interval >= ROUTE_TTL:
            logger.warning(
                f"Refresh interval {self.refresh_interval}s is not shorter than the "
                f"backend route TTL ({ROUTE_TTL}s); routes may expire between refreshes"
            )
        return identity


def _to_int(name: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _to_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Optional[str] = None) -> AgentConfig:
    """Load configuration from file or environment."""
    # Try config file first
    if config_path is None:
        config_path = os.environ.get("AGENT_CONFIG", "config.json")

    config_file = Path(config_path)

    if config_file.exists():
        try:
            with open(config_file) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read config file {config_file}: {e}")

        return AgentConfig(
            provider=data.get("provider", ""),
            public_ip=data.get("public_ip", ""),
            target_port=_to_int("target_port", data.get("target_port", 443)),
            route_priority=_to_int("route_priority", data.get("route_priority", 1)),
            health_check_path=data.get("health_check_path", ""),
            health_check_host=data.get("health_check_host", ""),
            refresh_interval=_to_int("refresh_interval", data.get("refresh_interval", 60)),
            legacy_heartbeat=_to_bool(data.get("legacy_heartbeat", False)),
            cert_key_path=data.get("cert_key_path", DEFAULT_KEY_PATH),
            cert_path=data.get("cert_path", DEFAULT_CERT_PATH),
            ca_cert_path=data.get("ca_cert_path", DEFAULT_CA_CERT_PATH),
        )

    # Fall back to environment variables
    return AgentConfig(
        provider=os.environ.get("PROVIDER", ""),
        public_ip=os.environ.get("PUBLIC_IP", ""),
        target_port=_to_int("TARGET_PORT", os.environ.get("TARGET_PORT", "443")),
        route_priority=_to_int("ROUTE_PRIORITY", os.environ.get("ROUTE_PRIORITY", "1")),
        health_check_path=os.environ.get("HEALTH_CHECK_PATH", ""),
        health_check_host=os.environ.get("HEALTH_CHECK_HOST", ""),
        refresh_interval=_to_int("REFRESH_INTERVAL", os.environ.get("REFRESH_INTERVAL", "60")),
        legacy_heartbeat=_to_bool(os.environ.get("LEGACY_HEARTBEAT", "")),
        cert_key_path=os.environ.get("CERT_KEY_PATH", DEFAULT_KEY_PATH),
        cert_path=os.environ.get("CERT_PATH", DEFAULT_CERT_PATH),
        ca_cert_path=os.environ.get("CA_CERT_PATH", DEFAULT_CA_CERT_PATH),
        agent_version=os.environ.get("BUILD_VERSION", "2.0.0"),
    )
