"""Mesh Router Agent - Errors"""


class AgentError(Exception):
    """Base class for agent errors."""


class ConfigError(AgentError):
    """Invalid or missing configuration. Fatal at startup."""


class DiscoveryExhausted(AgentError):
    """No discovery method yielded a public address."""


class StunError(AgentError):
    """The STUN binding attempt failed or returned a malformed reply."""


class BackendUnreachable(AgentError):
    """The backend health check did not answer."""


class RegistrationFailed(AgentError):
    """The backend rejected or never acknowledged a route registration."""


class CertRequestError(AgentError):
    """A certificate could not be obtained from the backend CA."""


class PersistenceError(AgentError):
    """Identity material could not be durably written."""
