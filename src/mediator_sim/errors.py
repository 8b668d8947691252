"""
Exception hierarchy for the mediator load simulation.

Registry misuse, identity-provider lifecycle failures, mesh setup
failures and unknown runs all derive from SimulationError so callers
(the service facade and the CLI) can translate them in one place.
"""

from typing import Optional


class SimulationError(Exception):
    """Base class for all simulation errors."""


class AlreadyExists(SimulationError):
    """A tenant id is already registered in the agent pool."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} already exists")
        self.tenant_id = tenant_id


class NotFound(SimulationError):
    """A tenant id is not registered in the agent pool."""

    def __init__(self, tenant_id: str, message: Optional[str] = None):
        super().__init__(message or f"Tenant {tenant_id} not found")
        self.tenant_id = tenant_id


class RunNotFound(NotFound):
    """An operation referenced an unknown run id."""

    def __init__(self, run_id: str):
        super().__init__(run_id, f"Test {run_id} not found")
        self.run_id = run_id


class ProviderError(SimulationError):
    """Failure reported by the identity provider."""


class ProvisioningError(ProviderError):
    """The identity provider could not materialize an identity."""


class TeardownError(ProviderError):
    """The identity provider could not destroy an identity."""


class ProviderConnectionError(ProviderError):
    """A single connection handshake attempt failed."""


class SendError(ProviderError):
    """A single message send failed."""


class PeerUnavailable(SimulationError):
    """No connected peer is available, or the chosen peer is gone."""


class ConnectionSetupFailed(SimulationError):
    """A tenant pair exhausted its connection attempts."""

    def __init__(self, from_tenant: str, to_tenant: str, attempts: int, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Connection establishment failed between {from_tenant} and {to_tenant} "
            f"after {attempts} attempts{detail}"
        )
        self.from_tenant = from_tenant
        self.to_tenant = to_tenant
        self.attempts = attempts
        self.cause = cause


class ConfigurationError(SimulationError):
    """Invalid settings, such as an unloadable identity provider path."""
