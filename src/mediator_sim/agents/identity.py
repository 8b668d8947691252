"""
Identity provider interface.

The secure-messaging agent library is consumed only through this
capability set: create and destroy identities, connect them, list
their connections, send messages and subscribe to delivery-completion
events. The wire protocol, key material and transport stay opaque.
"""

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from ..errors import ConfigurationError

# Async callback receiving (thread_id, processed_at).
DeliveryCallback = Callable[[str, datetime], Awaitable[None]]

CONNECTION_COMPLETED = "completed"


@dataclass
class AgentHandle:
    """Opaque reference to one live identity."""

    tenant_id: str
    label: str
    ref: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class ConnectionInfo:
    """One connection as seen from its owning identity."""

    connection_id: str
    peer_label: str
    state: str

    @property
    def is_established(self) -> bool:
        return self.state == CONNECTION_COMPLETED


class IdentityProvider(ABC):
    """Abstract capability set of the secure-messaging agent library."""

    @abstractmethod
    async def create(self, tenant_id: str) -> AgentHandle:
        """Materialize an identity. Raises ProvisioningError."""

    @abstractmethod
    async def destroy(self, handle: AgentHandle) -> None:
        """Tear down an identity's storage. Raises TeardownError."""

    @abstractmethod
    async def list_connections(self, handle: AgentHandle) -> list[ConnectionInfo]:
        """List the identity's connections and their states."""

    @abstractmethod
    async def connect(
        self,
        from_handle: AgentHandle,
        to_handle: AgentHandle,
        timeout_ms: int = 5000,
    ) -> None:
        """Run the invitation/accept handshake.

        Idempotent for an already-connected pair. Raises
        ProviderConnectionError on failure or timeout.
        """

    @abstractmethod
    async def send(self, handle: AgentHandle, connection_id: str, payload: str) -> str:
        """Send a message and return its delivery-thread id. Raises SendError."""

    @abstractmethod
    def subscribe(self, handle: AgentHandle, callback: DeliveryCallback) -> None:
        """Register a delivery-completion callback for one identity."""

    async def close(self) -> None:
        """Release provider-wide resources."""


def load_identity_provider(path: str, **kwargs: Any) -> IdentityProvider:
    """
    Build an identity provider from a settings value.

    Args:
        path: "simulated" or a "package.module:ClassName" path
        **kwargs: Passed to the provider constructor

    Returns:
        IdentityProvider instance
    """
    if path == "simulated":
        from .simulated import SimulatedIdentityProvider

        return SimulatedIdentityProvider(**kwargs)

    module_name, _, class_name = path.partition(":")
    if not module_name or not class_name:
        raise ConfigurationError(
            f"Invalid identity provider '{path}'. Use 'simulated' or 'package.module:ClassName'"
        )
    try:
        module = importlib.import_module(module_name)
        provider_cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load identity provider '{path}': {e}") from e

    provider = provider_cls(**kwargs)
    if not isinstance(provider, IdentityProvider):
        raise ConfigurationError(f"{path} is not an IdentityProvider")
    return provider
