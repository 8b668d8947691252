# Agent identities and the tenant registry
from .identity import (
    AgentHandle,
    ConnectionInfo,
    IdentityProvider,
    load_identity_provider,
)
from .simulated import SimulatedIdentityProvider
from .delivery import DeliveryTracker
from .pool import AgentPool

__all__ = [
    "AgentHandle",
    "ConnectionInfo",
    "IdentityProvider",
    "load_identity_provider",
    "SimulatedIdentityProvider",
    "DeliveryTracker",
    "AgentPool",
]
