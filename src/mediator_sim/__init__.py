"""
Mediator load simulation.

Creates ephemeral agent identities, wires them into a fully connected
mesh, drives randomized message traffic through a DIDComm mediator and
aggregates per-message timing from a Redis ledger.
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .errors import SimulationError
from .infrastructure.records import RunStatus, SimulationConfig
from .service import SimulationTestService

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "SimulationError",
    "RunStatus",
    "SimulationConfig",
    "SimulationTestService",
]
