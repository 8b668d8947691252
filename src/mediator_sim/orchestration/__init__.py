# Run orchestration: mesh setup, message driving and the run state machine
from .cancellation import StopSignal
from .mesh import ConnectionMeshBuilder, PairOutcome, RetryPolicy
from .driver import DriverStats, MessageDriver
from .orchestrator import SimulationOrchestrator

__all__ = [
    "StopSignal",
    "ConnectionMeshBuilder",
    "PairOutcome",
    "RetryPolicy",
    "DriverStats",
    "MessageDriver",
    "SimulationOrchestrator",
]
