# Infrastructure components
from .records import (
    MessageRecord,
    RunConfig,
    RunRecord,
    RunStatistics,
    RunStatus,
    RunSummary,
    SimulationConfig,
)
from .ledger_store import LedgerStore, create_ledger_store

__all__ = [
    "MessageRecord",
    "RunConfig",
    "RunRecord",
    "RunStatistics",
    "RunStatus",
    "RunSummary",
    "SimulationConfig",
    "LedgerStore",
    "create_ledger_store",
]
