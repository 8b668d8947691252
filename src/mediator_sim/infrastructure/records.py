"""
Ledger record schemas for the mediator load simulation.

These models define what the orchestrator and the delivery tracker
persist in Redis. JSON field names are camelCase so records stay
readable by the dashboards and scripts that consume the ledger.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class LedgerModel(BaseModel):
    """Base model serializing with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        """Serialize for storage in the ledger. Unset optional fields are omitted."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_dict(self) -> dict:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RunStatus(str, Enum):
    """Lifecycle status of a simulation run."""

    RUNNING = "running"
    STOPPING = "stopping"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.STOPPED, RunStatus.FAILED)

    def can_transition_to(self, target: "RunStatus") -> bool:
        """Check a transition against the monotonic lifecycle."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset(
        {RunStatus.STOPPING, RunStatus.COMPLETED, RunStatus.STOPPED, RunStatus.FAILED}
    ),
    RunStatus.STOPPING: frozenset({RunStatus.COMPLETED, RunStatus.STOPPED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.STOPPED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class RunConfig(LedgerModel):
    """Configuration snapshot stored with every run record."""

    messages_per_batch: int = Field(ge=1)
    duration_ms: int = Field(ge=1000)
    agent_count: int = Field(ge=1)
    agent_prefix: str = Field(min_length=1)
    message_rate_ms: int = Field(default=100, ge=10)

    @property
    def expected_batches(self) -> int:
        return max(1, math.ceil(self.duration_ms / self.message_rate_ms))

    @property
    def expected_messages(self) -> int:
        """Upper bound of sends a fully-formed mesh would issue."""
        return self.agent_count * self.messages_per_batch * self.expected_batches

    def agent_ids(self) -> list[str]:
        return [f"{self.agent_prefix}-{i + 1}" for i in range(self.agent_count)]


class SimulationConfig(RunConfig):
    """Validated input for one simulation run."""

    test_name: str = Field(min_length=1)
    test_description: Optional[str] = None

    def run_config(self) -> RunConfig:
        return RunConfig.model_validate(self.model_dump(include=set(RunConfig.model_fields)))


class RunSummary(LedgerModel):
    """Sending outcome recorded when a run settles."""

    messages_attempted: int = 0
    messages_sent: int = 0
    send_failures: int = 0
    peer_unavailable: int = 0
    expected_messages: int = 0


class RunRecord(LedgerModel):
    """One simulation run, keyed by ``test:{testId}``."""

    test_id: str
    test_name: str
    test_description: Optional[str] = None
    config: RunConfig
    start_time: datetime = Field(default_factory=utcnow)
    estimated_end_time: datetime
    status: RunStatus = RunStatus.RUNNING
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    summary: Optional[RunSummary] = None


class RunStatistics(LedgerModel):
    """Counters kept in the ``test:{testId}:stats`` hash."""

    total_messages: int = 0
    total_processing_time_ms: int = 0

    @classmethod
    def from_hash(cls, data: dict) -> "RunStatistics":
        return cls(
            total_messages=int(data.get("totalMessages", 0)),
            total_processing_time_ms=int(data.get("totalProcessingTimeMs", 0)),
        )

    @property
    def average_processing_time_ms(self) -> Optional[int]:
        if self.total_messages <= 0:
            return None
        # Round half up.
        return math.floor(self.total_processing_time_ms / self.total_messages + 0.5)


class MessageRecord(LedgerModel):
    """One send attempt, keyed by ``message:{testId}:{threadId}``."""

    from_tenant_id: str
    to_tenant_id: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    processed_timestamp: Optional[datetime] = None
    processing_time_ms: Optional[int] = None

    @property
    def is_processed(self) -> bool:
        return self.processing_time_ms is not None

    def mark_processed(self, processed_at: datetime) -> "MessageRecord":
        """Return a copy carrying the delivery-confirmation fields."""
        elapsed = (processed_at - self.timestamp).total_seconds() * 1000
        return self.model_copy(
            update={
                "processed_timestamp": processed_at,
                "processing_time_ms": max(0, round(elapsed)),
            }
        )
