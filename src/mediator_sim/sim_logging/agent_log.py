"""Per-tenant agent log files."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class AgentLogWriter:
    """
    Appends lifecycle lines to ``agent_log_<tenant>.txt``.

    A tenant's file is truncated when the tenant is (re)created so each
    file covers one identity lifetime.
    """

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, tenant_id: str) -> Path:
        return self.log_dir / f"agent_log_{tenant_id}.txt"

    def start(self, tenant_id: str) -> None:
        self.path_for(tenant_id).write_text("")

    def write(self, tenant_id: str, event: str, **fields) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        extra = " ".join(f"{k}={v}" for k, v in fields.items())
        line = f"{stamp} {event}" + (f" {extra}" if extra else "")
        with open(self.path_for(tenant_id), "a") as f:
            f.write(line + "\n")


def build_agent_log_writer(log_dir: Optional[Path]) -> Optional[AgentLogWriter]:
    return AgentLogWriter(log_dir) if log_dir else None
