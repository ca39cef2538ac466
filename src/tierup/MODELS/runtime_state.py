"""
Runtime state of services, owned by the orchestrator's state store.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class LifecycleState(str, Enum):
    """Process lifecycle of a service."""

    PENDING = "pending"
    WAITING = "waiting"  # Blocked on dependencies
    RUNNING = "running"
    RESTARTING = "restarting"  # Backing off before the next launch
    EXITED = "exited"
    STOPPED = "stopped"
    CANCELLED = "cancelled"  # Stopped before it was ever launched
    FAILED = "failed"


class HealthState(str, Enum):
    """Readiness of a service as reported by its health probe."""

    NONE = "none"  # No health check configured
    STARTING = "starting"
    PROBING = "probing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


TERMINAL_STATES = frozenset(
    {LifecycleState.EXITED, LifecycleState.STOPPED, LifecycleState.CANCELLED, LifecycleState.FAILED}
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ServiceStatus:
    """Everything the orchestrator knows about one service at a point in time."""

    name: str
    lifecycle: LifecycleState = LifecycleState.PENDING
    health: HealthState = HealthState.NONE
    launched: bool = False
    launch_count: int = 0
    restart_count: int = 0
    failing_streak: int = 0
    exit_code: Optional[int] = None
    detail: str = ""
    last_change: Optional[str] = None
    backoff_history: List[float] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.lifecycle in TERMINAL_STATES


@dataclass(frozen=True)
class StateChange:
    """A single transition of a service's lifecycle or health state."""

    service: str
    kind: str  # "lifecycle" or "health"
    old: str
    new: str
    detail: str = ""
    timestamp: str = field(default_factory=utc_now)
