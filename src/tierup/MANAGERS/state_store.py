"""
The orchestrator-owned store of per-service runtime state.
"""
import dataclasses
import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from ..MODELS.runtime_state import HealthState, LifecycleState, ServiceStatus, StateChange

logger = logging.getLogger(__name__)

StatusPredicate = Callable[[Dict[str, ServiceStatus]], bool]
Listener = Callable[[StateChange], None]


class StateStore:
    """
    Holds the status of every service behind a single condition variable.

    All mutations go through this class and are serialized by its lock; every
    mutation wakes the threads blocked in ``wait_for``. Listeners receive each
    transition after the lock is released.
    """

    def __init__(self, names: Iterable[str]):
        self._cond = threading.Condition()
        self._status: Dict[str, ServiceStatus] = {name: ServiceStatus(name=name) for name in names}
        self._listeners: List[Listener] = []
        self.history: List[StateChange] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def get(self, name: str) -> ServiceStatus:
        """Returns a copy of one service's status."""
        with self._cond:
            return self._copy(self._status[name])

    def snapshot(self) -> Dict[str, ServiceStatus]:
        """Returns a copy of every service's status."""
        with self._cond:
            return {name: self._copy(status) for name, status in self._status.items()}

    def set_lifecycle(self, name: str, state: LifecycleState, detail: str = "",
                      exit_code: Optional[int] = None) -> None:
        def apply(status: ServiceStatus) -> List[StateChange]:
            if exit_code is not None:
                status.exit_code = exit_code
            return self._lifecycle_change(status, state, detail)

        self._mutate(name, apply)

    def set_health(self, name: str, state: HealthState, detail: str = "") -> None:
        def apply(status: ServiceStatus) -> List[StateChange]:
            if state in (HealthState.STARTING, HealthState.HEALTHY):
                status.failing_streak = 0
            return self._health_change(status, state, detail)

        self._mutate(name, apply)

    def reset_health(self, name: str, detail: str = "") -> None:
        """
        Drops the readiness of an instance that is gone; an unhealthy verdict is kept.
        """
        def apply(status: ServiceStatus) -> List[StateChange]:
            if status.health in (HealthState.NONE, HealthState.UNHEALTHY):
                return []
            status.failing_streak = 0
            return self._health_change(status, HealthState.STARTING, detail)

        self._mutate(name, apply)

    def record_launch(self, name: str) -> None:
        """Marks a service's process as launched (a new instance is running)."""
        def apply(status: ServiceStatus) -> List[StateChange]:
            status.launched = True
            status.launch_count += 1
            status.exit_code = None
            return self._lifecycle_change(status, LifecycleState.RUNNING, f"launch #{status.launch_count}")

        self._mutate(name, apply)

    def record_restart(self, name: str) -> None:
        def apply(status: ServiceStatus) -> List[StateChange]:
            status.restart_count += 1
            return []

        self._mutate(name, apply)

    def record_backoff(self, name: str, delay: float, exit_code: Optional[int]) -> None:
        """Records a restart backoff about to be slept."""
        def apply(status: ServiceStatus) -> List[StateChange]:
            status.backoff_history.append(delay)
            status.exit_code = exit_code
            return self._lifecycle_change(
                status, LifecycleState.RESTARTING, f"exit code {exit_code}, restarting in {delay:.2f}s"
            )

        self._mutate(name, apply)

    def record_probe_failure(self, name: str, message: str) -> int:
        """
        Counts one failed probe run.

        :return: The failing streak after this failure.
        """
        streak = []

        def apply(status: ServiceStatus) -> List[StateChange]:
            status.failing_streak += 1
            streak.append(status.failing_streak)
            return []

        self._mutate(name, apply)
        logger.warning("[%s] Health check failed (%d in a row): %s", name, streak[0], message)
        return streak[0]

    def set_detail(self, name: str, detail: str) -> None:
        def apply(status: ServiceStatus) -> List[StateChange]:
            status.detail = detail
            return []

        self._mutate(name, apply)

    def wait_for(self, predicate: StatusPredicate, timeout: Optional[float] = None) -> bool:
        """
        Blocks until ``predicate`` holds for the live status table.

        The predicate runs under the store's lock and must not call back into the store.

        :return: The last value of the predicate (False on timeout).
        """
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self._status), timeout=timeout)

    def wake(self) -> None:
        """Wakes every waiter so it can re-check external conditions such as cancellation."""
        with self._cond:
            self._cond.notify_all()

    def _mutate(self, name: str, apply: Callable[[ServiceStatus], List[StateChange]]) -> None:
        with self._cond:
            changes = apply(self._status[name])
            self.history.extend(changes)
            self._cond.notify_all()

        for change in changes:
            logger.info("[%s] %s: %s -> %s %s", change.service, change.kind, change.old, change.new, change.detail)
            for listener in self._listeners:
                listener(change)

    @staticmethod
    def _lifecycle_change(status: ServiceStatus, state: LifecycleState, detail: str) -> List[StateChange]:
        status.detail = detail
        if status.lifecycle == state:
            return []
        change = StateChange(status.name, "lifecycle", status.lifecycle.value, state.value, detail)
        status.lifecycle = state
        status.last_change = change.timestamp
        return [change]

    @staticmethod
    def _health_change(status: ServiceStatus, state: HealthState, detail: str) -> List[StateChange]:
        if status.health == state:
            return []
        change = StateChange(status.name, "health", status.health.value, state.value, detail)
        status.health = state
        status.last_change = change.timestamp
        return [change]

    @staticmethod
    def _copy(status: ServiceStatus) -> ServiceStatus:
        return dataclasses.replace(status, backoff_history=list(status.backoff_history))
