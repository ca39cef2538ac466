# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Health gating for services: the probe loop that decides readiness, and the
gate that holds dependents back until their dependencies are ready.
"""
import logging
import threading
import time
from typing import Dict, FrozenSet, List, Optional

from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)

from ..errors import DependencyTimeout, ProbeCancelled, ProbeError, ProbeFailure, ServiceUnhealthy
from ..MODELS.runtime_state import HealthState, LifecycleState, ServiceStatus
from ..MODELS.service_spec import DependencyCondition, HealthProbe, ServiceSpec
from ..RUNNERS.probe_runner import ProbeCheck
from .state_store import StateStore

logger = logging.getLogger(__name__)


class HealthProbeLoop:
    """
    Probes one launched service until it is healthy or out of retries.

    ``starting`` lasts for the probe's start period, then ``probing`` runs the
    check every ``interval`` seconds. The first success moves the service to
    ``healthy``; ``retries`` consecutive failures move it to ``unhealthy``.
    Setting ``cancel`` ends the loop early without a verdict.
    """

    def __init__(self, name: str, probe: HealthProbe, check: ProbeCheck,
                 store: StateStore, cancel: threading.Event):
        """
        :param name: The monitored service.
        :param probe: Its health probe definition.
        :param check: Runs the check once; returns output or raises ProbeError.
        :param store: The orchestrator's state store.
        :param cancel: Set when the service is stopped or its process exits.
        """
        self.name = name
        self.probe = probe
        self.check = check
        self.store = store
        self.cancel = cancel

    def run(self) -> Optional[HealthState]:
        """
        Runs the loop to a verdict.

        :return: HEALTHY or UNHEALTHY, or None if cancelled first.
        """
        self.store.set_health(self.name, HealthState.STARTING)
        if self.probe.start_period and self.cancel.wait(self.probe.start_period):
            return None

        self.store.set_health(self.name, HealthState.PROBING)
        retrying = Retrying(
            retry=retry_if_exception_type(ProbeError),
            stop=stop_after_attempt(self.probe.retries) | stop_when_event_set(self.cancel),
            wait=wait_fixed(self.probe.interval),
            sleep=self.cancel.wait,
            reraise=True,
        )

        try:
            output = retrying(self._check_once)
        except ProbeError as e:
            if self.cancel.is_set():
                return None
            logger.error("[%s] %s after %d failed checks: %s",
                         self.name, ServiceUnhealthy(self.name), self.probe.retries, e)
            self.store.set_health(self.name, HealthState.UNHEALTHY, detail=str(e))
            return HealthState.UNHEALTHY

        self.store.set_health(self.name, HealthState.HEALTHY, detail=output.strip())
        return HealthState.HEALTHY

    def _check_once(self) -> str:
        if self.cancel.is_set():
            raise ProbeCancelled(f"Probe of {self.name} cancelled")
        try:
            return self.check()
        except ProbeError as e:
            self.store.record_probe_failure(self.name, str(e))
            raise
        except Exception as e:
            self.store.record_probe_failure(self.name, str(e))
            raise ProbeFailure(f"Health check raised {type(e).__name__}: {e}") from e


class HealthGate:
    """
    Decides when a service may start.

    A service is released once every ``healthy`` dependency reports healthy and
    every ``started`` dependency has been launched at least once. The gate never
    starts anything itself and never retries a start.
    """

    def __init__(self, store: StateStore, timeout: Optional[float] = None):
        """
        :param store: The orchestrator's state store.
        :param timeout: Seconds a service may wait before failing; None waits forever.
        """
        self.store = store
        self.timeout = timeout

    def pending(self, spec: ServiceSpec, statuses: Dict[str, ServiceStatus]) -> List[str]:
        """
        Lists the dependencies of ``spec`` that are not satisfied yet.
        """
        waiting = []
        for dep in spec.depends_on:
            status = statuses[dep.service]
            if dep.condition == DependencyCondition.HEALTHY:
                if status.health != HealthState.HEALTHY:
                    waiting.append(dep.service)
            elif not status.launched:
                waiting.append(dep.service)
        return waiting

    def unhealthy(self, spec: ServiceSpec, statuses: Dict[str, ServiceStatus]) -> FrozenSet[str]:
        """
        Returns the ``healthy`` dependencies of ``spec`` that are currently unhealthy.
        """
        return frozenset(
            dep.service for dep in spec.depends_on
            if dep.condition == DependencyCondition.HEALTHY
            and statuses[dep.service].health == HealthState.UNHEALTHY
        )

    def wait(self, spec: ServiceSpec, cancel: threading.Event) -> bool:
        """
        Blocks until ``spec`` may start.

        An unhealthy dependency is reported on the waiting service and the wait
        goes on: a restart of the dependency can still make it healthy.

        :param spec: The service that wants to start.
        :param cancel: Set when the start is no longer wanted.
        :return: True once the service may start, False if cancelled.
        :raises DependencyTimeout: If a timeout is configured and runs out.
        """
        pending = self.pending(spec, self.store.snapshot())
        if not pending:
            return True

        self.store.set_lifecycle(spec.name, LifecycleState.WAITING,
                                 detail=f"waiting for {', '.join(pending)}")
        deadline = time.monotonic() + self.timeout if self.timeout else None
        reported: FrozenSet[str] = frozenset()

        while True:
            def changed(statuses: Dict[str, ServiceStatus], known: FrozenSet[str] = reported) -> bool:
                return (cancel.is_set()
                        or not self.pending(spec, statuses)
                        or self.unhealthy(spec, statuses) != known)

            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DependencyTimeout(spec.name, self.pending(spec, self.store.snapshot()), self.timeout)

            self.store.wait_for(changed, timeout=remaining)
            if cancel.is_set():
                return False

            snapshot = self.store.snapshot()
            pending = self.pending(spec, snapshot)
            if not pending:
                return True

            unhealthy = self.unhealthy(spec, snapshot)
            if unhealthy != reported:
                for dep in sorted(unhealthy - reported):
                    error = ServiceUnhealthy(dep)
                    logger.error("[%s] Blocked: %s", spec.name, error)
                    self.store.set_detail(spec.name, f"blocked: {error}")
                if not unhealthy - reported:
                    self.store.set_detail(spec.name, f"waiting for {', '.join(pending)}")
                reported = unhealthy
