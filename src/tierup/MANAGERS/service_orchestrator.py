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
Orchestration for multiple services, managing dependencies, health and restarts.
"""
import logging
import os
import threading
from typing import Callable, Dict, List, Optional

from ..CONFIG.settings import Settings
from ..errors import DependencyTimeout, InvalidMountTarget, RuntimeLaunchError, VolumeInUse
from ..MODELS.deployment_spec import DeploymentSpec
from ..MODELS.runtime_state import LifecycleState, ServiceStatus
from ..MODELS.service_spec import ServiceSpec
from ..RUNNERS.container_runtime import ContainerRuntime, LaunchContext, ProcessRuntime
from ..RUNNERS.dependency_resolver import DependencyResolver, StartBatch
from ..RUNNERS.deployment_validator import DeploymentValidator
from ..RUNNERS.probe_runner import CommandProbeFactory, ProbeCheck
from .health_monitor import HealthGate, HealthProbeLoop
from .network_manager import NetworkManager
from .restart_enforcer import RestartPolicyEnforcer
from .state_store import Listener, StateStore, StatusPredicate
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

ProbeFactory = Callable[[ServiceSpec, LaunchContext], ProbeCheck]


class ServiceSupervisor:
    """
    Drives one service: waits at the health gate, launches it, probes it,
    and hands its exits to the restart policy enforcer.
    """
    def __init__(self, spec: ServiceSpec, orchestrator: "ServiceOrchestrator"):
        self.spec = spec
        self.name = spec.name
        self.orchestrator = orchestrator
        self.cancel = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def start(self):
        self.thread = threading.Thread(target=self.run, name=f"supervisor-{self.name}", daemon=True)
        self.thread.start()

    def stop(self):
        """
        Requests a stop: cancels the gate wait, probe loop, restart backoff and running instance.
        """
        self.cancel.set()
        self.orchestrator.store.wake()

    def join(self, timeout: Optional[float] = None):
        if self.thread:
            self.thread.join(timeout=timeout)

    def run(self):
        store = self.orchestrator.store
        try:
            if not self.orchestrator.gate.wait(self.spec, self.cancel):
                store.set_lifecycle(self.name, LifecycleState.CANCELLED, detail="stopped before start")
                return
            self.orchestrator.enforcer.supervise(
                self.name, self.spec.restart_policy, self._run_instance, self.cancel
            )
        except DependencyTimeout as e:
            logger.error("[%s] %s", self.name, e)
            store.set_lifecycle(self.name, LifecycleState.FAILED, detail=str(e))
        except (RuntimeLaunchError, VolumeInUse, InvalidMountTarget) as e:
            logger.error("[%s] Failed to start: %s", self.name, e)
            store.set_lifecycle(self.name, LifecycleState.FAILED, detail=str(e))

    def _run_instance(self) -> Optional[int]:
        """
        Launches one instance and blocks until it exits.
        """
        orch = self.orchestrator
        named = [m.source for m in self.spec.volumes if m.is_named]
        probe_cancel = threading.Event()
        probe_thread = None
        try:
            for volume in named:
                orch.volume_manager.acquire(volume, self.name)

            context = orch.launch_context(self.spec)
            handle = orch.runtime.launch(self.spec, context)
            orch.store.record_launch(self.name)

            if self.spec.healthcheck:
                loop = HealthProbeLoop(self.name, self.spec.healthcheck,
                                       orch.probe_factory(self.spec, context), orch.store, probe_cancel)
                probe_thread = threading.Thread(target=loop.run, name=f"probe-{self.name}", daemon=True)
                probe_thread.start()

            return orch.runtime.wait(handle, self.cancel)
        finally:
            probe_cancel.set()
            if probe_thread:
                probe_thread.join()
                orch.store.reset_health(self.name, detail="instance exited")
            for volume in named:
                orch.volume_manager.release(volume, self.name)


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.

    The orchestrator owns the state store; supervisors, probe loops and the
    restart enforcer only touch service state through it.
    """
    def __init__(self,
                 deployment: DeploymentSpec,
                 runtime: Optional[ContainerRuntime] = None,
                 settings: Optional[Settings] = None,
                 base_dir: str = ".",
                 probe_factory: Optional[ProbeFactory] = None):
        """
        Initializes the orchestrator.

        :param deployment: Configuration for all services.
        :param runtime: Runs the service instances; a ProcessRuntime by default.
        :param settings: Deployment-wide settings.
        :param base_dir: Working directory for the services and tierup's state.
        :param probe_factory: Builds the health check callable of a launched service;
            by default the check runs on the host like the service does.
        """
        self.deployment = deployment
        self.settings = settings or Settings()
        self.base_dir = base_dir
        self.runtime = runtime or ProcessRuntime(base_dir, self.settings.state_dir,
                                                 stop_timeout=self.settings.stop_timeout)
        self.probe_factory = probe_factory or CommandProbeFactory(base_dir)

        self.resolver = DependencyResolver()
        self.validator = DeploymentValidator(self.resolver)
        self.store = StateStore(deployment.services)
        self.gate = HealthGate(self.store, timeout=self.settings.dependency_timeout)
        self.enforcer = RestartPolicyEnforcer(self.settings, self.store)
        self.volume_manager = VolumeManager(base_dir, self.settings.state_dir)
        self.hosts_dir = os.path.join(base_dir, self.settings.state_dir, "hosts")

        self.network_manager: Optional[NetworkManager] = None
        self.batches: List[StartBatch] = []
        self.supervisors: Dict[str, ServiceSupervisor] = {}

    def plan(self) -> List[StartBatch]:
        """
        Validates the deployment and computes its start batches without starting anything.

        :raises DeploymentError: If the deployment is invalid.
        """
        return self.validator.validate(self.deployment)

    def up(self) -> List[StartBatch]:
        """
        Starts all services in dependency order.

        Validation happens first; an invalid deployment raises before any
        service starts. Services then start as soon as their dependencies allow.

        :return: The start batches.
        :raises DeploymentError: If the deployment is invalid.
        """
        self.batches = self.plan()
        self.network_manager = NetworkManager(self.deployment)
        for name in self.deployment.volumes:
            self.volume_manager.create_volume(name)

        logger.info("Starting services in order: %s",
                    " | ".join(", ".join(sorted(batch)) for batch in self.batches))
        for batch in self.batches:
            for name in sorted(batch):
                supervisor = ServiceSupervisor(self.deployment.services[name], self)
                self.supervisors[name] = supervisor
                supervisor.start()
        return self.batches

    def launch_context(self, spec: ServiceSpec) -> LaunchContext:
        """
        Prepares what a service needs at launch: discovery env, hosts file and volume links.
        """
        mounts = self.volume_manager.prepare_mounts(spec.name, spec.volumes)
        hosts_file = self.network_manager.write_hosts_file(spec.name, self.hosts_dir)
        rootfs = self.volume_manager.rootfs_of(spec.name)

        env = self.network_manager.get_service_discovery_env(spec.name)
        env["TIERUP_SERVICE"] = spec.name
        env["TIERUP_HOSTS_FILE"] = os.path.abspath(hosts_file)
        env["TIERUP_ROOTFS"] = rootfs
        return LaunchContext(env=env, mounts=mounts, rootfs=rootfs, hosts_file=hosts_file)

    def stop(self, name: str) -> List[str]:
        """
        Stops one service and cancels the pending starts of its dependents.

        Dependents that are already running are left alone.

        :param name: The service to stop.
        :return: Names of every supervisor that was told to stop.
        """
        targets = [name]
        statuses = self.store.snapshot()
        for dependent in sorted(self.resolver.dependents_of(self.deployment.services, name)):
            if not statuses[dependent].launched:
                targets.append(dependent)

        for target in targets:
            supervisor = self.supervisors.get(target)
            if supervisor:
                logger.info("Stopping service: %s...", target)
                supervisor.stop()
        return targets

    def down(self, timeout: Optional[float] = None):
        """
        Stops all services in reverse dependency order.

        :param timeout: Seconds to wait for each batch to stop; defaults to the stop timeout.
        """
        timeout = timeout if timeout is not None else self.settings.stop_timeout + 5
        for batch in reversed(self.batches):
            supervisors = [self.supervisors[name] for name in sorted(batch) if name in self.supervisors]
            for supervisor in supervisors:
                logger.info("Stopping service: %s...", supervisor.name)
                supervisor.stop()
            for supervisor in supervisors:
                supervisor.join(timeout)

    def ps(self) -> Dict[str, ServiceStatus]:
        """
        Returns the status of all services.
        """
        return self.store.snapshot()

    def subscribe(self, listener: Listener) -> None:
        """
        Registers a callback receiving every state change.
        """
        self.store.subscribe(listener)

    def wait_until(self, predicate: StatusPredicate, timeout: Optional[float] = None) -> bool:
        """
        Blocks until ``predicate`` holds for the status table, or the timeout passes.
        """
        return self.store.wait_for(predicate, timeout=timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until every service reached a terminal state.
        """
        return self.wait_until(lambda statuses: all(s.is_terminal for s in statuses.values()), timeout)
