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
Exception hierarchy for tierup.

Deployment errors are raised before any service starts and abort the whole
deployment. Probe and process errors stay local to one service.
"""
from typing import Iterable, List, Optional


class TierupError(Exception):
    """Base class for all tierup errors."""


class ComposeError(TierupError):
    """The compose file could not be read or contains unsupported values."""


class DeploymentError(TierupError):
    """The deployment description violates an invariant and cannot start."""


class CyclicDependency(DeploymentError):
    """
    Raised when the dependency graph contains a cycle.

    :param cycle: One detected cycle, first name repeated at the end.
    :param unresolved: Every service that could not be ordered.
    """

    def __init__(self, cycle: List[str], unresolved: Iterable[str]):
        self.cycle = list(cycle)
        self.unresolved = set(unresolved)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class UnknownDependency(DeploymentError):
    """Raised when a service depends on a name that is not in the deployment."""

    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(f"Service '{service}' depends on undefined service '{dependency}'")


class InvalidDependencyCondition(DeploymentError):
    """Raised when a 'healthy' dependency points at a service without a health probe."""

    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(
            f"Service '{service}' waits for '{dependency}' to be healthy, "
            f"but '{dependency}' has no health check"
        )


class UnknownNetwork(DeploymentError):
    def __init__(self, service: str, network: str):
        self.service = service
        self.network = network
        super().__init__(f"Service '{service}' refers to undefined network '{network}'")


class UnknownVolume(DeploymentError):
    def __init__(self, service: str, volume: str):
        self.service = service
        self.volume = volume
        super().__init__(f"Service '{service}' refers to undefined volume '{volume}'")


class VolumeConflict(DeploymentError):
    """Raised when a named volume is mounted by more than one service."""

    def __init__(self, volume: str, services: Iterable[str]):
        self.volume = volume
        self.services = sorted(services)
        super().__init__(
            f"Volume '{volume}' is mounted by more than one service: {', '.join(self.services)}"
        )


class InvalidMountTarget(DeploymentError):
    """Raised when a mount target is not an absolute path inside the service's root directory."""

    def __init__(self, service: str, target: str):
        self.service = service
        self.target = target
        super().__init__(
            f"Service '{service}' mounts onto '{target}', which is not an absolute path inside its root"
        )


class PortConflict(DeploymentError):
    def __init__(self, binding: str, services: Iterable[str]):
        self.binding = binding
        self.services = sorted(services)
        super().__init__(
            f"Host port {binding} is bound by more than one service: {', '.join(self.services)}"
        )


class AliasConflict(DeploymentError):
    """Raised when two services claim the same name inside one network segment."""

    def __init__(self, network: str, alias: str, services: Iterable[str]):
        self.network = network
        self.alias = alias
        self.services = sorted(services)
        super().__init__(
            f"Name '{alias}' is claimed by {', '.join(self.services)} on network '{network}'"
        )


class ProbeError(TierupError):
    """A single health probe run did not succeed."""


class ProbeFailure(ProbeError):
    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(message)


class ProbeTimeout(ProbeError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Health check timed out after {timeout:g}s")


class ProbeCancelled(ProbeError):
    """The probe loop was cancelled by a stop request."""


class ServiceUnhealthy(TierupError):
    """A service exhausted its probe retries and is terminally unhealthy."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Service '{service}' is unhealthy")


class DependencyTimeout(TierupError):
    def __init__(self, service: str, pending: Iterable[str], timeout: float):
        self.service = service
        self.pending = sorted(pending)
        self.timeout = timeout
        super().__init__(
            f"Service '{service}' gave up after {timeout:g}s waiting for: {', '.join(self.pending)}"
        )


class ProcessExited(TierupError):
    """A service process exited; the restart policy decides what happens next."""

    def __init__(self, service: str, exit_code: Optional[int]):
        self.service = service
        self.exit_code = exit_code
        super().__init__(f"Service '{service}' exited with code {exit_code}")


class RuntimeLaunchError(TierupError):
    """The container runtime could not launch a service."""


class VolumeInUse(TierupError):
    def __init__(self, volume: str, holder: str):
        self.volume = volume
        self.holder = holder
        super().__init__(f"Volume '{volume}' is mounted by service '{holder}'")
