"""
Validation of a deployment before anything is started.
"""
import logging
from typing import Dict, List, Optional, Set

from ..errors import (
    InvalidDependencyCondition,
    PortConflict,
    UnknownDependency,
    UnknownNetwork,
    UnknownVolume,
    VolumeConflict,
)
from ..MODELS.deployment_spec import DeploymentSpec
from ..MODELS.service_spec import DEFAULT_NETWORK, DependencyCondition
from ..MANAGERS.network_manager import NetworkManager
from ..MANAGERS.volume_manager import container_target
from .dependency_resolver import DependencyResolver, StartBatch

logger = logging.getLogger(__name__)


class DeploymentValidator:
    """
    Checks every invariant of a deployment; the first violation aborts it.
    """
    def __init__(self, resolver: Optional[DependencyResolver] = None):
        self.resolver = resolver or DependencyResolver()

    def validate(self, deployment: DeploymentSpec) -> List[StartBatch]:
        """
        Validates a deployment and computes its start batches.

        :param deployment: The deployment to check.
        :return: Start batches as computed by the dependency resolver.
        :raises DeploymentError: On the first violated invariant.
        """
        services = deployment.services
        for name, svc in services.items():
            for dep in svc.depends_on:
                if dep.service not in services:
                    raise UnknownDependency(name, dep.service)
                if dep.condition == DependencyCondition.HEALTHY and services[dep.service].healthcheck is None:
                    raise InvalidDependencyCondition(name, dep.service)

            for network in svc.network_names():
                if network not in deployment.networks and network != DEFAULT_NETWORK:
                    raise UnknownNetwork(name, network)

            for mount in svc.volumes:
                if mount.is_named and mount.source not in deployment.volumes:
                    raise UnknownVolume(name, mount.source)
                container_target(mount.target, name)

        self._check_volume_sharing(deployment)
        self._check_ports(deployment)
        NetworkManager(deployment)

        batches = self.resolver.resolve_batches(services)
        logger.debug("Deployment is valid, %d start batches", len(batches))
        return batches

    @staticmethod
    def _check_volume_sharing(deployment: DeploymentSpec) -> None:
        users: Dict[str, Set[str]] = {}
        for name, svc in deployment.services.items():
            for mount in svc.volumes:
                if mount.is_named:
                    users.setdefault(mount.source, set()).add(name)
        for volume, services in users.items():
            if len(services) > 1:
                raise VolumeConflict(volume, services)

    @staticmethod
    def _check_ports(deployment: DeploymentSpec) -> None:
        owners: Dict[str, Set[str]] = {}
        for name, svc in deployment.services.items():
            for binding in svc.ports:
                key = binding.host_key()
                if key is not None:
                    owners.setdefault(key, set()).add(name)
        for key, services in owners.items():
            if len(services) > 1:
                raise PortConflict(key, services)
