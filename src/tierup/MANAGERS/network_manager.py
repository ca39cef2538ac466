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
Network segmentation for services, handling name resolution and service discovery.
"""
import os
from typing import Dict, List, Optional, Set

from jinja2 import Template

from ..errors import AliasConflict
from ..MODELS.deployment_spec import DeploymentSpec
from ..MODELS.service_spec import ServiceSpec

LOOPBACK = "127.0.0.1"

HOSTS_TEMPLATE = """\
127.0.0.1 localhost
::1 localhost ip6-localhost ip6-loopback
# tierup peers of {{ service }}
{% for canonical, names in peers.items() -%}
{{ address }} {{ names | join(' ') }}
{% endfor %}"""


class NetworkManager:
    """
    Decides which names each service can resolve.

    A name is visible from a service only through a segment both services join;
    aliases and container names are unique per segment, not globally.
    """
    def __init__(self, deployment: DeploymentSpec):
        """
        Builds the per-segment name tables.

        :param deployment: The deployment whose services are attached to segments.
        :raises AliasConflict: If two services claim the same name on one segment.
        """
        self.deployment = deployment
        self.segments: Dict[str, Dict[str, str]] = {}  # network -> {name: service}
        self.service_networks: Dict[str, List[str]] = {}  # service -> networks
        self._template = Template(HOSTS_TEMPLATE)

        for name, svc in deployment.services.items():
            self.service_networks[name] = svc.network_names()
            for network in self.service_networks[name]:
                table = self.segments.setdefault(network, {})
                for alias in self._names_on(svc, network):
                    owner = table.get(alias)
                    if owner is not None and owner != name:
                        raise AliasConflict(network, alias, [owner, name])
                    table[alias] = name

    def members(self, network: str) -> Set[str]:
        """
        Returns the services attached to a segment.
        """
        return set(self.segments.get(network, {}).values())

    def shared_networks(self, first: str, second: str) -> Set[str]:
        """
        Returns the segments both services are attached to.
        """
        return set(self.service_networks.get(first, [])) & set(self.service_networks.get(second, []))

    def resolvable_names(self, service: str) -> Dict[str, str]:
        """
        Computes every name resolvable from a service.

        :param service: The service doing the lookup.
        :return: Mapping of resolvable name (canonical name or alias) to canonical service name.
        """
        names: Dict[str, str] = {}
        for network in self.service_networks.get(service, []):
            names.update(self.segments.get(network, {}))
        return names

    def resolvable_peers(self, service: str) -> Set[str]:
        """
        Returns the canonical names of the other services reachable from ``service``.
        """
        return set(self.resolvable_names(service).values()) - {service}

    def resolve(self, source: str, name: str) -> Optional[str]:
        """
        Resolves a name or alias as seen from ``source``.

        :return: The canonical service name, or None if the name is not visible.
        """
        return self.resolvable_names(source).get(name)

    def can_resolve(self, source: str, name: str) -> bool:
        return self.resolve(source, name) is not None

    def get_service_discovery_env(self, service: str) -> Dict[str, str]:
        """
        Generates environment variables for the peers a service can resolve.
        Example: MYSQL_HOST=127.0.0.1, MYSQL_PORT=3306
        """
        env = {}
        for alias, canonical in sorted(self.resolvable_names(service).items()):
            if canonical == service:
                continue
            prefix = alias.upper().replace('-', '_').replace('.', '_')
            env[f"{prefix}_HOST"] = LOOPBACK

            # The first bound host port is the "default" port
            bindings = self.deployment.services[canonical].ports
            host_ports = [b.host_port for b in bindings if b.host_port is not None]
            if host_ports:
                env[f"{prefix}_PORT"] = str(host_ports[0])
        return env

    def generate_hosts_file_content(self, service: str) -> str:
        """
        Renders a hosts file listing the peers resolvable from a service.
        """
        peers: Dict[str, List[str]] = {}
        for alias, canonical in sorted(self.resolvable_names(service).items()):
            peers.setdefault(canonical, []).append(alias)
        return self._template.render(service=service, peers=peers, address=LOOPBACK)

    def write_hosts_file(self, service: str, directory: str) -> str:
        """
        Writes the hosts file of a service into ``directory``.

        :return: Path of the written file.
        """
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, f"{service}.hosts")
        with open(path, 'w') as f:
            f.write(self.generate_hosts_file_content(service))
        return path

    @staticmethod
    def _names_on(svc: ServiceSpec, network: str) -> List[str]:
        names = [svc.name]
        if svc.container_name:
            names.append(svc.container_name)
        names.extend(svc.aliases_on(network))
        return list(dict.fromkeys(names))
