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
Parsers for Docker Compose YAML files.
"""
import logging
import os
import shlex
from typing import Dict, Any, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import ComposeError
from ..MODELS.deployment_spec import DeploymentSpec, NetworkSpec, VolumeSpec
from ..MODELS.service_spec import (
    DEFAULT_NETWORK,
    Dependency,
    DependencyCondition,
    HealthProbe,
    NetworkAttachment,
    PortBinding,
    RestartMode,
    RestartPolicy,
    ServiceSpec,
    VolumeMount,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

RESTART_MODES = {
    'no': RestartMode.NEVER,
    'on-failure': RestartMode.ON_FAILURE,
    'always': RestartMode.ALWAYS_UNLESS_STOPPED,
    'unless-stopped': RestartMode.ALWAYS_UNLESS_STOPPED,
}

# deploy.restart_policy.condition values
DEPLOY_RESTART_MODES = {
    'none': RestartMode.NEVER,
    'on-failure': RestartMode.ON_FAILURE,
    'any': RestartMode.ALWAYS_UNLESS_STOPPED,
}

DEPENDENCY_CONDITIONS = {
    'service_started': DependencyCondition.STARTED,
    'service_healthy': DependencyCondition.HEALTHY,
}


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, compose_path: str) -> DeploymentSpec:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed deployment.
        """
        with open(compose_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> DeploymentSpec:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :return: Parsed deployment.
        :raises ComposeError: If the content is not a valid compose file.
        """
        # Interpolate variables before parsing YAML
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise ComposeError(f"Interpolation failed: {e.args[0]}") from e

        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise ComposeError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ComposeError("Top level of a compose file must be a mapping")

        for section in ('services', 'networks', 'volumes'):
            if not isinstance(data.get(section) or {}, dict):
                raise ComposeError(f"'{section}' must be a mapping")

        services = {}
        for name, spec in (data.get('services') or {}).items():
            services[str(name)] = self._parse_service(str(name), spec or {})

        networks = {
            str(name): self._parse_network(str(name), spec or {})
            for name, spec in (data.get('networks') or {}).items()
        }
        if DEFAULT_NETWORK not in networks and any(not s.networks for s in services.values()):
            networks[DEFAULT_NETWORK] = NetworkSpec(name=DEFAULT_NETWORK)

        volumes = {
            str(name): self._parse_volume(str(name), spec or {})
            for name, spec in (data.get('volumes') or {}).items()
        }

        logger.debug("Parsed %d services, %d networks, %d volumes", len(services), len(networks), len(volumes))
        return DeploymentSpec(services=services, networks=networks, volumes=volumes)

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceSpec:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceSpec instance.
        """
        if not isinstance(spec, dict):
            raise ComposeError(f"Service '{name}' must be a mapping")

        try:
            return ServiceSpec(
                name=name,
                image=spec.get('image', ''),
                container_name=spec.get('container_name'),
                command=self._to_command(spec.get('command')),
                entrypoint=self._to_command(spec.get('entrypoint')),
                working_dir=spec.get('working_dir'),
                environment=self._parse_environment(spec.get('environment')),
                env_files=self._parse_env_files(spec.get('env_file')),
                ports=[self._parse_port(name, p) for p in self._expect(name, 'ports', spec.get('ports'), list)],
                networks=self._parse_networks(name, spec.get('networks')),
                volumes=[self._parse_volume_mount(name, v)
                         for v in self._expect(name, 'volumes', spec.get('volumes'), list)],
                restart_policy=self._parse_restart(name, spec),
                healthcheck=self._parse_healthcheck(name, spec.get('healthcheck')),
                depends_on=self._parse_depends_on(name, spec.get('depends_on')),
                labels=self._to_str_dict(spec.get('labels')),
            )
        except ValidationError as e:
            raise ComposeError(f"Invalid service '{name}': {e}") from e

    def _parse_restart(self, name: str, spec: Dict[str, Any]) -> RestartPolicy:
        """
        Maps ``restart`` (or ``deploy.restart_policy`` when ``restart`` is absent)
        onto a RestartPolicy.
        """
        restart = spec.get('restart')
        if restart is not None:
            if restart is False:
                restart = 'no'
            mode_name, _, retries = str(restart).partition(':')
            if mode_name not in RESTART_MODES:
                raise ComposeError(f"Service '{name}' has unknown restart policy '{restart}'")
            mode = RESTART_MODES[mode_name]
            max_retries = 0
            if retries:
                if mode != RestartMode.ON_FAILURE:
                    raise ComposeError(f"Service '{name}': only on-failure accepts a retry count")
                max_retries = self._to_int(name, 'restart', retries)
            return RestartPolicy(mode=mode, max_retries=max_retries)

        deploy = self._expect(name, 'deploy', spec.get('deploy'), dict)
        deploy_policy = self._expect(name, 'deploy.restart_policy', deploy.get('restart_policy'), dict)
        if not deploy_policy:
            return RestartPolicy()

        condition = str(deploy_policy.get('condition', 'any'))
        if condition not in DEPLOY_RESTART_MODES:
            raise ComposeError(f"Service '{name}' has unknown restart condition '{condition}'")
        delay = deploy_policy.get('delay')
        return RestartPolicy(
            mode=DEPLOY_RESTART_MODES[condition],
            max_retries=self._to_int(name, 'max_attempts', deploy_policy.get('max_attempts', 0)),
            delay=self._to_seconds(name, 'delay', delay) if delay is not None else None,
        )

    def _parse_depends_on(self, name: str, value: Any) -> List[Dependency]:
        """
        Parses both the list and the mapping form of ``depends_on``.
        """
        if not value:
            return []
        if isinstance(value, list):
            return [Dependency(service=dep) for dep in value]
        if not isinstance(value, dict):
            raise ComposeError(f"Service '{name}': depends_on must be a list or a mapping")

        dependencies = []
        for dep, options in value.items():
            options = self._expect(name, f'depends_on.{dep}', options, dict)
            condition = str(options.get('condition', 'service_started'))
            if condition not in DEPENDENCY_CONDITIONS:
                raise ComposeError(
                    f"Service '{name}': unsupported dependency condition '{condition}' on '{dep}'"
                )
            dependencies.append(Dependency(service=dep, condition=DEPENDENCY_CONDITIONS[condition]))
        return dependencies

    def _parse_healthcheck(self, name: str, value: Optional[Dict[str, Any]]) -> Optional[HealthProbe]:
        value = self._expect(name, 'healthcheck', value, dict)
        if not value or value.get('disable'):
            return None

        test = value.get('test')
        if not test or not isinstance(test, (str, list)):
            raise ComposeError(f"Service '{name}': healthcheck needs a test")
        if isinstance(test, str):
            test = ['CMD-SHELL', test]
        if test[0] == 'NONE':
            return None

        options: Dict[str, Any] = {'test': [str(t) for t in test]}
        for key in ('interval', 'timeout', 'start_period'):
            if value.get(key) is not None:
                options[key] = self._to_seconds(name, key, value[key])
        if value.get('retries') is not None:
            options['retries'] = self._to_int(name, 'retries', value['retries'])
        return HealthProbe(**options)

    def _parse_networks(self, name: str, value: Any) -> List[NetworkAttachment]:
        if not value:
            return []
        if isinstance(value, list):
            return [NetworkAttachment(network=net) for net in value]
        if not isinstance(value, dict):
            raise ComposeError(f"Service '{name}': networks must be a list or a mapping")
        attachments = []
        for net, options in value.items():
            options = self._expect(name, f'networks.{net}', options, dict)
            aliases = self._expect(name, f'networks.{net}.aliases', options.get('aliases'), list)
            attachments.append(NetworkAttachment(network=net, aliases=aliases))
        return attachments

    def _parse_port(self, name: str, value: Any) -> PortBinding:
        """
        Parses the short (``[ip:][host:]container[/proto]``) and long port syntax.
        """
        if isinstance(value, dict):
            published = value.get('published')
            return PortBinding(
                container_port=self._to_int(name, 'port', value.get('target')),
                host_port=self._to_int(name, 'port', published) if published is not None else None,
                host_ip=value.get('host_ip'),
                protocol=value.get('protocol', 'tcp'),
            )

        text = str(value)
        text, _, protocol = text.partition('/')
        if '-' in text:
            raise ComposeError(f"Service '{name}': port ranges are not supported ('{value}')")

        parts = text.rsplit(':', 2)
        host_ip = None
        host_port = None
        if len(parts) == 3:
            host_ip, host, container = parts
            host_port = self._to_int(name, 'port', host) if host else None
        elif len(parts) == 2:
            host, container = parts
            host_port = self._to_int(name, 'port', host)
        else:
            container = parts[0]

        return PortBinding(
            container_port=self._to_int(name, 'port', container),
            host_port=host_port,
            host_ip=host_ip or None,
            protocol=protocol or 'tcp',
        )

    def _parse_volume_mount(self, name: str, value: Any) -> VolumeMount:
        if isinstance(value, dict):
            if not value.get('source'):
                raise ComposeError(f"Service '{name}': anonymous volumes are not supported")
            return VolumeMount(
                source=value['source'],
                target=value.get('target'),
                read_only=bool(value.get('read_only', False)),
            )

        parts = str(value).split(':')
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro'))
        raise ComposeError(f"Service '{name}': unsupported volume '{value}'")

    def _parse_network(self, name: str, spec: Dict[str, Any]) -> NetworkSpec:
        if not isinstance(spec, dict):
            raise ComposeError(f"Network '{name}' must be a mapping")
        return NetworkSpec(
            name=name,
            driver=spec.get('driver', 'bridge'),
            internal=bool(spec.get('internal', False)),
        )

    def _parse_volume(self, name: str, spec: Dict[str, Any]) -> VolumeSpec:
        if not isinstance(spec, dict):
            raise ComposeError(f"Volume '{name}' must be a mapping")
        return VolumeSpec(
            name=name,
            driver=spec.get('driver', 'local'),
            external=bool(spec.get('external', False)),
            labels=self._to_str_dict(spec.get('labels')),
        )

    def _parse_environment(self, value: Any) -> Dict[str, str]:
        """
        Parses the list (``KEY=VALUE``) and mapping forms of ``environment``.
        A key without a value is taken from the interpolation context.
        """
        environment: Dict[str, str] = {}
        if isinstance(value, list):
            for entry in value:
                key, sep, val = str(entry).partition('=')
                environment[key] = val if sep else self.context.get(key, '')
        elif isinstance(value, dict):
            for key, val in value.items():
                environment[key] = self.context.get(key, '') if val is None else self._to_str(val)
        return environment

    def _parse_env_files(self, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        if not isinstance(value, list):
            raise ComposeError("env_file must be a path or a list of paths")
        paths = []
        for v in value:
            if isinstance(v, dict) and 'path' not in v:
                raise ComposeError("env_file entry needs a path")
            paths.append(str(v['path']) if isinstance(v, dict) else str(v))
        return paths

    def _to_command(self, val: Any) -> List[str]:
        """
        Helper to turn a command into an argument list; strings are split like a shell would.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, list):
            return [str(v) for v in val]
        try:
            return shlex.split(str(val))
        except ValueError as e:
            raise ComposeError(f"Cannot split command {val!r}: {e}") from e

    def _to_str_dict(self, val: Any) -> Dict[str, str]:
        if not val:
            return {}
        if isinstance(val, list):
            return dict(str(item).partition('=')[::2] for item in val)
        if not isinstance(val, dict):
            raise ComposeError(f"Expected a list or a mapping, got {val!r}")
        return {str(k): self._to_str(v) for k, v in val.items()}

    @staticmethod
    def _expect(name: str, key: str, val: Any, kind: type) -> Any:
        """
        Checks the shape of an optional section; a missing section becomes an empty one.
        """
        if val is None:
            return kind()
        if not isinstance(val, kind):
            raise ComposeError(f"Service '{name}': {key} must be a {'list' if kind is list else 'mapping'}")
        return val

    @staticmethod
    def _to_str(val: Any) -> str:
        if isinstance(val, bool):
            return 'true' if val else 'false'
        return str(val)

    @staticmethod
    def _to_int(name: str, key: str, val: Any) -> int:
        try:
            return int(val)
        except (TypeError, ValueError):
            raise ComposeError(f"Service '{name}': {key} must be an integer, got {val!r}") from None

    @staticmethod
    def _to_seconds(name: str, key: str, val: Any) -> float:
        try:
            return parse_duration(val)
        except ValueError:
            raise ComposeError(f"Service '{name}': {key} must be a duration, got {val!r}") from None
