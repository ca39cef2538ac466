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
Execution of health check commands.
"""
import os
import subprocess
from typing import Callable, Dict, List, Optional, Union

from ..errors import ProbeFailure, ProbeTimeout
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MODELS.service_spec import HealthProbe, ServiceSpec
from .container_runtime import LaunchContext

# A probe returns its output on success and raises ProbeError otherwise
ProbeCheck = Callable[[], str]


class CommandProbe:
    """
    Runs a Docker-style health check command (CMD, CMD-SHELL or NONE) with a timeout.
    """
    def __init__(self, probe: HealthProbe, env: Optional[Dict[str, str]] = None, cwd: Optional[str] = None):
        """
        Initializes the probe.

        :param probe: The health probe definition.
        :param env: Environment for the check command; inherits the current one if None.
        :param cwd: Working directory for the check command.
        """
        self.probe = probe
        self.env = env
        self.cwd = cwd

    def __call__(self) -> str:
        """
        Runs the check once.

        :return: The first 500 characters of the command's stdout.
        :raises ProbeTimeout: If the command does not finish within the probe timeout.
        :raises ProbeFailure: If the command exits non-zero or cannot be run.
        """
        cmd = self.probe.test
        use_shell = False

        # Parse command format
        if cmd[0] == "CMD":
            real_cmd: Union[List[str], str] = cmd[1:]
        elif cmd[0] == "CMD-SHELL":
            real_cmd = cmd[1] if len(cmd) > 1 else ""
            use_shell = True
        elif cmd[0] == "NONE":
            return ""
        else:
            real_cmd = cmd

        try:
            result = subprocess.run(
                real_cmd,
                shell=use_shell,
                env=self.env,
                cwd=self.cwd,
                capture_output=True,
                timeout=self.probe.timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            raise ProbeTimeout(self.probe.timeout) from None
        except OSError as e:
            raise ProbeFailure(f"Health check could not run: {e}") from e

        if result.returncode != 0:
            message = result.stderr[:500] if result.stderr else f"Exit code: {result.returncode}"
            raise ProbeFailure(message, exit_code=result.returncode)
        return result.stdout[:500] if result.stdout else ""


class CommandProbeFactory:
    """
    Builds host-side health checks that run the way the service itself runs:
    in its working directory (relative to the project directory) and with its
    merged environment.
    """
    def __init__(self, base_dir: str = "."):
        self.base_dir = base_dir
        self.env_manager = EnvironmentManager(base_dir)

    def __call__(self, spec: ServiceSpec, context: LaunchContext) -> ProbeCheck:
        env = self.env_manager.get_merged_environment(spec.environment, spec.env_files, context.env)
        return CommandProbe(spec.healthcheck, env=env, cwd=os.path.join(self.base_dir, spec.working_dir or ""))
