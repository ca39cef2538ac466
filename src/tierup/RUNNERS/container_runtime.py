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
The container runtime boundary: launching, watching and stopping service processes.
"""
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import RuntimeLaunchError
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MODELS.service_spec import ServiceSpec
from .process_runner import ProcessRunner


@dataclass
class LaunchContext:
    """What the orchestrator hands the runtime for one launch."""

    env: Dict[str, str] = field(default_factory=dict)
    mounts: Dict[str, str] = field(default_factory=dict)  # container target -> host source
    rootfs: Optional[str] = None
    hosts_file: Optional[str] = None


class ContainerRuntime(ABC):
    """
    Runs service instances and reports their exit codes.
    """
    @abstractmethod
    def launch(self, spec: ServiceSpec, context: LaunchContext) -> Any:
        """
        Launches one instance of a service.

        :return: An opaque handle for ``wait`` and ``stop``.
        :raises RuntimeLaunchError: If the instance cannot be launched.
        """

    @abstractmethod
    def wait(self, handle: Any, cancel: threading.Event) -> Optional[int]:
        """
        Blocks until the instance exits or ``cancel`` is set; a cancelled instance is stopped.

        :return: The exit code of the instance.
        """

    @abstractmethod
    def stop(self, handle: Any, timeout: float = 10) -> None:
        """
        Stops the instance, forcefully after ``timeout`` seconds.
        """


class ProcessRuntime(ContainerRuntime):
    """
    Runs each service as a native process: ``entrypoint + command`` with the merged environment.
    """
    def __init__(self, base_dir: str = ".", state_dir: str = ".tierup",
                 stop_timeout: float = 10, poll_interval: float = 0.1):
        """
        Initializes the runtime.

        :param base_dir: Directory the services run in unless they set a working_dir.
        :param state_dir: Directory (relative to base_dir) where logs are written.
        :param stop_timeout: Seconds to wait after SIGTERM when cancelled.
        :param poll_interval: Seconds between cancellation checks while waiting.
        """
        self.base_dir = base_dir
        self.log_dir = os.path.join(base_dir, state_dir, "logs")
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self.env_manager = EnvironmentManager(base_dir)

    def launch(self, spec: ServiceSpec, context: LaunchContext) -> ProcessRunner:
        command = list(spec.entrypoint) + list(spec.command)
        if not command:
            raise RuntimeLaunchError(
                f"Service '{spec.name}' has no command; image '{spec.image}' cannot run as a process"
            )

        env = self.env_manager.get_merged_environment(spec.environment, spec.env_files, context.env)
        runner = ProcessRunner(spec.name, log_file=os.path.join(self.log_dir, f"{spec.name}.log"))
        try:
            runner.start(command, env=env, working_dir=os.path.join(self.base_dir, spec.working_dir or ""))
        except OSError as e:
            raise RuntimeLaunchError(f"Service '{spec.name}' failed to start: {e}") from e
        return runner

    def wait(self, handle: ProcessRunner, cancel: threading.Event) -> Optional[int]:
        while True:
            code = handle.wait(timeout=self.poll_interval)
            if code is not None:
                return code
            if cancel.is_set():
                self.stop(handle, self.stop_timeout)
                return handle.get_exit_code()

    def stop(self, handle: ProcessRunner, timeout: float = 10) -> None:
        handle.stop(timeout=timeout)
