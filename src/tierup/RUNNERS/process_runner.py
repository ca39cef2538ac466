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
Local processes backing tierup services.
"""
import logging
import os
import subprocess
from typing import IO, List, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Runs one service instance as a local process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Args:
            name (str): Service name, used as the log prefix.
            log_file (Optional[str]): Append stdout and stderr here instead of inheriting them.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self.log_handle: Optional[IO[str]] = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None):
        """
        Launches the service command without a shell.

        Args:
            command (List[str]): Argument vector; the first item is the executable.
            env (Dict[str, str]): Complete environment of the service.
            working_dir (Optional[str]): Created if missing.

        Raises:
            OSError: If the command cannot be executed.
        """
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = None
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self.log_handle = open(self.log_file, 'a')
            stdout = self.log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT if stdout else None,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
                # Ctrl+C reaches tierup only; services are stopped in dependency order
                start_new_session=True,
            )
        except OSError:
            self._close_log()
            raise

    def stop(self, timeout: float = 10):
        """
        Stops the process and its children with SIGTERM, followed by SIGKILL for survivors.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self.process and self.process.poll() is None:
            logger.info("[%s] Stopping process...", self.name)
            try:
                parent = psutil.Process(self.process.pid)
                procs = parent.children(recursive=True) + [parent]
            except psutil.NoSuchProcess:
                procs = []

            for proc in procs:
                try:
                    proc.terminate()
                except psutil.NoSuchProcess:
                    pass
            _, alive = psutil.wait_procs(procs, timeout=timeout)
            for proc in alive:
                logger.warning("[%s] Process %d did not terminate, killing...", self.name, proc.pid)
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            self.process.wait()
        self._close_log()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Waits for the process to exit.

        Args:
            timeout (Optional[float]): Seconds to wait; None waits forever.

        Returns:
            Optional[int]: Exit code, or None if the process is still running.
        """
        if not self.process:
            return None
        try:
            code = self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._close_log()
        return code

    def is_running(self) -> bool:
        """True while the service process has not exited."""
        return self.process is not None and self.process.poll() is None

    def get_exit_code(self) -> Optional[int]:
        """Exit code of a finished process, None while it runs or before start."""
        return self.process.poll() if self.process else None

    def _close_log(self):
        if self.log_handle:
            self.log_handle.close()
            self.log_handle = None
