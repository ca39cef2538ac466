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
Restart policy management with exponential backoff.
"""
import logging
import threading
from typing import Callable, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    stop_when_event_set,
    wait_exponential,
)

from ..CONFIG.settings import Settings
from ..errors import ProcessExited
from ..MODELS.runtime_state import LifecycleState
from ..MODELS.service_spec import RestartMode, RestartPolicy
from .state_store import StateStore

logger = logging.getLogger(__name__)


class RestartPolicyEnforcer:
    """
    Reacts to service exits according to their restart policy.

    - ``never``: the first exit is terminal.
    - ``on-failure``: non-zero exits are restarted with exponential backoff,
      up to ``max_retries`` times when a cap is set.
    - ``always-unless-stopped``: every exit is restarted until a stop is
      requested; launches are at least ``restart_min_interval`` apart.
    """

    def __init__(self, settings: Settings, store: StateStore):
        self.settings = settings
        self.store = store

    @staticmethod
    def should_restart(policy: RestartPolicy, exit_code: Optional[int], stop_requested: bool) -> bool:
        """
        Determine if a service should be restarted based on its policy.

        Args:
            policy: The service's restart policy.
            exit_code: Process exit code.
            stop_requested: Whether the operator asked the service to stop.

        Returns:
            True if should restart.
        """
        if stop_requested:
            return False
        if policy.mode == RestartMode.ON_FAILURE:
            return exit_code != 0
        return policy.mode == RestartMode.ALWAYS_UNLESS_STOPPED

    def wait_strategy(self, policy: RestartPolicy) -> wait_exponential:
        """
        Backoff before restart n: ``delay * 2 ** (n - 1)``, capped at the ceiling.
        """
        base = policy.delay if policy.delay is not None else self.settings.restart_base_delay
        ceiling = policy.max_delay if policy.max_delay is not None else self.settings.restart_max_delay
        floor = 0.0
        if policy.mode == RestartMode.ALWAYS_UNLESS_STOPPED:
            floor = self.settings.restart_min_interval
        return wait_exponential(multiplier=base, min=floor, max=max(ceiling, floor))

    @staticmethod
    def stop_strategy(policy: RestartPolicy, cancel: threading.Event):
        # max_retries restarts means max_retries + 1 launches
        limit = stop_after_attempt(policy.max_retries + 1) if policy.max_retries else stop_never
        return limit | stop_when_event_set(cancel)

    def supervise(self, name: str, policy: RestartPolicy,
                  run_instance: Callable[[], Optional[int]],
                  cancel: threading.Event) -> Optional[int]:
        """
        Runs a service instance and restarts it while its policy asks for it.

        :param name: Service name.
        :param policy: Its restart policy.
        :param run_instance: Launches one instance and blocks until it exits; returns the exit code.
        :param cancel: Set when a stop is requested; aborts any pending backoff.
        :return: The exit code of the last instance, or None if none ran.
        """
        launched = []

        def run_once() -> Optional[int]:
            if cancel.is_set():
                return None
            if launched:
                self.store.record_restart(name)
            launched.append(True)

            exit_code = run_instance()
            if self.should_restart(policy, exit_code, cancel.is_set()):
                raise ProcessExited(name, exit_code)
            return exit_code

        retrying = Retrying(
            retry=retry_if_exception_type(ProcessExited),
            stop=self.stop_strategy(policy, cancel),
            wait=self.wait_strategy(policy),
            sleep=cancel.wait,
            before_sleep=lambda state: self._before_restart(name, state),
            reraise=True,
        )

        try:
            exit_code = retrying(run_once)
        except ProcessExited as e:
            exit_code = e.exit_code
            if not cancel.is_set():
                logger.error("[%s] Exceeded max restart attempts (%d)", name, policy.max_retries)

        if cancel.is_set():
            self.store.set_lifecycle(name, LifecycleState.STOPPED, detail="stopped", exit_code=exit_code)
        else:
            if exit_code not in (0, None):
                logger.error("[%s] %s", name, ProcessExited(name, exit_code))
            self.store.set_lifecycle(name, LifecycleState.EXITED,
                                     detail=f"exit code {exit_code}", exit_code=exit_code)
        return exit_code

    def _before_restart(self, name: str, state: RetryCallState) -> None:
        error = state.outcome.exception()
        delay = state.next_action.sleep
        logger.info("Waiting %.1fs before restarting %s (attempt %d)...", delay, name, state.attempt_number + 1)
        self.store.record_backoff(name, delay, getattr(error, "exit_code", None))
