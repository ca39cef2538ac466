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
Unit tests for the health probe loop and the health gate.
"""
import threading
import time

import pytest

from tierup.errors import DependencyTimeout, ProbeFailure
from tierup.MANAGERS.health_monitor import HealthGate, HealthProbeLoop
from tierup.MANAGERS.state_store import StateStore
from tierup.MODELS.runtime_state import HealthState, LifecycleState
from tierup.MODELS.service_spec import Dependency, DependencyCondition, HealthProbe, ServiceSpec


def probe(**kwargs):
    options = {'test': ['CMD', 'true'], 'interval': 0.01, 'timeout': 1, 'retries': 3}
    options.update(kwargs)
    return HealthProbe(**options)


def failing(times):
    """Check that fails ``times`` times, then passes."""
    calls = []

    def check():
        calls.append(1)
        if len(calls) <= times:
            raise ProbeFailure("not ready", exit_code=1)
        return "ready\n"
    check.calls = calls
    return check


class TestHealthProbeLoop:
    """Tests for HealthProbeLoop."""

    def test_first_success_is_healthy(self):
        store = StateStore(['db'])
        result = HealthProbeLoop('db', probe(), failing(0), store, threading.Event()).run()
        assert result == HealthState.HEALTHY
        health = [(c.old, c.new) for c in store.history if c.kind == 'health']
        assert health == [('none', 'starting'), ('starting', 'probing'), ('probing', 'healthy')]
        assert store.history[-1].detail == "ready"

    def test_recovers_before_retries_run_out(self):
        store = StateStore(['db'])
        check = failing(2)
        result = HealthProbeLoop('db', probe(retries=3), check, store, threading.Event()).run()
        assert result == HealthState.HEALTHY
        assert len(check.calls) == 3
        assert store.get('db').failing_streak == 0

    def test_retries_exhausted_is_unhealthy(self):
        store = StateStore(['db'])
        check = failing(100)
        result = HealthProbeLoop('db', probe(retries=10), check, store, threading.Event()).run()
        assert result == HealthState.UNHEALTHY
        status = store.get('db')
        assert status.health == HealthState.UNHEALTHY
        assert status.failing_streak == 10
        assert len(check.calls) == 10

    def test_unexpected_exception_counts_as_failure(self):
        store = StateStore(['db'])

        def check():
            raise RuntimeError("boom")

        result = HealthProbeLoop('db', probe(retries=1), check, store, threading.Event()).run()
        assert result == HealthState.UNHEALTHY
        assert "RuntimeError" in store.history[-1].detail

    def test_cancel_during_start_period(self):
        store = StateStore(['db'])
        cancel = threading.Event()
        cancel.set()
        check = failing(0)
        result = HealthProbeLoop('db', probe(start_period=30), check, store, cancel).run()
        assert result is None
        assert store.get('db').health == HealthState.STARTING
        assert check.calls == []

    def test_cancel_during_interval(self):
        store = StateStore(['db'])
        cancel = threading.Event()
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        start = time.monotonic()
        result = HealthProbeLoop('db', probe(interval=30, retries=5), failing(100), store, cancel).run()
        assert result is None
        assert time.monotonic() - start < 5
        assert store.get('db').health == HealthState.PROBING


def backend():
    return ServiceSpec(name='backend', depends_on=[
        Dependency(service='db', condition=DependencyCondition.HEALTHY),
        Dependency(service='cache'),
    ])


def run_gate(gate, spec, cancel):
    result = {}

    def target():
        try:
            result['value'] = gate.wait(spec, cancel)
        except Exception as e:
            result['error'] = e

    thread = threading.Thread(target=target)
    thread.start()
    return thread, result


class TestHealthGate:
    """Tests for HealthGate."""

    def test_no_dependencies_passes_immediately(self):
        store = StateStore(['db'])
        assert HealthGate(store).wait(ServiceSpec(name='db'), threading.Event()) is True
        assert store.get('db').lifecycle == LifecycleState.PENDING

    def test_pending(self):
        store = StateStore(['backend', 'db', 'cache'])
        gate = HealthGate(store)
        assert gate.pending(backend(), store.snapshot()) == ['db', 'cache']
        store.record_launch('db')
        store.record_launch('cache')
        assert gate.pending(backend(), store.snapshot()) == ['db']
        store.set_health('db', HealthState.HEALTHY)
        assert gate.pending(backend(), store.snapshot()) == []

    def test_waits_for_healthy_and_started(self):
        store = StateStore(['backend', 'db', 'cache'])
        thread, result = run_gate(HealthGate(store), backend(), threading.Event())

        assert store.wait_for(lambda s: s['backend'].lifecycle == LifecycleState.WAITING, timeout=5)
        store.record_launch('db')
        store.record_launch('cache')
        thread.join(0.1)
        assert thread.is_alive()

        store.set_health('db', HealthState.HEALTHY)
        thread.join(5)
        assert result == {'value': True}

    def test_unhealthy_dependency_blocks_without_failing(self):
        store = StateStore(['backend', 'db', 'cache'])
        store.record_launch('cache')
        thread, result = run_gate(HealthGate(store), backend(), threading.Event())
        assert store.wait_for(lambda s: s['backend'].lifecycle == LifecycleState.WAITING, timeout=5)

        store.set_health('db', HealthState.UNHEALTHY)
        assert store.wait_for(lambda s: s['backend'].detail.startswith("blocked"), timeout=5)
        assert "db" in store.get('backend').detail
        assert thread.is_alive()

        # a restarted db that turns healthy releases the dependent
        store.set_health('db', HealthState.STARTING)
        store.set_health('db', HealthState.HEALTHY)
        thread.join(5)
        assert result == {'value': True}

    def test_cancel(self):
        store = StateStore(['backend', 'db', 'cache'])
        cancel = threading.Event()
        thread, result = run_gate(HealthGate(store), backend(), cancel)
        assert store.wait_for(lambda s: s['backend'].lifecycle == LifecycleState.WAITING, timeout=5)
        cancel.set()
        store.wake()
        thread.join(5)
        assert result == {'value': False}

    def test_timeout(self):
        store = StateStore(['backend', 'db', 'cache'])
        store.record_launch('cache')
        with pytest.raises(DependencyTimeout) as exc:
            HealthGate(store, timeout=0.05).wait(backend(), threading.Event())
        assert exc.value.pending == ['db']
        assert exc.value.service == 'backend'
