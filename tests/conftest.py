"""
Shared fixtures: an in-memory container runtime, scripted health checks and
the three-tier compose file.
"""
import copy
import threading
from collections import Counter

import pytest
import yaml

from tierup.CONFIG.settings import Settings
from tierup.errors import ProbeFailure, RuntimeLaunchError
from tierup.MANAGERS.service_orchestrator import ServiceOrchestrator
from tierup.PARSERS.compose_parser import ComposeParser
from tierup.RUNNERS.container_runtime import ContainerRuntime

THREE_TIER = {
    'version': '3.9',
    'services': {
        'backend': {
            'image': 'shop/backend',
            'restart': 'unless-stopped',
            'ports': ['8080:8080'],
            'networks': ['frontend', 'backend'],
            'depends_on': {'db': {'condition': 'service_healthy'}},
        },
        'frontend': {
            'image': 'shop/frontend',
            'restart': 'unless-stopped',
            'ports': ['5174:5174'],
            'depends_on': ['backend'],
            'networks': ['frontend'],
        },
        'db': {
            'image': 'mysql:8.0',
            'container_name': 'mysql_db',
            'restart': 'unless-stopped',
            'environment': {
                'MYSQL_ROOT_PASSWORD': 'my-secret-pw',
                'MYSQL_DATABASE': 'my_database',
            },
            'ports': ['3306:3306'],
            'volumes': ['mysql_data:/var/lib/mysql'],
            'networks': {'backend': {'aliases': ['mysql']}},
            'healthcheck': {
                'test': ['CMD', 'mysqladmin', 'ping', '-h', 'localhost'],
                'interval': '10ms',
                'timeout': '1s',
                'retries': 10,
            },
        },
    },
    'volumes': {'mysql_data': None},
    'networks': {'frontend': None, 'backend': None},
}


class FakeInstance:
    def __init__(self, name, exit_code=None):
        self.name = name
        self.exit_code = exit_code
        self.exited = threading.Event()
        if exit_code is not None:
            self.exited.set()


class FakeRuntime(ContainerRuntime):
    """
    Runtime that launches nothing.

    Each launch takes the next scripted exit code of the service; a service
    without one keeps running until it is stopped or ``exit`` is called.
    """
    def __init__(self, exit_codes=None, fail_launch=()):
        self.exit_codes = {name: list(codes) for name, codes in (exit_codes or {}).items()}
        self.fail_launch = set(fail_launch)
        self.launches = []
        self.contexts = {}
        self.instances = {}
        self.stopped = []
        self._lock = threading.Lock()

    def launch(self, spec, context):
        if spec.name in self.fail_launch:
            raise RuntimeLaunchError(f"cannot launch {spec.name}")
        with self._lock:
            codes = self.exit_codes.get(spec.name)
            instance = FakeInstance(spec.name, codes.pop(0) if codes else None)
            self.launches.append(spec.name)
            self.contexts[spec.name] = context
            self.instances[spec.name] = instance
        return instance

    def wait(self, handle, cancel):
        while not handle.exited.is_set():
            if cancel.wait(0.01):
                self.stop(handle)
        return handle.exit_code

    def stop(self, handle, timeout=10):
        with self._lock:
            self.stopped.append(handle.name)
            if handle.exit_code is None:
                handle.exit_code = -15
        handle.exited.set()

    def exit(self, name, code):
        instance = self.instances[name]
        instance.exit_code = code
        instance.exited.set()


class ScriptedProbes:
    """
    Probe factory whose checks pass or fail as each test decides.

    ``results`` maps a service to True/False, or to a list of outcomes where
    the last one repeats. Unlisted services are healthy.
    """
    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = Counter()
        self._lock = threading.Lock()

    def set(self, name, outcome):
        with self._lock:
            self.results[name] = outcome

    def __call__(self, spec, context=None):
        def check():
            with self._lock:
                self.calls[spec.name] += 1
                outcome = self.results.get(spec.name, True)
                if isinstance(outcome, list):
                    outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
            if not outcome:
                raise ProbeFailure("scripted failure", exit_code=1)
            return "ok"
        return check


@pytest.fixture
def fast_settings():
    return Settings(
        restart_base_delay=0.01,
        restart_max_delay=0.05,
        restart_min_interval=0.0,
        stop_timeout=1,
    )


@pytest.fixture
def three_tier():
    """A fresh copy of the three-tier compose content, safe to modify."""
    return copy.deepcopy(THREE_TIER)


def parse(content):
    return ComposeParser(context={}).parse_from_string(yaml.safe_dump(content))


@pytest.fixture
def make_orchestrator(tmp_path, fast_settings):
    """
    Builds orchestrators over a FakeRuntime and tears every one of them down.
    """
    created = []

    def factory(content, runtime=None, probes=None, settings=None):
        orchestrator = ServiceOrchestrator(
            parse(content),
            runtime=runtime or FakeRuntime(),
            settings=settings or fast_settings,
            base_dir=str(tmp_path),
            probe_factory=probes or ScriptedProbes(),
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.down(timeout=5)
