import os
import sys
import threading

import pytest

from tierup.CONFIG.settings import Settings
from tierup.errors import RuntimeLaunchError
from tierup.MANAGERS.service_orchestrator import ServiceOrchestrator
from tierup.MODELS.runtime_state import HealthState, LifecycleState
from tierup.MODELS.service_spec import ServiceSpec
from tierup.RUNNERS.container_runtime import LaunchContext, ProcessRuntime

from conftest import parse


def python(code):
    return [sys.executable, "-c", code]


def test_exit_code_and_log(tmp_path):
    runtime = ProcessRuntime(base_dir=str(tmp_path))
    spec = ServiceSpec(
        name="job",
        command=python("import os, sys; print(os.environ['TIERUP_SERVICE'], os.environ['GREETING']); sys.exit(3)"),
        environment={"GREETING": "hello"},
    )
    handle = runtime.launch(spec, LaunchContext(env={"TIERUP_SERVICE": "job"}))
    assert runtime.wait(handle, threading.Event()) == 3

    log = tmp_path / ".tierup" / "logs" / "job.log"
    assert log.read_text().strip() == "job hello"


def test_service_runs_in_its_own_session(tmp_path):
    runtime = ProcessRuntime(base_dir=str(tmp_path))
    spec = ServiceSpec(name="job", command=python("import os; print(os.getsid(0) == os.getpid())"))
    handle = runtime.launch(spec, LaunchContext())
    assert runtime.wait(handle, threading.Event()) == 0
    assert (tmp_path / ".tierup" / "logs" / "job.log").read_text().strip() == "True"


def test_env_file(tmp_path):
    (tmp_path / "app.env").write_text("FROM_FILE=1\nGREETING=file\n")
    runtime = ProcessRuntime(base_dir=str(tmp_path))
    spec = ServiceSpec(
        name="job",
        command=python("import os; print(os.environ['FROM_FILE'], os.environ['GREETING'])"),
        environment={"GREETING": "explicit"},
        env_files=["app.env"],
    )
    handle = runtime.launch(spec, LaunchContext())
    assert runtime.wait(handle, threading.Event()) == 0
    assert (tmp_path / ".tierup" / "logs" / "job.log").read_text().strip() == "1 explicit"


def test_cancel_stops_process(tmp_path):
    runtime = ProcessRuntime(base_dir=str(tmp_path), stop_timeout=2)
    spec = ServiceSpec(name="sleeper", command=python("import time; time.sleep(60)"))
    handle = runtime.launch(spec, LaunchContext())

    cancel = threading.Event()
    threading.Timer(0.2, cancel.set).start()
    code = runtime.wait(handle, cancel)
    assert code is not None and code != 0
    assert not handle.is_running()


def test_image_only_service_cannot_launch(tmp_path):
    runtime = ProcessRuntime(base_dir=str(tmp_path))
    with pytest.raises(RuntimeLaunchError):
        runtime.launch(ServiceSpec(name="db", image="mysql:8.0"), LaunchContext())


def test_missing_executable(tmp_path):
    runtime = ProcessRuntime(base_dir=str(tmp_path))
    spec = ServiceSpec(name="db", command=["/nonexistent/mysqld"])
    with pytest.raises(RuntimeLaunchError):
        runtime.launch(spec, LaunchContext())


def test_orchestrated_processes(tmp_path):
    """A database that becomes ready by writing a marker file, and an app gated on it."""
    marker = tmp_path / "ready"
    content = {
        'services': {
            'db': {
                'image': 'local/db',
                'command': python(f"import time; time.sleep(0.3); open({str(marker)!r}, 'w').close(); time.sleep(60)"),
                'healthcheck': {
                    'test': ['CMD'] + python(f"import os, sys; sys.exit(0 if os.path.exists({str(marker)!r}) else 1)"),
                    'interval': '50ms',
                    'retries': 100,
                },
                'volumes': ['db_data:/var/lib/db'],
            },
            'app': {
                'image': 'local/app',
                'command': python("import os; print(os.environ['DB_HOST'])"),
                'depends_on': {'db': {'condition': 'service_healthy'}},
            },
        },
        'volumes': {'db_data': None},
    }
    settings = Settings(stop_timeout=2, restart_min_interval=0.0)
    orchestrator = ServiceOrchestrator(parse(content), settings=settings, base_dir=str(tmp_path))
    try:
        orchestrator.up()
        assert orchestrator.wait_until(lambda s: s['app'].is_terminal, timeout=30)
        statuses = orchestrator.ps()
        assert statuses['db'].health == HealthState.HEALTHY
        assert statuses['app'].lifecycle == LifecycleState.EXITED
        assert statuses['app'].exit_code == 0
    finally:
        orchestrator.down()

    assert orchestrator.ps()['db'].lifecycle == LifecycleState.STOPPED
    assert (tmp_path / ".tierup" / "logs" / "app.log").read_text().strip() == "127.0.0.1"
    assert os.path.islink(tmp_path / ".tierup" / "rootfs" / "db" / "var" / "lib" / "db")
